"""Source-document text extraction for document-based generation."""

from __future__ import annotations

import io
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from generation.models import SourceDocument

logger = logging.getLogger(__name__)

_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_SPACES_RE = re.compile(r"[ \t\f\v]+")


class DocumentExtractionError(ValueError):
    """Raised when an uploaded document yields no usable text."""


@dataclass(frozen=True)
class ExtractedDocument:
    text: str
    page_count: int
    title: Optional[str] = None
    author: Optional[str] = None


class DocumentExtractor(Protocol):
    def extract(self, data: bytes, filename: str) -> ExtractedDocument: ...


def _normalize_text(text: str) -> str:
    lines = [_SPACES_RE.sub(" ", line).strip() for line in text.replace("\r", "\n").split("\n")]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


class PdfDocumentExtractor:
    def extract(self, data: bytes, filename: str) -> ExtractedDocument:
        if not data:
            raise DocumentExtractionError("Uploaded file is empty.")
        if not data.lstrip()[:5].startswith(b"%PDF"):
            raise DocumentExtractionError(f"{filename} is not a PDF document.")

        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
            metadata = reader.metadata
        except (PyPdfError, ValueError, KeyError) as exc:
            logger.warning("PDF extraction failed for %s: %s", filename, exc)
            raise DocumentExtractionError(f"Could not read {filename}: {exc}") from exc

        text = _normalize_text("\n\n".join(page for page in pages if page.strip()))
        if not text:
            raise DocumentExtractionError(f"No extractable text found in {filename}.")

        title = (metadata.title or "").strip() if metadata else ""
        author = (metadata.author or "").strip() if metadata else ""
        logger.info("Extracted %s characters from %s (%s pages)", len(text), filename, len(pages))
        return ExtractedDocument(text=text, page_count=len(pages), title=title or None, author=author or None)


def select_excerpt(text: str, limit: int) -> str:
    """Return at most ``limit`` characters, cut on a paragraph boundary when possible."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    window = text[:limit]
    cut = window.rfind("\n\n")
    if cut >= limit // 2:
        return window[:cut].rstrip()
    return window.rstrip()


def build_source_document(extracted: ExtractedDocument, filename: str, excerpt_chars: int) -> SourceDocument:
    title = extracted.title or os.path.splitext(os.path.basename(filename))[0].replace("_", " ").strip()
    return SourceDocument(
        filename=filename,
        title=title or "Untitled document",
        excerpt=select_excerpt(extracted.text, excerpt_chars),
        page_count=extracted.page_count,
        author=extracted.author,
    )

"""Generation service: request validation, job construction and saga execution."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from typing import Dict, Optional

from fastapi import HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from generation.client import GenerationService, RetryingGenerationClient, Sleep
from generation.documents import (
    DocumentExtractionError,
    DocumentExtractor,
    PdfDocumentExtractor,
    build_source_document,
)
from generation.images import ImageSearchService
from generation.models import Difficulty, GenerationJob, GenerationResult, SourceDocument
from generation.saga import SagaCoordinator
from services.credits import SqlLedgerGateway, ensure_credit_account
from services.plans import get_plan_limits, validate_course_shape, validate_slide_count

logger = logging.getLogger(__name__)

ALLOWED_DOCUMENT_EXTENSIONS = {".pdf"}
ALLOWED_DOCUMENT_MIME_TYPES = {"application/pdf", "application/x-pdf", "application/octet-stream", ""}


def _sanitize_filename(filename: Optional[str]) -> str:
    base = os.path.basename(filename or "document.pdf")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "document.pdf"


def _require_prompt(prompt: str) -> str:
    cleaned = (prompt or "").strip()
    if not cleaned:
        raise HTTPException(status_code=400, detail="prompt is required.")
    return cleaned


async def read_source_document(
    file: UploadFile,
    *,
    excerpt_chars: int,
    extractor: Optional[DocumentExtractor] = None,
) -> SourceDocument:
    """Read an uploaded PDF within the size limit and turn it into a ``SourceDocument``."""
    filename = _sanitize_filename(file.filename)
    suffix = os.path.splitext(filename)[1].lower()
    content_type = (file.content_type or "").lower()
    if suffix not in ALLOWED_DOCUMENT_EXTENSIONS or content_type not in ALLOWED_DOCUMENT_MIME_TYPES:
        raise HTTPException(status_code=422, detail="Unsupported file type. Upload a PDF document.")

    max_bytes = max(int(settings.MAX_DOCUMENT_BYTES), 1)
    chunks = []
    total_size = 0
    try:
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > max_bytes:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
                )
            chunks.append(chunk)
    finally:
        await file.close()

    try:
        extracted = await asyncio.to_thread((extractor or PdfDocumentExtractor()).extract, b"".join(chunks), filename)
    except DocumentExtractionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_source_document(extracted, filename, excerpt_chars)


async def build_course_job(
    user_id: str,
    db: AsyncSession,
    *,
    chapters: int,
    lessons_per_chapter: int,
    difficulty: Difficulty,
    include_images: bool = False,
    prompt: str = "",
    document: Optional[SourceDocument] = None,
) -> GenerationJob:
    limits = await get_plan_limits(user_id, db)
    validate_course_shape(limits, chapters, lessons_per_chapter)
    return GenerationJob(
        job_id=str(uuid.uuid4()),
        user_id=user_id,
        kind="course",
        difficulty=difficulty,
        source_kind="document" if document is not None else "prompt",
        group_count=chapters,
        units_per_group=lessons_per_chapter,
        prompt=prompt if document is not None else _require_prompt(prompt),
        document=document,
        include_images=include_images,
    )


async def build_presentation_job(
    user_id: str,
    db: AsyncSession,
    *,
    slides: int,
    difficulty: Difficulty,
    include_images: bool = False,
    prompt: str = "",
    document: Optional[SourceDocument] = None,
    theme: str = "default",
    colors: Optional[Dict[str, Optional[str]]] = None,
) -> GenerationJob:
    limits = await get_plan_limits(user_id, db)
    validate_slide_count(limits, slides)
    return GenerationJob(
        job_id=str(uuid.uuid4()),
        user_id=user_id,
        kind="presentation",
        difficulty=difficulty,
        source_kind="document" if document is not None else "prompt",
        group_count=1,
        units_per_group=slides,
        prompt=prompt if document is not None else _require_prompt(prompt),
        document=document,
        include_images=include_images,
        theme=theme or "default",
        colors=dict(colors or {}),
    )


async def run_generation_job(
    job: GenerationJob,
    db: AsyncSession,
    *,
    service: GenerationService,
    image_search: Optional[ImageSearchService] = None,
    sleep: Sleep = asyncio.sleep,
) -> GenerationResult:
    """Run one job through the charge/generate/refund workflow."""
    await ensure_credit_account(job.user_id, db)
    coordinator = SagaCoordinator(
        SqlLedgerGateway(db),
        RetryingGenerationClient(service, sleep=sleep),
        image_search=image_search,
        sleep=sleep,
    )
    logger.info(
        "Starting %s job %s for user %s (%s x %s, source=%s)",
        job.kind,
        job.job_id,
        job.user_id,
        job.group_count,
        job.units_per_group,
        job.source_kind,
    )
    result = await coordinator.run(job)
    logger.info(
        "Finished %s job %s: charged=%s degraded=%s trail=%s",
        job.kind,
        job.job_id,
        result.cost_charged,
        result.degraded_unit_count,
        "->".join(job.state_trail),
    )
    return result

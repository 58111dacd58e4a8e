"""Stock-image lookup for the image add-on."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol

import httpx

from config import settings

logger = logging.getLogger(__name__)

PIXABAY_URL = "https://pixabay.com/api/"

_NON_WORD_RE = re.compile(r"[^\w\s]")
_COMMON_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by this that these those is are was were be been being
    have has had do does did will would could should can may might must shall about into through during
    before after above below up down out off over under again further then once here there when where why
    how all any both each few more most other some such no nor not only own same so than too very
    """.split()
)


class ImageSearchError(RuntimeError):
    pass


class ImageSearchService(Protocol):
    async def search(self, keyword: str) -> Optional[str]: ...


def extract_image_keywords(title: str, body: str, slide_type: str = "content") -> List[str]:
    """Pick up to three search keywords for a unit."""
    text = _NON_WORD_RE.sub(" ", f"{title} {body}".lower())
    words = [word for word in text.split() if len(word) >= 3 and word not in _COMMON_WORDS][:10]

    keywords: List[str] = []
    if slide_type in ("title", "conclusion") and title.strip():
        keywords.append(title.strip().lower())
    elif slide_type == "chart":
        keywords.extend(["chart", "graph", "data", "statistics"])
    keywords.extend(words)

    unique: List[str] = []
    for keyword in keywords:
        if keyword not in unique:
            unique.append(keyword)
    return unique[:3]


class PixabayImageSearch:
    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds or settings.IMAGE_SEARCH_TIMEOUT_SECONDS)
        self.transport = transport

    async def search(self, keyword: str) -> Optional[str]:
        params = {
            "key": self.api_key,
            "q": keyword[:100],
            "image_type": "photo",
            "safesearch": "true",
            "per_page": 3,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.get(PIXABAY_URL, params=params)
        except httpx.HTTPError as exc:
            raise ImageSearchError(f"Image search request failed: {exc}") from exc

        if response.status_code != 200:
            raise ImageSearchError(f"Pixabay API error: {response.status_code}")

        hits = response.json().get("hits") or []
        if not hits:
            return None
        return hits[0].get("webformatURL") or hits[0].get("largeImageURL")


def build_image_search() -> Optional[ImageSearchService]:
    api_key = (settings.PIXABAY_API_KEY or "").strip()
    if not api_key:
        logger.info("PIXABAY_API_KEY not configured; image add-on disabled")
        return None
    return PixabayImageSearch(api_key)

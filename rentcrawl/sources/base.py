"""
Source adapter interface and shared helpers.
Every listings site plugs into the crawl core through one adapter.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from ..models import NormalizedListing, RawDetail, RawTarget

LOGGER = logging.getLogger(__name__)

CURRENCY_RE = re.compile(r"[€$£¥]")
SIZE_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:m²|qm|m2)?", re.IGNORECASE)
ROOMS_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:zimmer|rooms?|zi\.?|raum|räume)?", re.IGNORECASE)

DEFAULT_BLOCK_MARKERS = (
    "iframe[src*='captcha']",
    "iframe[src*='recaptcha']",
    "#challenge-form",
    ".g-recaptcha",
)


@runtime_checkable
class SourceAdapter(Protocol):
    """What the coordinator needs from a listings site.

    ``unit`` is whatever the pool hands out for the source, a Playwright
    ``Page`` in production.
    """

    source: str

    def build_search_target(self, filters: Dict[str, Any], page: int = 1) -> str:
        ...

    async def navigate(self, unit: Any, url: str, timeout: float) -> None:
        ...

    async def extract_targets(self, unit: Any) -> List[RawTarget]:
        ...

    async def extract_detail(self, unit: Any, url: str) -> Optional[RawDetail]:
        ...

    async def authenticate(self, unit: Any) -> bool:
        ...

    async def detect_blocked(self, unit: Any) -> bool:
        ...

    def to_normalized_listing(self, detail: RawDetail) -> NormalizedListing:
        ...


class BaseSourceAdapter(ABC):
    """
    Base class for Playwright-driven adapters.

    Subclasses must implement:
    - source: str
    - base_url: str
    - build_search_target()
    - extract_targets()
    - extract_detail()
    - to_normalized_listing()
    """

    source: str
    base_url: str
    cookie_consent_selector: Optional[str] = None
    block_markers: Iterable[str] = DEFAULT_BLOCK_MARKERS

    @abstractmethod
    def build_search_target(self, filters: Dict[str, Any], page: int = 1) -> str:
        """Return the search-results URL for ``filters`` and ``page``."""

    @abstractmethod
    async def extract_targets(self, unit: Any) -> List[RawTarget]:
        """Collect listing links from the loaded search-results page."""

    @abstractmethod
    async def extract_detail(self, unit: Any, url: str) -> Optional[RawDetail]:
        """Pull raw fields off the loaded detail page; None when nothing was found.

        Raise :class:`~rentcrawl.errors.ListingGone` when the page says the
        listing was removed.
        """

    @abstractmethod
    def to_normalized_listing(self, detail: RawDetail) -> NormalizedListing:
        """Map raw fields to the canonical listing."""

    async def navigate(self, unit: Any, url: str, timeout: float) -> None:
        await unit.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
        await self.accept_cookies(unit)

    async def authenticate(self, unit: Any) -> bool:
        """Sources without a login are always authenticated."""
        return True

    async def detect_blocked(self, unit: Any) -> bool:
        for selector in self.block_markers:
            if await unit.query_selector(selector) is not None:
                LOGGER.warning("%s: challenge marker %s found on %s", self.source, selector, unit.url)
                return True
        return False

    async def accept_cookies(self, unit: Any) -> None:
        if not self.cookie_consent_selector:
            return
        button = unit.locator(self.cookie_consent_selector).first
        try:
            if await button.is_visible(timeout=5000):
                await button.click()
                LOGGER.debug("%s: accepted cookies", self.source)
        except Exception as exc:  # consent banners are optional
            LOGGER.debug("%s: cookie consent not handled: %s", self.source, exc)

    # Text normalisation shared by all adapters

    @staticmethod
    def normalize_price(text: Optional[str]) -> Optional[float]:
        """Parse ``"1.250,50 €"`` style prices."""
        if not text:
            return None
        cleaned = CURRENCY_RE.sub("", text).replace(".", "").replace(",", ".", 1).strip()
        try:
            return float(cleaned)
        except ValueError:
            return None

    @staticmethod
    def normalize_size(text: Optional[str]) -> Optional[float]:
        if not text:
            return None
        match = SIZE_RE.search(text)
        return float(match.group(1).replace(",", ".")) if match else None

    @staticmethod
    def normalize_rooms(text: Optional[str]) -> Optional[float]:
        if not text:
            return None
        match = ROOMS_RE.search(text)
        return float(match.group(1).replace(",", ".")) if match else None

    def extract_image_urls(self, images: Iterable[Optional[str]]) -> List[str]:
        """Drop placeholders and make URLs absolute."""
        result: List[str] = []
        for url in images:
            if not url or "." not in url or "placeholder" in url:
                continue
            if url.startswith("//"):
                url = "https:" + url
            elif url.startswith("/"):
                url = self.base_url.rstrip("/") + url
            result.append(url)
        return result

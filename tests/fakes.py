"""Fakes shared by the crawl core tests.

Coroutine code is driven with ``asyncio.run`` from plain test functions;
anything holding asyncio primitives is built inside the running loop.
"""
from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

from rentcrawl.errors import ListingGone
from rentcrawl.models import (
    Availability,
    Costs,
    Location,
    NormalizedListing,
    PropertyType,
    RawDetail,
    RawTarget,
    UserPreferenceProfile,
)
from rentcrawl.sources import BaseSourceAdapter

BLOCK_SELECTOR = "#challenge-form"


class FakePage:
    """Stands in for a Playwright page."""

    def __init__(self, handle: "FakeHandle") -> None:
        self.handle = handle
        self.url = "about:blank"
        self.closed = False
        self.blocked = False

    async def goto(self, url: str, wait_until: str = "load", timeout: float = 0) -> None:
        self.url = url

    async def query_selector(self, selector: str):
        if self.blocked and selector == BLOCK_SELECTOR:
            return object()
        return None


class FakeHandle:
    def __init__(self, source: str) -> None:
        self.source = source
        self.units: List[FakePage] = []
        self.closed = False
        self.fail_close_unit = False

    async def new_unit(self) -> FakePage:
        page = FakePage(self)
        self.units.append(page)
        return page

    async def close_unit(self, unit: FakePage) -> None:
        if self.fail_close_unit:
            raise RuntimeError("page close failed")
        unit.closed = True

    async def close(self) -> None:
        self.closed = True


class FakeSessionFactory:
    def __init__(self, failing_sources: Iterable[str] = ()) -> None:
        self.handles: List[FakeHandle] = []
        self.failing_sources = set(failing_sources)
        self.fail_next: Optional[Exception] = None
        self.closed = False

    @property
    def created(self) -> int:
        return len(self.handles)

    async def create(self, source: str) -> FakeHandle:
        await asyncio.sleep(0)
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        if source in self.failing_sources:
            raise RuntimeError(f"browser launch failed for {source}")
        handle = FakeHandle(source)
        self.handles.append(handle)
        return handle

    async def close(self) -> None:
        self.closed = True


class FakeAdapter(BaseSourceAdapter):
    """Serves canned search results and details keyed by URL."""

    def __init__(
        self,
        source: str = "alpha",
        targets: Optional[List[RawTarget]] = None,
        details: Optional[Dict[str, RawDetail]] = None,
        blocked_urls: Iterable[str] = (),
        auth_result: bool = True,
        gone_urls: Iterable[str] = (),
    ) -> None:
        self.source = source
        self.base_url = f"https://{source}.example"
        self.targets = targets or []
        self.details = details or {}
        self.blocked_urls = set(blocked_urls)
        self.auth_result = auth_result
        self.gone_urls = set(gone_urls)
        self.auth_calls = 0
        self.visited: List[str] = []

    def build_search_target(self, filters, page: int = 1) -> str:
        city = filters.get("city", "berlin")
        return f"{self.base_url}/search?city={city}&page={page}"

    async def navigate(self, unit: FakePage, url: str, timeout: float) -> None:
        await super().navigate(unit, url, timeout)
        unit.blocked = url in self.blocked_urls
        self.visited.append(url)

    async def authenticate(self, unit) -> bool:
        self.auth_calls += 1
        return self.auth_result

    async def extract_targets(self, unit) -> List[RawTarget]:
        return list(self.targets)

    async def extract_detail(self, unit, url: str) -> Optional[RawDetail]:
        if url in self.gone_urls:
            raise ListingGone(url)
        return self.details.get(url)

    def to_normalized_listing(self, detail: RawDetail) -> NormalizedListing:
        extra = detail.model_extra or {}
        return NormalizedListing(
            source=self.source,
            external_id=detail.external_id,
            url=detail.url,
            title=detail.title or "",
            description=extra.get("description"),
            size=self.normalize_size(extra.get("size")),
            costs=Costs(base_rent=self.normalize_price(extra.get("price")) or 0.0),
            location=Location(district=extra.get("district"), city="Berlin"),
        )


def make_detail(source: str, external_id: str, price: str = "900 €", district: str = "Mitte") -> RawDetail:
    return RawDetail(
        url=f"https://{source}.example/listing/{external_id}",
        external_id=external_id,
        title=f"Listing {external_id}",
        price=price,
        size="45 m²",
        district=district,
        description="Bright flat",
    )


def make_listing(**overrides) -> NormalizedListing:
    data = dict(
        source="alpha",
        external_id="1",
        url="https://alpha.example/listing/1",
        title="Flat",
        size=50.0,
        property_type=PropertyType.APARTMENT,
        location=Location(district="Mitte", city="Berlin"),
        availability=Availability(),
        costs=Costs(base_rent=1000.0),
    )
    data.update(overrides)
    return NormalizedListing(**data)


def make_profile(**overrides) -> UserPreferenceProfile:
    data = dict(
        user_id="u1",
        districts=["mitte"],
        max_rent=1000.0,
        min_size=40.0,
        property_types=[PropertyType.APARTMENT],
    )
    data.update(overrides)
    return UserPreferenceProfile(**data)

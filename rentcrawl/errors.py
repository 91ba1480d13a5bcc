"""Exception hierarchy shared by the crawl core."""
from __future__ import annotations

from typing import Optional


class RentCrawlError(Exception):
    """Base class for all rentcrawl errors."""


class TransientFetchError(RentCrawlError):
    """Fetch failed in a way that is worth retrying later.

    The Work Queue counts the attempt and makes the item eligible again
    after the retry delay.
    """


class BlockedError(RentCrawlError):
    """Source answered with a block or challenge page."""


class AuthenticationFailure(RentCrawlError):
    """Adapter could not authenticate a session."""


class ListingGone(RentCrawlError):
    """Source reports the listing as removed; it is retired instead of retried."""

    def __init__(self, url: str, external_id: Optional[str] = None) -> None:
        super().__init__(f"Listing gone: {url}")
        self.url = url
        self.external_id = external_id


class PersistenceError(RentCrawlError):
    """A single save call against the store failed."""


class ConfigurationError(RentCrawlError):
    """Mandatory settings are missing or invalid."""


class PoolClosedError(RentCrawlError):
    """Resource pool was shut down while the caller waited for a session."""


class AcquireTimeout(RentCrawlError):
    """No session unit became available within the acquire timeout."""

    def __init__(self, source: str, timeout: float) -> None:
        super().__init__(f"No session for {source} within {timeout:.1f}s")
        self.source = source
        self.timeout = timeout

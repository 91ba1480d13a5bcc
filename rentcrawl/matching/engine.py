"""Matches freshly inserted listings against every active user profile."""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..config import MatchConfig
from ..models import MatchRecord, NormalizedListing, UserPreferenceProfile, utcnow
from ..storage.base import MatchStore, ProfileStore
from .scoring import score

LOGGER = logging.getLogger(__name__)

TIMEFRAMES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}


def score_band(value: int) -> str:
    if value >= 90:
        return "excellent"
    if value >= 70:
        return "good"
    return "fair"


@dataclass
class MatchStats:
    total_matches: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)
    by_score: Dict[str, int] = field(default_factory=lambda: {"excellent": 0, "good": 0, "fair": 0})
    average_score: float = 0.0
    processing_time: float = 0.0  # seconds

    @classmethod
    def from_matches(cls, matches: Iterable[MatchRecord]) -> MatchStats:
        stats = cls()
        scores: List[int] = []
        for match in matches:
            stats.by_source[match.source] = stats.by_source.get(match.source, 0) + 1
            stats.by_score[score_band(match.score)] += 1
            scores.append(match.score)
        stats.total_matches = len(scores)
        if scores:
            stats.average_score = sum(scores) / len(scores)
        return stats

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MatchEngine:
    """Scores listings for each user and persists the ones worth notifying."""

    def __init__(
        self,
        profiles: ProfileStore,
        matches: MatchStore,
        config: Optional[MatchConfig] = None,
    ) -> None:
        self.profiles = profiles
        self.matches = matches
        self.config = config or MatchConfig()
        self.config.validate()

    def score(self, listing: NormalizedListing, prefs: UserPreferenceProfile):
        return score(listing, prefs, self.config)

    def match_listing(
        self,
        listing: NormalizedListing,
        profiles: Iterable[UserPreferenceProfile],
    ) -> List[MatchRecord]:
        """Records for every user whose threshold the listing meets."""
        records: List[MatchRecord] = []
        for prefs in profiles:
            if not prefs.wants_source(listing.source):
                continue
            result = self.score(listing, prefs)
            if result.score < prefs.min_match_score:
                continue
            records.append(
                MatchRecord(
                    user_id=prefs.user_id,
                    listing_id=listing.id,
                    source=listing.source,
                    score=result.score,
                    matched_criteria=result.matched,
                    missed_criteria=result.missed,
                )
            )
        return records

    async def create_matches(self, listings: Iterable[NormalizedListing]) -> MatchStats:
        started = time.monotonic()
        listings = [listing for listing in listings if listing.id is not None]
        LOGGER.info("Creating matches for %d listing(s)", len(listings))

        profiles = await self.profiles.active_profiles()
        if not profiles:
            LOGGER.info("No active users found")
            return MatchStats(processing_time=time.monotonic() - started)

        unique: Dict[tuple, MatchRecord] = {}
        for listing in listings:
            for record in self.match_listing(listing, profiles):
                existing = unique.get(record.key)
                if existing is None or existing.score < record.score:
                    unique[record.key] = record

        records = list(unique.values())
        if records:
            await self.matches.upsert_matches(records)

        stats = MatchStats.from_matches(records)
        stats.processing_time = time.monotonic() - started
        LOGGER.info(
            "Created %d match(es) for %d user(s) in %.2fs (average score %.1f)",
            stats.total_matches,
            len(profiles),
            stats.processing_time,
            stats.average_score,
        )
        return stats

    async def get_match_stats(self, timeframe: str = "day", since: Optional[datetime] = None) -> MatchStats:
        """Aggregate stored matches created within ``timeframe`` (or since ``since``)."""
        if since is None:
            try:
                since = utcnow() - TIMEFRAMES[timeframe]
            except KeyError:
                raise ValueError(f"timeframe must be one of {', '.join(TIMEFRAMES)}") from None
        return MatchStats.from_matches(await self.matches.list_matches(since))

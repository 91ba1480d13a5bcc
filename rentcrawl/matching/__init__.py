"""Listing-to-user matching."""

from .engine import MatchEngine, MatchStats, score_band
from .scoring import score

__all__ = [
    "MatchEngine",
    "MatchStats",
    "score",
    "score_band",
]

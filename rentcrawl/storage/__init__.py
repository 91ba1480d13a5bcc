"""Persistence collaborators for queue rows, listings, matches and profiles."""

from .base import ListingStore, MatchStore, ProfileStore, QueueStore
from .memory import MemoryStore
from .postgres import PostgresStore

__all__ = [
    "ListingStore",
    "MatchStore",
    "ProfileStore",
    "QueueStore",
    "MemoryStore",
    "PostgresStore",
]

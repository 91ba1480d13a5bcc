"""asyncpg-backed implementation of the storage protocols."""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg
from asyncpg import Connection, Pool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ConfigurationError, PersistenceError
from ..models import (
    ListingStatus,
    MatchRecord,
    NormalizedListing,
    QueueItem,
    QueueStatus,
    UserPreferenceProfile,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scraping_queue (
    id SERIAL PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    url TEXT NOT NULL,
    listing_id INTEGER,
    priority INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TIMESTAMP,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    data_needed TEXT[] NOT NULL DEFAULT '{}',
    metadata JSONB NOT NULL DEFAULT '{}',
    error_message TEXT,
    result JSONB,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    processing_started_at TIMESTAMP,
    processing_ended_at TIMESTAMP,

    CONSTRAINT uq_queue_source_url UNIQUE (source, url)
);

CREATE INDEX IF NOT EXISTS idx_queue_status_priority
    ON scraping_queue(status, priority DESC, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_source
    ON scraping_queue(source, status);

CREATE TABLE IF NOT EXISTS listings (
    id SERIAL PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    external_id VARCHAR(200) NOT NULL,
    url TEXT NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    description TEXT,
    has_contact BOOLEAN NOT NULL DEFAULT FALSE,
    image_count INTEGER NOT NULL DEFAULT 0,
    data JSONB NOT NULL,
    first_seen_at TIMESTAMP NOT NULL,
    last_updated_at TIMESTAMP NOT NULL,

    CONSTRAINT uq_listing_source_external UNIQUE (source, external_id)
);

CREATE INDEX IF NOT EXISTS idx_listings_status_updated
    ON listings(status, last_updated_at);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id TEXT PRIMARY KEY,
    preferences JSONB NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS user_matches (
    user_id TEXT NOT NULL,
    listing_id INTEGER NOT NULL,
    source VARCHAR(50) NOT NULL,
    score INTEGER NOT NULL,
    matched_criteria JSONB NOT NULL DEFAULT '[]',
    missed_criteria JSONB NOT NULL DEFAULT '[]',
    created_at TIMESTAMP NOT NULL,

    PRIMARY KEY (user_id, listing_id)
);
"""

TERMINAL_SQL = "scraping_queue.status IN ('completed', 'failed')"

UPSERT_QUEUE_SQL = f"""
INSERT INTO scraping_queue
    (source, url, listing_id, priority, status, data_needed, metadata, created_at, updated_at)
VALUES ($1, $2, $3, $4, 'pending', $5, $6, $8, $8)
ON CONFLICT (source, url) DO UPDATE
SET priority = GREATEST(scraping_queue.priority, EXCLUDED.priority),
    metadata = scraping_queue.metadata || $7::jsonb,
    listing_id = COALESCE(EXCLUDED.listing_id, scraping_queue.listing_id),
    data_needed = CASE WHEN {TERMINAL_SQL} THEN EXCLUDED.data_needed
        ELSE ARRAY(SELECT DISTINCT unnest(scraping_queue.data_needed || EXCLUDED.data_needed))
    END,
    attempts = CASE WHEN {TERMINAL_SQL} THEN 0 ELSE scraping_queue.attempts END,
    last_attempt_at = CASE WHEN {TERMINAL_SQL} THEN NULL ELSE scraping_queue.last_attempt_at END,
    error_message = CASE WHEN {TERMINAL_SQL} THEN NULL ELSE scraping_queue.error_message END,
    status = CASE WHEN {TERMINAL_SQL} THEN 'pending' ELSE scraping_queue.status END,
    updated_at = EXCLUDED.updated_at
RETURNING *
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


def _queue_item(row: asyncpg.Record) -> QueueItem:
    data = dict(row)
    data["data_needed"] = set(data.get("data_needed") or [])
    data["metadata"] = data.get("metadata") or {}
    return QueueItem.model_validate(data)


def _listing(row: asyncpg.Record) -> NormalizedListing:
    data = dict(row["data"])
    data.update(
        id=row["id"],
        status=row["status"],
        first_seen_at=row["first_seen_at"],
        last_updated_at=row["last_updated_at"],
    )
    return NormalizedListing.model_validate(data)


async def _init_connection(conn: Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresStore:
    """Queue, listing, match and profile tables in one Postgres database."""

    def __init__(self, dsn: Optional[str], *, min_size: int = 2, max_size: int = 10) -> None:
        """Initialize the store.

        Parameters
        ----------
        dsn : str
            PostgreSQL connection string
        min_size, max_size : int
            asyncpg pool bounds
        """
        if not dsn:
            raise ConfigurationError("DATABASE_URL is required for PostgresStore")
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[Pool] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type((OSError, asyncpg.PostgresError)),
        reraise=True,
    )
    async def _create_pool(self) -> Pool:
        return await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def connect(self) -> None:
        """Open the pool and make sure the tables exist."""
        if self._pool is not None:
            return
        self._pool = await self._create_pool()
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        LOGGER.info("Connected to Postgres and ensured tables exist")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Connection]:
        if self._pool is None:
            raise PersistenceError(f"{operation}: store is not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    # -- queue -------------------------------------------------------------

    async def upsert_queue_items(self, items: Sequence[QueueItem]) -> List[QueueItem]:
        now = utcnow()
        stored: List[QueueItem] = []
        async with self._connection("upsert_queue_items") as conn:
            async with conn.transaction():
                for item in items:
                    row = await conn.fetchrow(
                        UPSERT_QUEUE_SQL,
                        item.source,
                        item.url,
                        item.listing_id,
                        item.priority or 0,
                        sorted(c.value for c in item.data_needed),
                        item.metadata.model_dump(mode="json", exclude_none=True),
                        item.metadata.model_dump(mode="json", exclude_unset=True, exclude_none=True),
                        now,
                    )
                    stored.append(_queue_item(row))
        return stored

    async def select_eligible(
        self,
        *,
        limit: Optional[int],
        max_retries: int,
        retry_before: datetime,
        source: Optional[str] = None,
        per_source: Optional[int] = None,
    ) -> List[QueueItem]:
        async with self._connection("select_eligible") as conn:
            rows = await conn.fetch(
                """
                SELECT q.* FROM scraping_queue q
                JOIN (
                    SELECT id,
                           ROW_NUMBER() OVER (
                               PARTITION BY source
                               ORDER BY priority DESC, created_at ASC, id ASC
                           ) AS source_rank
                    FROM scraping_queue
                    WHERE status = 'pending'
                      AND attempts < $1
                      AND (last_attempt_at IS NULL OR last_attempt_at < $2)
                      AND ($3::text IS NULL OR source = $3)
                ) ranked ON ranked.id = q.id
                WHERE $4::int IS NULL OR ranked.source_rank <= $4
                ORDER BY q.priority DESC, q.created_at ASC, q.id ASC
                LIMIT $5
                """,
                max_retries,
                retry_before,
                source,
                per_source,
                limit,
            )
        return [_queue_item(row) for row in rows]

    async def claim(self, ids: Sequence[int]) -> List[QueueItem]:
        if not ids:
            return []
        now = utcnow()
        async with self._connection("claim") as conn:
            rows = await conn.fetch(
                """
                UPDATE scraping_queue
                SET status = 'processing',
                    processing_started_at = $2,
                    updated_at = $2
                WHERE id = ANY($1::int[]) AND status = 'pending'
                RETURNING *
                """,
                list(ids),
                now,
            )
        order = {item_id: index for index, item_id in enumerate(ids)}
        claimed = [_queue_item(row) for row in rows]
        claimed.sort(key=lambda item: order[item.id])
        return claimed

    async def get_queue_item(self, item_id: int) -> Optional[QueueItem]:
        async with self._connection("get_queue_item") as conn:
            row = await conn.fetchrow("SELECT * FROM scraping_queue WHERE id = $1", item_id)
        return _queue_item(row) if row else None

    async def complete_queue_item(self, item_id: int, result: Optional[Dict[str, Any]]) -> bool:
        listing_id = result.get("listing_id") if result else None
        async with self._connection("complete_queue_item") as conn:
            status = await conn.execute(
                """
                UPDATE scraping_queue
                SET status = 'completed',
                    result = $2,
                    error_message = NULL,
                    listing_id = COALESCE($3, listing_id),
                    processing_ended_at = $4,
                    updated_at = $4
                WHERE id = $1
                """,
                item_id,
                result,
                listing_id,
                utcnow(),
            )
        return _affected(status) > 0

    async def fail_queue_item(
        self,
        item_id: int,
        error: str,
        *,
        max_retries: int,
        retry: bool = True,
    ) -> Optional[QueueItem]:
        now = utcnow()
        async with self._connection("fail_queue_item") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT attempts, status FROM scraping_queue WHERE id = $1 FOR UPDATE",
                    item_id,
                )
                if row is None:
                    return None
                if row["status"] == QueueStatus.FAILED.value:
                    current = await conn.fetchrow("SELECT * FROM scraping_queue WHERE id = $1", item_id)
                    return _queue_item(current)

                attempts = row["attempts"] + 1
                terminal = not retry or attempts >= max_retries
                updated = await conn.fetchrow(
                    """
                    UPDATE scraping_queue
                    SET attempts = $2,
                        last_attempt_at = $3,
                        error_message = $4,
                        status = $5,
                        processing_ended_at = CASE WHEN $6 THEN $3 ELSE processing_ended_at END,
                        updated_at = $3
                    WHERE id = $1
                    RETURNING *
                    """,
                    item_id,
                    attempts,
                    now,
                    error,
                    QueueStatus.FAILED.value if terminal else QueueStatus.PENDING.value,
                    terminal,
                )
        return _queue_item(updated)

    async def delete_completed_before(self, cutoff: datetime) -> int:
        async with self._connection("delete_completed_before") as conn:
            status = await conn.execute(
                "DELETE FROM scraping_queue WHERE status = 'completed' AND updated_at < $1",
                cutoff,
            )
        return _affected(status)

    async def reset_failed(self) -> int:
        async with self._connection("reset_failed") as conn:
            status = await conn.execute(
                """
                UPDATE scraping_queue
                SET status = 'pending',
                    attempts = 0,
                    last_attempt_at = NULL,
                    error_message = NULL,
                    updated_at = $1
                WHERE status = 'failed'
                """,
                utcnow(),
            )
        return _affected(status)

    async def queue_counts(self) -> Dict[str, Any]:
        async with self._connection("queue_counts") as conn:
            status_rows = await conn.fetch(
                "SELECT status, COUNT(*) AS count FROM scraping_queue GROUP BY status"
            )
            source_rows = await conn.fetch(
                """
                SELECT source,
                       COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                       COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                       AVG(EXTRACT(EPOCH FROM processing_ended_at - processing_started_at))
                           FILTER (WHERE status = 'completed') AS avg_processing_seconds
                FROM scraping_queue
                GROUP BY source
                """
            )

        counts: Dict[str, Any] = {status.value: 0 for status in QueueStatus}
        for row in status_rows:
            counts[row["status"]] = row["count"]
        counts["total"] = sum(row["count"] for row in status_rows)
        counts["by_source"] = {
            row["source"]: {
                "pending": row["pending"],
                "processing": row["processing"],
                "avg_processing_seconds": float(row["avg_processing_seconds"] or 0.0),
            }
            for row in source_rows
        }
        return counts

    # -- listings ------------------------------------------------------------

    async def upsert_listing(self, listing: NormalizedListing) -> Tuple[int, bool]:
        now = utcnow()
        async with self._connection("upsert_listing") as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "SELECT * FROM listings WHERE source = $1 AND external_id = $2 FOR UPDATE",
                    listing.source,
                    listing.external_id,
                )
                merged = listing.model_copy(deep=True)
                if existing is not None:
                    old = _listing(existing)
                    merged.description = merged.description or old.description
                    if not merged.media.images:
                        merged.media.images = list(old.media.images)

                data = merged.model_dump(
                    mode="json",
                    exclude={"id", "status", "first_seen_at", "last_updated_at"},
                )
                listing_id = await conn.fetchval(
                    """
                    INSERT INTO listings
                        (source, external_id, url, status, description, has_contact,
                         image_count, data, first_seen_at, last_updated_at)
                    VALUES ($1, $2, $3, 'active', $4, $5, $6, $7, $8, $8)
                    ON CONFLICT (source, external_id) DO UPDATE
                    SET url = EXCLUDED.url,
                        status = 'active',
                        description = EXCLUDED.description,
                        has_contact = EXCLUDED.has_contact,
                        image_count = EXCLUDED.image_count,
                        data = EXCLUDED.data,
                        last_updated_at = EXCLUDED.last_updated_at
                    RETURNING id
                    """,
                    merged.source,
                    merged.external_id,
                    merged.url,
                    merged.description,
                    bool(merged.contact.name or merged.contact.phone or merged.contact.email),
                    len(merged.media.images),
                    data,
                    now,
                )
        return listing_id, existing is None

    async def get_listing(self, listing_id: int) -> Optional[NormalizedListing]:
        async with self._connection("get_listing") as conn:
            row = await conn.fetchrow("SELECT * FROM listings WHERE id = $1", listing_id)
        return _listing(row) if row else None

    async def find_stale_listings(self, updated_before: datetime, limit: int) -> List[NormalizedListing]:
        async with self._connection("find_stale_listings") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM listings
                WHERE status = 'active' AND last_updated_at < $1
                ORDER BY last_updated_at ASC
                LIMIT $2
                """,
                updated_before,
                limit,
            )
        return [_listing(row) for row in rows]

    async def find_incomplete_listings(self, limit: int) -> List[NormalizedListing]:
        async with self._connection("find_incomplete_listings") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM listings
                WHERE status = 'active'
                  AND (description IS NULL OR description = ''
                       OR NOT has_contact OR image_count = 0)
                ORDER BY id ASC
                LIMIT $1
                """,
                limit,
            )
        return [_listing(row) for row in rows]

    async def mark_listing_inactive(self, source: str, external_id: str) -> bool:
        async with self._connection("mark_listing_inactive") as conn:
            status = await conn.execute(
                """
                UPDATE listings SET status = $3, last_updated_at = $4
                WHERE source = $1 AND external_id = $2
                """,
                source,
                external_id,
                ListingStatus.INACTIVE.value,
                utcnow(),
            )
        return _affected(status) > 0

    async def count_listings(self, source: Optional[str] = None) -> int:
        async with self._connection("count_listings") as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM listings WHERE ($1::text IS NULL OR source = $1)",
                source,
            )

    # -- matches / profiles --------------------------------------------------

    async def upsert_matches(self, matches: Iterable[MatchRecord]) -> int:
        written = 0
        async with self._connection("upsert_matches") as conn:
            async with conn.transaction():
                for match in matches:
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO user_matches
                            (user_id, listing_id, source, score,
                             matched_criteria, missed_criteria, created_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (user_id, listing_id) DO UPDATE
                        SET score = EXCLUDED.score,
                            matched_criteria = EXCLUDED.matched_criteria,
                            missed_criteria = EXCLUDED.missed_criteria,
                            created_at = EXCLUDED.created_at
                        WHERE user_matches.score <= EXCLUDED.score
                        RETURNING 1
                        """,
                        match.user_id,
                        match.listing_id,
                        match.source,
                        match.score,
                        match.matched_criteria,
                        match.missed_criteria,
                        match.created_at,
                    )
                    if inserted:
                        written += 1
        return written

    async def list_matches(self, since: Optional[datetime] = None) -> List[MatchRecord]:
        async with self._connection("list_matches") as conn:
            rows = await conn.fetch(
                "SELECT * FROM user_matches WHERE ($1::timestamp IS NULL OR created_at >= $1)",
                since,
            )
        return [MatchRecord.model_validate(dict(row)) for row in rows]

    async def active_profiles(self) -> List[UserPreferenceProfile]:
        async with self._connection("active_profiles") as conn:
            rows = await conn.fetch(
                "SELECT user_id, preferences, is_active FROM user_profiles WHERE is_active"
            )
        return [
            UserPreferenceProfile.model_validate(
                {**row["preferences"], "user_id": row["user_id"], "is_active": row["is_active"]}
            )
            for row in rows
        ]

    async def upsert_profile(self, profile: UserPreferenceProfile) -> None:
        preferences = profile.model_dump(mode="json", exclude={"user_id", "is_active"})
        async with self._connection("upsert_profile") as conn:
            await conn.execute(
                """
                INSERT INTO user_profiles (user_id, preferences, is_active, updated_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id) DO UPDATE
                SET preferences = EXCLUDED.preferences,
                    is_active = EXCLUDED.is_active,
                    updated_at = EXCLUDED.updated_at
                """,
                profile.user_id,
                preferences,
                profile.is_active,
                utcnow(),
            )

"""Configuration objects for the crawl core.

Every component takes an explicit config dataclass. ``from_env`` constructors
read ``RENTCRAWL_*`` variables so deployments can tune the defaults without
code changes; ``load_settings`` loads ``.env`` first.
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

ENV_PREFIX = "RENTCRAWL_"


def _env(name: str) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}")


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from exc


def _require_positive(owner: str, **values: float) -> None:
    for name, value in values.items():
        if value is None or value <= 0:
            raise ConfigurationError(f"{owner}.{name} must be positive, got {value!r}")


@dataclass
class PoolConfig:
    """Resource pool limits and timers (seconds)."""

    max_sessions_per_source: int = 2
    max_units_per_session: int = 5
    max_total_sessions: int = 10
    session_timeout: float = 30 * 60
    auth_session_lifetime: float = 2 * 60 * 60
    cleanup_interval: float = 5 * 60
    max_release_errors: int = 5
    acquire_timeout: float = 120.0
    navigation_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> PoolConfig:
        return cls(
            max_sessions_per_source=_env_int("POOL_MAX_SESSIONS_PER_SOURCE", cls.max_sessions_per_source),
            max_units_per_session=_env_int("POOL_MAX_UNITS_PER_SESSION", cls.max_units_per_session),
            max_total_sessions=_env_int("POOL_MAX_TOTAL_SESSIONS", cls.max_total_sessions),
            session_timeout=_env_float("POOL_SESSION_TIMEOUT", cls.session_timeout),
            auth_session_lifetime=_env_float("POOL_AUTH_LIFETIME", cls.auth_session_lifetime),
            cleanup_interval=_env_float("POOL_CLEANUP_INTERVAL", cls.cleanup_interval),
            acquire_timeout=_env_float("POOL_ACQUIRE_TIMEOUT", cls.acquire_timeout),
            navigation_timeout=_env_float("POOL_NAVIGATION_TIMEOUT", cls.navigation_timeout),
        )

    def validate(self) -> None:
        _require_positive(
            "PoolConfig",
            max_sessions_per_source=self.max_sessions_per_source,
            max_units_per_session=self.max_units_per_session,
            max_total_sessions=self.max_total_sessions,
            session_timeout=self.session_timeout,
            auth_session_lifetime=self.auth_session_lifetime,
            cleanup_interval=self.cleanup_interval,
            acquire_timeout=self.acquire_timeout,
            navigation_timeout=self.navigation_timeout,
        )
        if self.max_sessions_per_source > self.max_total_sessions:
            raise ConfigurationError(
                "PoolConfig.max_sessions_per_source cannot exceed max_total_sessions"
            )


@dataclass
class PriorityWeights:
    """Additive signals used to rank queue items."""

    new: int = 1000
    incomplete: int = 500
    stale: int = 100
    per_missing_category: int = 100
    sources: Dict[str, int] = field(default_factory=dict)


@dataclass
class QueueConfig:
    """Work queue selection and retry policy."""

    batch_size: int = 50
    max_retries: int = 3
    retry_delay: float = 5 * 60  # seconds
    stale_threshold: float = 24 * 60 * 60  # seconds
    stale_scan_limit: int = 50
    incomplete_scan_limit: int = 100
    retention_days: int = 7
    priority_weights: PriorityWeights = field(default_factory=PriorityWeights)

    @classmethod
    def from_env(cls) -> QueueConfig:
        return cls(
            batch_size=_env_int("BATCH_SIZE", cls.batch_size),
            max_retries=_env_int("QUEUE_MAX_RETRIES", cls.max_retries),
            retry_delay=_env_float("QUEUE_RETRY_DELAY", cls.retry_delay),
            stale_threshold=_env_float("QUEUE_STALE_THRESHOLD", cls.stale_threshold),
            retention_days=_env_int("QUEUE_RETENTION_DAYS", cls.retention_days),
        )

    def validate(self) -> None:
        _require_positive(
            "QueueConfig",
            batch_size=self.batch_size,
            max_retries=self.max_retries,
            stale_threshold=self.stale_threshold,
            retention_days=self.retention_days,
        )
        if self.retry_delay < 0:
            raise ConfigurationError("QueueConfig.retry_delay must not be negative")


@dataclass
class CoordinatorConfig:
    """Coordinator concurrency, cycle intervals (minutes) and toggles."""

    max_concurrent_sources: int = 3
    max_concurrent_units: int = 10
    batch_size: int = 50
    discovery_interval: float = 30
    update_interval: float = 60
    health_interval: float = 5
    enable_auto_discovery: bool = True
    enable_auto_matching: bool = True
    enable_auto_cleanup: bool = True
    discovery_priority: int = 1000
    detail_priority: int = 500
    item_timeout: float = 60.0  # seconds
    failure_ratio_threshold: float = 0.5
    stuck_processing_threshold: int = 0
    error_buffer_size: int = 100

    @classmethod
    def from_env(cls) -> CoordinatorConfig:
        return cls(
            max_concurrent_sources=_env_int("MAX_CONCURRENT_SOURCES", cls.max_concurrent_sources),
            max_concurrent_units=_env_int("MAX_CONCURRENT_UNITS", cls.max_concurrent_units),
            batch_size=_env_int("BATCH_SIZE", cls.batch_size),
            discovery_interval=_env_float("DISCOVERY_INTERVAL", cls.discovery_interval),
            update_interval=_env_float("UPDATE_INTERVAL", cls.update_interval),
            health_interval=_env_float("HEALTH_INTERVAL", cls.health_interval),
            enable_auto_discovery=_env_bool("AUTO_DISCOVERY", cls.enable_auto_discovery),
            enable_auto_matching=_env_bool("AUTO_MATCHING", cls.enable_auto_matching),
            enable_auto_cleanup=_env_bool("AUTO_CLEANUP", cls.enable_auto_cleanup),
            item_timeout=_env_float("ITEM_TIMEOUT", cls.item_timeout),
        )

    def validate(self) -> None:
        _require_positive(
            "CoordinatorConfig",
            max_concurrent_sources=self.max_concurrent_sources,
            max_concurrent_units=self.max_concurrent_units,
            batch_size=self.batch_size,
            discovery_interval=self.discovery_interval,
            update_interval=self.update_interval,
            health_interval=self.health_interval,
            item_timeout=self.item_timeout,
            error_buffer_size=self.error_buffer_size,
        )

    def pool_config(
        self,
        base: Optional[PoolConfig] = None,
        *,
        derive_total: bool = True,
        derive_per_source: bool = True,
    ) -> PoolConfig:
        """Derive pool caps from the unit budget, as the coordinator expects.

        Caps that were set explicitly are kept by passing ``derive_*=False``.
        A derived per-source cap never exceeds the total cap.
        """
        pool = PoolConfig(**asdict(base)) if base else PoolConfig()
        if derive_total:
            pool.max_total_sessions = self.max_concurrent_units
        if derive_per_source:
            per_source = max(1, -(-self.max_concurrent_units // 3))
            pool.max_sessions_per_source = min(per_source, pool.max_total_sessions)
        return pool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MatchWeights:
    price: float = 0.35
    location: float = 0.30
    size: float = 0.15
    amenities: float = 0.10
    availability: float = 0.05
    property_type: float = 0.05

    def total(self) -> float:
        return sum(asdict(self).values())


@dataclass
class MatchPenalties:
    over_budget: float = 40
    wrong_district: float = 30
    missing_amenity: float = 5
    wrong_property_type: float = 20


@dataclass
class MatchBonuses:
    under_budget: float = 10
    extra_amenities: float = 5
    immediate_availability: float = 10


@dataclass
class MatchConfig:
    weights: MatchWeights = field(default_factory=MatchWeights)
    penalties: MatchPenalties = field(default_factory=MatchPenalties)
    bonuses: MatchBonuses = field(default_factory=MatchBonuses)

    def validate(self) -> None:
        if abs(self.weights.total() - 1.0) > 1e-6:
            raise ConfigurationError(
                f"MatchConfig weights must sum to 1, got {self.weights.total():.3f}"
            )


@dataclass
class Settings:
    """Everything the CLI needs to assemble a coordinator."""

    coordinator: CoordinatorConfig
    pool: PoolConfig
    queue: QueueConfig
    match: MatchConfig
    database_url: Optional[str] = None
    sources_file: Optional[Path] = None

    def validate(self) -> None:
        self.coordinator.validate()
        self.pool.validate()
        self.queue.validate()
        self.match.validate()


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Load ``.env`` and build validated settings from the environment."""
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    coordinator = CoordinatorConfig.from_env()
    queue = QueueConfig.from_env()
    queue.batch_size = coordinator.batch_size
    pool = coordinator.pool_config(
        PoolConfig.from_env(),
        derive_total=_env("POOL_MAX_TOTAL_SESSIONS") is None,
        derive_per_source=_env("POOL_MAX_SESSIONS_PER_SOURCE") is None,
    )
    sources_file = _env("SOURCES_FILE")

    settings = Settings(
        coordinator=coordinator,
        pool=pool,
        queue=queue,
        match=MatchConfig(),
        database_url=_env("DATABASE_URL") or os.getenv("DATABASE_URL"),
        sources_file=Path(sources_file).expanduser() if sources_file else None,
    )
    settings.validate()
    return settings

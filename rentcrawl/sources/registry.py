"""Registry of source adapters and their per-source settings."""
from __future__ import annotations

import importlib
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..errors import ConfigurationError
from .base import SourceAdapter

LOGGER = logging.getLogger(__name__)


class SourceConfig(BaseModel):
    """Per-source settings, usually one entry of the sources YAML file."""

    enabled: bool = True
    max_requests_per_hour: int = Field(default=60, gt=0)
    request_delay: Optional[float] = Field(default=None, ge=0)  # seconds
    requires_auth: bool = False
    credentials_env: List[str] = Field(default_factory=list)
    priority_weight: int = 0
    search_filters: Dict[str, Any] = Field(default_factory=dict)
    adapter: Optional[str] = None  # "package.module:Class"
    browser: Dict[str, Any] = Field(default_factory=dict)

    def delay_seconds(self) -> float:
        if self.request_delay is not None:
            return self.request_delay
        return 3600.0 / self.max_requests_per_hour


def load_adapter(path: str) -> SourceAdapter:
    """Instantiate an adapter from a ``package.module:Class`` path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Adapter path must look like 'package.module:Class', got {path!r}")
    try:
        module = importlib.import_module(module_name)
        adapter_cls = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load adapter {path!r}: {exc}") from exc
    return adapter_cls()


class SourceRegistry:
    """Adapters keyed by source name, each with a ``SourceConfig``."""

    def __init__(self) -> None:
        self._adapters: Dict[str, SourceAdapter] = {}
        self._configs: Dict[str, SourceConfig] = {}

    def __contains__(self, source: str) -> bool:
        return source in self._adapters

    def register(self, adapter: SourceAdapter, config: Optional[SourceConfig] = None) -> None:
        if adapter.source in self._adapters:
            LOGGER.warning("Source %s is already registered, overwriting", adapter.source)
        self._adapters[adapter.source] = adapter
        self._configs[adapter.source] = config or self._configs.get(adapter.source) or SourceConfig()
        LOGGER.info("Registered source: %s", adapter.source)

    def get_adapter(self, source: str) -> SourceAdapter:
        adapter = self._adapters.get(source)
        if adapter is None:
            raise ConfigurationError(
                f"Unknown source: {source}. Available sources: {', '.join(self.sources()) or 'none'}"
            )
        if not self._configs[source].enabled:
            raise ConfigurationError(f"Source {source} is currently disabled")
        return adapter

    def sources(self) -> List[str]:
        return list(self._adapters)

    def enabled_sources(self) -> List[str]:
        return [source for source in self._adapters if self._configs[source].enabled]

    def get_config(self, source: str) -> SourceConfig:
        config = self._configs.get(source)
        if config is None:
            raise ConfigurationError(f"No configuration found for source: {source}")
        return config

    def update_config(self, source: str, **changes: Any) -> SourceConfig:
        config = self.get_config(source).model_copy(update=changes)
        self._configs[source] = SourceConfig.model_validate(config.model_dump())
        LOGGER.info("Updated configuration for source: %s", source)
        return self._configs[source]

    def set_enabled(self, source: str, enabled: bool) -> None:
        self.get_config(source).enabled = enabled
        LOGGER.info("Source %s is now %s", source, "enabled" if enabled else "disabled")

    def request_delay(self, source: str) -> float:
        """Seconds to wait between two items of ``source``."""
        config = self._configs.get(source)
        return config.delay_seconds() if config else 3.0

    def priority_weights(self) -> Dict[str, int]:
        return {source: config.priority_weight for source, config in self._configs.items()}

    def credentials(self, source: str) -> Dict[str, str]:
        """Values of the source's credential variables that are set."""
        return {
            name: os.environ[name]
            for name in self.get_config(source).credentials_env
            if os.environ.get(name)
        }

    def load_config_file(self, path: Union[str, Path]) -> List[str]:
        """Apply a YAML mapping of ``source -> SourceConfig``.

        Entries with an ``adapter`` path register that adapter when the source
        is not registered yet. Returns the sources that were configured.
        """
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read sources file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError("sources file must be a mapping of source name to settings")

        loaded: List[str] = []
        for source, raw in data.items():
            try:
                config = SourceConfig.model_validate(raw or {})
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid configuration for source {source}: {exc}") from exc

            if source not in self._adapters and config.adapter:
                adapter = load_adapter(config.adapter)
                if adapter.source != source:
                    raise ConfigurationError(
                        f"Adapter {config.adapter} serves {adapter.source!r}, not {source!r}"
                    )
                self.register(adapter, config)
            elif source in self._adapters:
                self._configs[source] = config
            else:
                LOGGER.warning("Config found for unregistered source: %s", source)
                continue
            LOGGER.info("Loaded config for %s from %s", source, path)
            loaded.append(source)
        return loaded

    def validate(self) -> None:
        """Fail fast when an auth-required source has no credentials."""
        for source in self.enabled_sources():
            config = self._configs[source]
            if not config.requires_auth:
                continue
            if not config.credentials_env:
                raise ConfigurationError(f"Source {source} requires auth but names no credentials_env")
            missing = [name for name in config.credentials_env if not os.environ.get(name)]
            if missing:
                raise ConfigurationError(
                    f"Source {source} requires auth; missing environment variables: {', '.join(missing)}"
                )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_sources": len(self._adapters),
            "enabled_sources": len(self.enabled_sources()),
            "sources": [
                {
                    "source": source,
                    "enabled": config.enabled,
                    "requires_auth": config.requires_auth,
                    "requests_per_hour": config.max_requests_per_hour,
                }
                for source, config in self._configs.items()
            ],
        }

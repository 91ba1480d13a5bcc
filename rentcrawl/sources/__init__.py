"""Source adapters and the registry the coordinator reads them from."""

from .base import BaseSourceAdapter, SourceAdapter
from .registry import SourceConfig, SourceRegistry, load_adapter

__all__ = [
    "BaseSourceAdapter",
    "SourceAdapter",
    "SourceConfig",
    "SourceRegistry",
    "load_adapter",
]

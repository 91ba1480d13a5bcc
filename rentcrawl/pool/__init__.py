"""Bounded pool of per-source browser sessions.

Sessions are heavy (a browser with its context); units are the pages checked
out of them. The pool enforces per-session, per-source and global caps and
parks callers in a priority-ordered wait list when every cap is reached.
"""

from .pool import Lease, ResourcePool
from .session import (
    BrowserSettings,
    PlaywrightSession,
    PlaywrightSessionFactory,
    SessionFactory,
    SessionHandle,
    WorkerSession,
)

__all__ = [
    "Lease",
    "ResourcePool",
    "BrowserSettings",
    "PlaywrightSession",
    "PlaywrightSessionFactory",
    "SessionFactory",
    "SessionHandle",
    "WorkerSession",
]

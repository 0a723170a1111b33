"""Sync module - scheduling, token renewal and sync state persistence."""

from .locks import AccountLocks
from .retry import RetryConfig, retry_with_backoff
from .scheduler import SyncScheduler
from .snapshot import EventSnapshots
from .state_store import SyncStateStore
from .token_refresher import TokenRefresher

__all__ = [
    "AccountLocks",
    "RetryConfig",
    "retry_with_backoff",
    "SyncScheduler",
    "EventSnapshots",
    "SyncStateStore",
    "TokenRefresher",
]

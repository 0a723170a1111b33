"""Core data types: accounts, events, sync state."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

__all__ = [
    "Provider",
    "Account",
    "Event",
    "TimeRange",
    "SyncStatus",
    "SyncState",
    "FetchResult",
]


class Provider(str, Enum):
    """Supported calendar providers."""

    ICLOUD = "icloud"
    GOOGLE = "google"


@dataclass(frozen=True)
class Account:
    """A configured calendar account."""

    label: str
    provider: Provider
    credential_ref: str


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval [start, end) of timezone-aware datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeRange bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("TimeRange end precedes start")

    @classmethod
    def around(
        cls, now: Optional[datetime] = None, past_days: int = 7, future_days: int = 60
    ) -> "TimeRange":
        """Window of ``past_days`` before and ``future_days`` after ``now``."""
        now = now or datetime.now(timezone.utc)
        return cls(now - timedelta(days=past_days), now + timedelta(days=future_days))

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # Zero-length events at the range start still count
        if start == end:
            return self.start <= start < self.end
        return start < self.end and end > self.start


@dataclass(frozen=True)
class Event:
    """A calendar event as handed to the widget layer."""

    id: str
    start: datetime
    end: datetime
    title: str
    source_account: str
    recurrence_rule: Optional[str] = None
    all_day: bool = False
    calendar: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    # Series occurrences that were cancelled or replaced by an override
    exdates: tuple[datetime, ...] = ()

    def occurs_within(self, time_range: TimeRange) -> bool:
        """Check whether this event (or one of its recurrences) hits the range."""
        if self.recurrence_rule is None:
            return time_range.overlaps(self.start, self.end)
        # Imported lazily: only recurring events need dateutil
        from .recurrence import recurs_within

        return recurs_within(self, time_range)


class SyncStatus(str, Enum):
    """Per-account sync health."""

    OK = "ok"
    NEEDS_REAUTH = "needs_reauth"
    BACKOFF = "backoff"


@dataclass
class SyncState:
    """Durable per-account sync bookkeeping."""

    account_label: str
    cursor: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None
    status: SyncStatus = SyncStatus.OK
    backoff_attempts: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None

    @property
    def needs_reauth(self) -> bool:
        return self.status == SyncStatus.NEEDS_REAUTH

    def describe(self) -> str:
        """Human-readable status, e.g. ``Backoff(3)``."""
        if self.status == SyncStatus.BACKOFF:
            return f"Backoff({self.backoff_attempts})"
        if self.status == SyncStatus.NEEDS_REAUTH:
            return "NeedsReauth"
        return "Ok"


@dataclass
class FetchResult:
    """Result of one provider fetch.

    A ``full`` result replaces the account's snapshot. Otherwise events from
    ``replaced_calendars`` are dropped, ``deleted_ids`` removed, and
    ``events`` upserted by id. ``exdates`` maps a series id to occurrence
    instants to drop from that series.
    """

    events: list[Event] = field(default_factory=list)
    cursor: Optional[str] = None
    full: bool = True
    replaced_calendars: set[str] = field(default_factory=set)
    deleted_ids: set[str] = field(default_factory=set)
    exdates: dict[str, set[datetime]] = field(default_factory=dict)

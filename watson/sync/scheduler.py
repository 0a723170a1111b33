"""Background synchronization of all accounts.

Each account gets an interval job on an APScheduler BackgroundScheduler
backed by a bounded thread pool. A run takes the account lock, makes sure
the token is fresh, fetches with the stored cursor, publishes the merged
snapshot and commits the new cursor. Failures are recorded in SyncState
and never escape the job.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..auth.account_credentials import AccountCredentials
from ..auth.credentials import CredentialPayload
from ..cancellation import CancellationToken
from ..config import SyncSettings, TokenSettings
from ..errors import (
    AuthError,
    Cancelled,
    CursorInvalid,
    IntegrityError,
    NetworkError,
    NotFound,
    WatsonError,
)
from ..models import Event, FetchResult, Provider, SyncState, SyncStatus, TimeRange
from ..providers.base import ProviderAdapter
from .locks import AccountLocks
from .retry import calculate_delay
from .snapshot import EventSnapshots
from .state_store import SyncStateStore
from .token_refresher import TokenRefresher

__all__ = ["SyncScheduler"]

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "refresh-tokens"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncScheduler:
    """Runs per-account sync jobs with backoff and incremental cursors."""

    def __init__(
        self,
        settings: SyncSettings,
        adapters: dict[Provider, ProviderAdapter],
        credentials: AccountCredentials,
        state_store: SyncStateStore,
        refresher: TokenRefresher,
        locks: AccountLocks,
        snapshots: Optional[EventSnapshots] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_events: Optional[Callable[[str, tuple[Event, ...]], None]] = None,
        token_settings: Optional[TokenSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the scheduler.

        Args:
            settings: Interval, worker pool and backoff configuration
            adapters: Provider adapter registry
            credentials: Encrypted credential access
            state_store: Durable SyncState
            refresher: Token refresher sharing ``locks``
            locks: Per-account locks
            snapshots: Published event snapshots
            cancel_token: Set on shutdown; checked by network loops
            on_events: Consumer callback receiving each published snapshot
            token_settings: Interval of the periodic token check
            clock: Source of the current aware datetime
        """
        self.settings = settings
        self.adapters = adapters
        self.credentials = credentials
        self.state_store = state_store
        self.refresher = refresher
        self.locks = locks
        self.snapshots = snapshots or EventSnapshots()
        self.cancel_token = cancel_token or CancellationToken()
        self.on_events = on_events
        self.token_settings = token_settings or TokenSettings()
        self._clock = clock

        self._labels: set[str] = set()
        self._labels_lock = threading.Lock()
        self._inflight = 0
        self._inflight_cond = threading.Condition()

        self.scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=settings.max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone=timezone.utc,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def labels(self) -> set[str]:
        with self._labels_lock:
            return set(self._labels)

    # Lifecycle

    def start(self, labels: Iterable[str] = ()) -> None:
        """Start the scheduler and an initial sync for each account."""
        self.scheduler.add_job(
            self._check_tokens,
            trigger=IntervalTrigger(seconds=self.token_settings.check_interval_seconds),
            id=REFRESH_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        for label in labels:
            self.add_account(label)
        logger.info(
            f"Sync scheduler started ({len(self.labels())} accounts, "
            f"{self.settings.max_workers} workers)"
        )

    def shutdown(self, grace_seconds: Optional[float] = None) -> bool:
        """Cancel in-flight work and stop the scheduler.

        Returns:
            True if every in-flight run finished within the grace period
        """
        if grace_seconds is None:
            grace_seconds = self.settings.shutdown_grace_seconds
        self.cancel_token.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        with self._inflight_cond:
            finished = self._inflight_cond.wait_for(
                lambda: self._inflight == 0, timeout=grace_seconds
            )
        if finished:
            logger.info("Sync scheduler stopped")
        else:
            logger.warning(f"{self._inflight} sync runs still active after {grace_seconds}s")
        return finished

    # Account jobs

    def add_account(self, label: str, run_now: bool = True) -> None:
        with self._labels_lock:
            self._labels.add(label)
        if not self.scheduler.running:
            return
        # An explicit next_run_time of None would add the job paused
        extra = {"next_run_time": self._clock()} if run_now else {}
        self.scheduler.add_job(
            self.run,
            trigger=IntervalTrigger(seconds=self.settings.interval_seconds),
            args=[label],
            id=f"sync:{label}",
            replace_existing=True,
            **extra,
        )

    def remove_account(self, label: str) -> None:
        with self._labels_lock:
            self._labels.discard(label)
        for prefix in ("sync", "retry", "sync-now"):
            self._remove_job(f"{prefix}:{label}")
        self.snapshots.drop(label)

    def _remove_job(self, job_id: str) -> None:
        if not self.scheduler.running:
            return
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def trigger(self, label: str) -> None:
        """Queue an immediate sync without waiting for it."""
        if not self.scheduler.running:
            logger.debug(f"Scheduler not running, ignoring trigger for {label}")
            return
        self.scheduler.add_job(
            self.run,
            args=[label],
            kwargs={"force": True},
            id=f"sync-now:{label}",
            replace_existing=True,
        )

    def _check_tokens(self) -> None:
        self.refresher.check_all(self.labels(), is_cancelled=lambda: self.cancel_token.cancelled)

    def _schedule_retry(self, label: str, attempts: int) -> float:
        delay = calculate_delay(
            attempts - 1,
            base_delay=self.settings.backoff_base_seconds,
            max_delay=self.settings.backoff_max_seconds,
        )
        if self.scheduler.running:
            self.scheduler.add_job(
                self.run,
                trigger=DateTrigger(run_date=self._clock() + timedelta(seconds=delay)),
                args=[label],
                kwargs={"force": True},
                id=f"retry:{label}",
                replace_existing=True,
            )
        return delay

    # Running

    def run(self, label: str, force: bool = False) -> SyncState:
        """Synchronize one account. Never raises for provider or storage errors.

        Args:
            label: Account label
            force: Run even while the account is backing off
        """
        if self.cancel_token.cancelled:
            return self.state_store.get(label)

        with self._inflight_cond:
            self._inflight += 1
        try:
            with self.locks.get(label):
                return self._run_locked(label, force)
        finally:
            with self._inflight_cond:
                self._inflight -= 1
                self._inflight_cond.notify_all()

    def _run_locked(self, label: str, force: bool) -> SyncState:
        state = self.state_store.get(label)
        if state.needs_reauth:
            logger.debug(f"Skipping {label}: waiting for re-authentication")
            return state
        if (
            not force
            and state.status == SyncStatus.BACKOFF
            and state.next_retry_at is not None
            and self._clock() < state.next_retry_at
        ):
            logger.debug(f"Skipping {label}: backing off until {state.next_retry_at.isoformat()}")
            return state

        try:
            self._sync(label, state)
        except Cancelled:
            logger.info(f"Sync of {label} cancelled, state not committed")
            return self.state_store.get(label)
        except NotFound:
            logger.info(f"Account {label} was removed during sync")
            return state
        except (AuthError, IntegrityError) as e:
            # Covers ReauthRequired
            state.status = SyncStatus.NEEDS_REAUTH
            state.backoff_attempts = 0
            state.last_error = str(e)
            state.next_retry_at = None
            logger.warning(f"Sync of {label} needs re-authentication: {e}")
            self._remove_job(f"retry:{label}")
        except NetworkError as e:
            state.status = SyncStatus.BACKOFF
            state.backoff_attempts += 1
            state.last_error = str(e)
            delay = self._schedule_retry(label, state.backoff_attempts)
            state.next_retry_at = self._clock() + timedelta(seconds=delay)
            logger.warning(
                f"Sync of {label} failed ({state.describe()}), retrying in {delay:.0f}s: {e}"
            )
        except WatsonError as e:
            state.last_error = str(e)
            logger.error(f"Sync of {label} failed: {e}")

        try:
            self.state_store.save(state)
        except WatsonError as e:
            logger.error(f"Could not record sync state for {label}: {e}")
        return state

    def _sync(self, label: str, state: SyncState) -> None:
        provider, payload = self.credentials.load(label)
        payload = self.refresher.ensure_fresh(label, provider, payload)

        now = self._clock()
        full_due = state.last_full_sync_at is None or (
            now - state.last_full_sync_at >= timedelta(hours=self.settings.full_resync_hours)
        )
        # A cursor only describes changes relative to a snapshot held in memory
        full_due = full_due or not self.snapshots.has(label)
        cursor = None if full_due else state.cursor
        time_range = TimeRange.around(
            now, self.settings.window_past_days, self.settings.window_future_days
        )

        try:
            result = self._fetch(label, provider, payload, time_range, cursor)
        except CursorInvalid as e:
            logger.info(f"Cursor for {label} rejected ({e}), running full resync")
            state.cursor = None
            result = self._fetch(label, provider, payload, time_range, None)

        # Nothing is committed once shutdown started
        self.cancel_token.raise_if_cancelled()

        events = self.snapshots.apply(label, result)

        state.cursor = result.cursor
        if state.last_synced_at is not None and now <= state.last_synced_at:
            now = state.last_synced_at + timedelta(microseconds=1)
        state.last_synced_at = now
        if result.full:
            state.last_full_sync_at = now
        state.status = SyncStatus.OK
        state.backoff_attempts = 0
        state.last_error = None
        state.next_retry_at = None
        self._remove_job(f"retry:{label}")
        logger.info(f"Synced {label}: {len(events)} events (full={result.full})")

        if self.on_events is not None:
            try:
                self.on_events(label, events)
            except Exception as e:
                logger.error(f"Event consumer failed for {label}: {e}")

    def _fetch(
        self,
        label: str,
        provider: Provider,
        payload: CredentialPayload,
        time_range: TimeRange,
        cursor: Optional[str],
    ) -> FetchResult:
        adapter = self.adapters[provider]
        try:
            return adapter.fetch_events(payload, time_range, cursor, label)
        except AuthError as e:
            if not adapter.supports_refresh:
                raise
            # An expired access token is not a revoked grant
            logger.info(f"Access token for {label} rejected, forcing refresh")
            payload = self.refresher.ensure_fresh(label, provider, payload, force=True)
        return adapter.fetch_events(payload, time_range, cursor, label)

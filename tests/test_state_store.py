"""Tests for SQLite sync state persistence and event snapshots."""

import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fakes import make_event

from watson.models import FetchResult, SyncState, SyncStatus
from watson.sync.snapshot import EventSnapshots
from watson.sync.state_store import SyncStateStore


class TestSyncStateStore:
    """Tests for SyncStateStore."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "sync_state.db"
        self.store = SyncStateStore(self.db_path)

    def teardown_method(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_returns_fresh_state(self):
        state = self.store.get("Personal")

        assert state.account_label == "Personal"
        assert state.cursor is None
        assert state.status == SyncStatus.OK

    def test_save_and_get(self):
        synced = datetime(2026, 1, 10, 9, 30, 0, 123456, tzinfo=timezone.utc)
        self.store.save(
            SyncState(
                account_label="Personal",
                cursor='{"/cal/": "ctag"}',
                last_synced_at=synced,
                last_full_sync_at=synced,
                status=SyncStatus.BACKOFF,
                backoff_attempts=3,
                last_error="timeout",
                next_retry_at=synced + timedelta(minutes=4),
            )
        )

        state = self.store.get("Personal")

        assert state.cursor == '{"/cal/": "ctag"}'
        assert state.last_synced_at == synced
        assert state.last_synced_at.tzinfo is not None
        assert state.status == SyncStatus.BACKOFF
        assert state.describe() == "Backoff(3)"
        assert state.last_error == "timeout"
        assert state.next_retry_at == synced + timedelta(minutes=4)

    def test_save_replaces(self):
        self.store.save(SyncState(account_label="Work", cursor="a"))
        self.store.save(SyncState(account_label="Work", cursor="b"))

        assert self.store.get("Work").cursor == "b"
        assert len(self.store.get_all()) == 1

    def test_delete(self):
        self.store.save(SyncState(account_label="Work", cursor="a"))

        self.store.delete("Work")

        assert self.store.get("Work").cursor is None
        assert self.store.get_all() == {}

    def test_persists_across_instances(self):
        self.store.save(SyncState(account_label="Work", status=SyncStatus.NEEDS_REAUTH))
        self.store.close()

        reopened = SyncStateStore(self.db_path)
        try:
            assert reopened.get("Work").needs_reauth
        finally:
            reopened.close()

    def test_writes_from_other_threads(self):
        def writer(label):
            self.store.save(SyncState(account_label=label, cursor=label))

        threads = [threading.Thread(target=writer, args=(f"acct-{i}",)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert set(self.store.get_all()) == {f"acct-{i}" for i in range(5)}


class TestEventSnapshots:
    """Tests for EventSnapshots."""

    def setup_method(self):
        self.snapshots = EventSnapshots()
        self.home = make_event("home-1", 10, 9, "Dentist", "Personal", calendar="/home/")
        self.work = make_event("work-1", 9, 9, "Standup", "Personal", calendar="/work/")

    def test_empty_by_default(self):
        assert self.snapshots.get("Personal") == ()

    def test_full_replaces_and_sorts(self):
        self.snapshots.apply("Personal", FetchResult(events=[make_event("old", 1, 9, "Old", "Personal")]))

        published = self.snapshots.apply("Personal", FetchResult(events=[self.home, self.work]))

        assert published == (self.work, self.home)
        assert self.snapshots.get("Personal") == published

    def test_incremental_merge(self):
        self.snapshots.apply("Personal", FetchResult(events=[self.home, self.work]))
        moved = make_event("home-1", 11, 9, "Dentist (moved)", "Personal", calendar="/home/")
        extra = make_event("home-2", 12, 9, "Lunch", "Personal", calendar="/home/")

        published = self.snapshots.apply(
            "Personal", FetchResult(events=[moved, extra], full=False)
        )

        assert [e.title for e in published] == ["Standup", "Dentist (moved)", "Lunch"]

    def test_incremental_deletes_and_replaced_calendars(self):
        self.snapshots.apply("Personal", FetchResult(events=[self.home, self.work]))

        assert self.snapshots.apply(
            "Personal", FetchResult(full=False, deleted_ids={"home-1"})
        ) == (self.work,)
        assert self.snapshots.apply(
            "Personal", FetchResult(full=False, replaced_calendars={"/work/"})
        ) == ()

    def test_drop(self):
        self.snapshots.apply("Personal", FetchResult(events=[self.home]))

        self.snapshots.drop("Personal")

        assert self.snapshots.get("Personal") == ()
        assert not self.snapshots.has("Personal")

    def test_has_after_first_publish(self):
        assert not self.snapshots.has("Personal")

        self.snapshots.apply("Personal", FetchResult())

        assert self.snapshots.has("Personal")

    def test_exdates_applied_to_series(self):
        series = make_event("series", 5, 8, "Standup", "Personal", recurrence_rule="FREQ=DAILY")
        skipped = datetime(2026, 1, 6, 8, tzinfo=timezone.utc)
        moved = datetime(2026, 1, 7, 8, tzinfo=timezone.utc)

        self.snapshots.apply(
            "Personal",
            FetchResult(events=[series, self.home], exdates={"series": {skipped}, "home-1": {moved}}),
        )
        published = self.snapshots.apply(
            "Personal", FetchResult(full=False, events=[series], exdates={"series": {moved}})
        )

        events = {e.id: e for e in published}
        assert events["series"].exdates == (skipped, moved)
        assert events["home-1"].exdates == ()

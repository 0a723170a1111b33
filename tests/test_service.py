"""End-to-end tests for SyncService with scripted providers."""

import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fakes import FakeAdapter, make_event

from watson.auth.credentials import AuthorizationCode, PasswordCredential
from watson.config import Config
from watson.errors import (
    AuthError,
    DuplicateAccount,
    KeyUnavailable,
    NetworkError,
    NotFound,
    ReauthRequired,
)
from watson.models import Account, Event, FetchResult, Provider, SyncStatus, TimeRange
from watson.service import SyncService

UTC = timezone.utc
JANUARY = TimeRange(datetime(2026, 1, 1, tzinfo=UTC), datetime(2026, 2, 1, tzinfo=UTC))


class TestSyncService:
    """Tests for the SyncService surface."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config = Config(data_dir=str(self.temp_dir / "data"))
        self.icloud = FakeAdapter(Provider.ICLOUD)
        self.google = FakeAdapter(Provider.GOOGLE, supports_refresh=True)
        self.service = self._open()

    def teardown_method(self):
        self.service.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _open(self, **kwargs) -> SyncService:
        adapters = {Provider.ICLOUD: self.icloud, Provider.GOOGLE: self.google}
        return SyncService(self.config, adapters=adapters, **kwargs)

    def _add_personal(self) -> Account:
        return self.service.add_account(
            "Personal",
            Provider.ICLOUD,
            {"apple_id": "me@icloud.com", "password": "abcd-efgh-ijkl-mnop"},
        )

    def test_add_account(self):
        account = self._add_personal()

        assert account.label == "Personal"
        assert account.provider == Provider.ICLOUD
        assert self.service.list_accounts() == {account}

    def test_credential_not_stored_in_plaintext(self):
        self._add_personal()

        for path in (self.temp_dir / "data" / "credentials").iterdir():
            assert b"abcd-efgh-ijkl-mnop" not in path.read_bytes()

    def test_duplicate_label(self):
        self._add_personal()

        with pytest.raises(DuplicateAccount):
            self.service.add_account("Personal", Provider.ICLOUD, PasswordCredential("x", "y"))

    def test_empty_label(self):
        with pytest.raises(ValueError):
            self.service.add_account("  ", Provider.ICLOUD, PasswordCredential("x", "y"))

    def test_incomplete_secret(self):
        with pytest.raises(ValueError):
            self.service.add_account("Personal", Provider.ICLOUD, {"apple_id": "me@icloud.com"})

    def test_rejected_secret_stores_nothing(self):
        self.icloud.auth_error = AuthError("401")

        with pytest.raises(AuthError):
            self._add_personal()

        assert self.service.list_accounts() == set()

    def test_personal_icloud_scenario(self):
        self._add_personal()
        standup = make_event("standup", 9, 8, "Standup", "Personal")
        dentist = make_event("dentist", 10, 9, "Dentist", "Personal")
        february = Event(
            id="later",
            start=datetime(2026, 2, 15, 9, tzinfo=UTC),
            end=datetime(2026, 2, 15, 10, tzinfo=UTC),
            title="Later",
            source_account="Personal",
        )
        self.icloud.results = [FetchResult(events=[dentist, february, standup], cursor="c1")]

        state = self.service.sync_now("Personal")

        assert state.status == SyncStatus.OK
        assert state.last_synced_at is not None
        assert self.service.get_events("Personal", JANUARY) == [standup, dentist]
        assert self.service.get_sync_state("Personal").cursor == "c1"

    def test_restart_resyncs_in_full(self):
        self._add_personal()
        dentist = make_event("dentist", 10, 9, "Dentist", "Personal")
        self.icloud.results = [FetchResult(events=[dentist], cursor="c1")]
        self.service.sync_now("Personal")
        self.service.shutdown()

        self.service = self._open()
        self.icloud.results = [FetchResult(events=[dentist], cursor="c2")]
        state = self.service.sync_now("Personal")

        assert self.icloud.fetch_calls[-1][1] is None
        assert state.cursor == "c2"
        assert self.service.get_events("Personal", JANUARY) == [dentist]

    def test_sync_now_runs_during_backoff(self):
        self._add_personal()
        self.icloud.results = [NetworkError("timeout")]

        assert self.service.sync_now("Personal").describe() == "Backoff(1)"
        assert self.service.sync_now("Personal").status == SyncStatus.OK
        assert len(self.icloud.fetch_calls) == 2

    def test_get_events_before_first_sync(self):
        self._add_personal()

        assert self.service.get_events("Personal", JANUARY) == []

    def test_unknown_account(self):
        with pytest.raises(NotFound):
            self.service.trigger_sync("Ghost")
        with pytest.raises(NotFound):
            self.service.get_events("Ghost", JANUARY)
        with pytest.raises(NotFound):
            self.service.remove_account("Ghost")

    def test_remove_account(self):
        self._add_personal()
        self.service.sync_now("Personal")

        self.service.remove_account("Personal")

        assert self.service.list_accounts() == set()
        assert self.service.snapshots.get("Personal") == ()
        assert "Personal" not in self.service.state_store.get_all()
        with pytest.raises(NotFound):
            self.service.get_events("Personal", JANUARY)

    def test_google_revoked_token_scenario(self):
        self.service.add_account(
            "Work",
            Provider.GOOGLE,
            AuthorizationCode(code="4/abc", redirect_uri="http://127.0.0.1:5555/callback"),
        )
        self.google.results = [AuthError("401 access token rejected")]
        self.google.refresh_error = ReauthRequired("invalid_grant")

        state = self.service.sync_now("Work")

        assert state.status == SyncStatus.NEEDS_REAUTH
        assert self.service.get_sync_state("Work").needs_reauth
        self.service.sync_now("Work")
        assert len(self.google.fetch_calls) == 1

        self.google.refresh_error = None
        self.service.reauthenticate_account(
            "Work", {"code": "4/new", "redirect_uri": "http://127.0.0.1:5555/callback"}
        )

        assert self.service.get_sync_state("Work").status == SyncStatus.OK
        assert self.service.sync_now("Work").status == SyncStatus.OK
        assert self.google.fetch_calls[-1][0].access_token == "access-4/new"

    def test_rotate_key_scenario(self):
        self._add_personal()
        self.service.add_account(
            "Work", Provider.GOOGLE, AuthorizationCode(code="4/abc", redirect_uri="http://x")
        )

        self.service.rotate_key()

        assert self.service.key_manager.master_key.version == 2
        for label in ("Personal", "Work"):
            assert self.service.store.get(label).key_version == 2
            assert self.service.sync_now(label).status == SyncStatus.OK
        assert self.service.credentials.load("Personal")[1].password == "abcd-efgh-ijkl-mnop"

        self.service.shutdown()
        self.service = self._open()

        assert {a.label for a in self.service.list_accounts()} == {"Personal", "Work"}
        assert self.service.credentials.load("Work")[1].access_token == "access-4/abc"

    def test_lost_key_file(self):
        self._add_personal()
        self.service.shutdown()
        (self.temp_dir / "data" / "master.key").unlink()

        with pytest.raises(KeyUnavailable):
            self._open()

    def test_shutdown_closes_adapters_and_is_idempotent(self):
        self.service.shutdown()
        self.service.shutdown()

        assert self.icloud.closed
        assert self.google.closed

    def test_background_sync_publishes_events(self):
        self._add_personal()
        self.service.shutdown()
        published = threading.Event()
        self.service = self._open(on_events=lambda label, events: published.set())

        self.service.start()

        assert published.wait(5)
        assert self.service.get_sync_state("Personal").status == SyncStatus.OK

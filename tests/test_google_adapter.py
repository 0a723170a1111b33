"""Tests for the Google OAuth2 / Calendar API adapter."""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import responses

from watson.auth.credentials import AuthorizationCode, OAuthCredential
from watson.config import GoogleSettings
from watson.errors import AuthError, CursorInvalid, NetworkError, ReauthRequired
from watson.models import TimeRange
from watson.providers.google import GoogleAdapter
from watson.sync.retry import RetryConfig
from watson.sync.snapshot import EventSnapshots

TOKEN_URL = "https://oauth2.googleapis.com/token"
API = "https://www.googleapis.com/calendar/v3"
FAST_RETRY = RetryConfig(max_retries=1, base_delay=0, jitter=False)


def _adapter() -> GoogleAdapter:
    return GoogleAdapter(
        settings=GoogleSettings(client_id="client-123", client_secret="shh"),
        clock=lambda: 1000.0,
        retry_config=FAST_RETRY,
    )


def _credential(**overrides) -> OAuthCredential:
    values = {
        "access_token": "ya29.access",
        "refresh_token": "1//refresh",
        "expires_at": 5000.0,
    }
    values.update(overrides)
    return OAuthCredential(**values)


def _form(request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.body).items()}


def _query(request) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(request.url).query).items()}


def _time_range() -> TimeRange:
    return TimeRange(
        datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 3, 1, tzinfo=timezone.utc)
    )


class TestGoogleTokens:
    """Tests for code exchange and token refresh."""

    def setup_method(self):
        self.adapter = _adapter()

    def teardown_method(self):
        self.adapter.close()

    @responses.activate
    def test_exchange_code(self):
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={
                "access_token": "ya29.new",
                "expires_in": 3599,
                "refresh_token": "1//new-refresh",
                "scope": "https://www.googleapis.com/auth/calendar.readonly",
                "token_type": "Bearer",
            },
        )

        credential = self.adapter.authenticate(
            AuthorizationCode(
                code="4/abc", redirect_uri="http://127.0.0.1:5555/callback", code_verifier="v" * 43
            )
        )

        assert credential.access_token == "ya29.new"
        assert credential.refresh_token == "1//new-refresh"
        assert credential.expires_at == 4599.0
        form = _form(responses.calls[0].request)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "4/abc"
        assert form["code_verifier"] == "v" * 43
        assert form["redirect_uri"] == "http://127.0.0.1:5555/callback"
        assert form["client_id"] == "client-123"
        assert form["client_secret"] == "shh"

    @responses.activate
    def test_exchange_without_refresh_token(self):
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "ya29.new", "expires_in": 3600})

        with pytest.raises(AuthError):
            self.adapter.authenticate(AuthorizationCode(code="4/abc", redirect_uri="http://x"))

    @responses.activate
    def test_exchange_rejected_code(self):
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_grant"}, status=400)

        with pytest.raises(AuthError) as exc_info:
            self.adapter.authenticate(AuthorizationCode(code="4/used", redirect_uri="http://x"))
        assert not isinstance(exc_info.value, ReauthRequired)

    @responses.activate
    def test_refresh(self):
        responses.add(
            responses.POST, TOKEN_URL, json={"access_token": "ya29.fresh", "expires_in": 3600}
        )

        refreshed = self.adapter.refresh(_credential())

        assert refreshed.access_token == "ya29.fresh"
        assert refreshed.refresh_token == "1//refresh"
        assert refreshed.expires_at == 4600.0
        form = _form(responses.calls[0].request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "1//refresh"

    @responses.activate
    def test_refresh_rotates_refresh_token(self):
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "ya29.fresh", "expires_in": 3600, "refresh_token": "1//rotated"},
        )

        assert self.adapter.refresh(_credential()).refresh_token == "1//rotated"

    @responses.activate
    def test_refresh_revoked(self):
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
            status=400,
        )

        with pytest.raises(ReauthRequired):
            self.adapter.refresh(_credential())
        assert len(responses.calls) == 1

    @responses.activate
    def test_refresh_invalid_client(self):
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_client"}, status=401)

        with pytest.raises(AuthError) as exc_info:
            self.adapter.refresh(_credential())
        assert not isinstance(exc_info.value, ReauthRequired)

    @responses.activate
    def test_refresh_server_error(self):
        responses.add(responses.POST, TOKEN_URL, status=502)

        with pytest.raises(NetworkError):
            self.adapter.refresh(_credential())
        assert len(responses.calls) == 2


class TestGoogleFetch:
    """Tests for GoogleAdapter.fetch_events."""

    def setup_method(self):
        self.adapter = _adapter()
        self.credential = _credential()

    def teardown_method(self):
        self.adapter.close()

    def _add_calendar_list(self):
        responses.add(
            responses.GET,
            f"{API}/users/me/calendarList",
            json={"items": [{"id": "primary", "summary": "Me"}, {"id": "work", "summary": "Work"}]},
        )

    @responses.activate
    def test_full_fetch_follows_pages(self):
        self._add_calendar_list()
        responses.add(
            responses.GET,
            f"{API}/calendars/primary/events",
            json={
                "items": [
                    {
                        "id": "evt-timed",
                        "summary": "Dentist",
                        "start": {"dateTime": "2026-01-10T09:00:00+01:00"},
                        "end": {"dateTime": "2026-01-10T10:00:00+01:00"},
                        "location": "Main St",
                    }
                ],
                "nextPageToken": "page-2",
            },
        )
        responses.add(
            responses.GET,
            f"{API}/calendars/primary/events",
            json={
                "items": [
                    {
                        "id": "evt-weekly",
                        "start": {"dateTime": "2026-01-05T08:00:00Z"},
                        "end": {"dateTime": "2026-01-05T08:30:00Z"},
                        "recurrence": ["RRULE:FREQ=WEEKLY;BYDAY=MO"],
                    }
                ],
                "nextSyncToken": "sync-primary",
            },
        )
        responses.add(
            responses.GET,
            f"{API}/calendars/work/events",
            json={
                "items": [{"id": "evt-allday", "summary": "Offsite", "start": {"date": "2026-01-12"}, "end": {"date": "2026-01-13"}}],
                "nextSyncToken": "sync-work",
            },
        )

        result = self.adapter.fetch_events(self.credential, _time_range(), None, "Work")

        assert result.full is True
        events = {e.id: e for e in result.events}
        assert set(events) == {"evt-timed", "evt-weekly", "evt-allday"}
        assert events["evt-timed"].start == datetime(2026, 1, 10, 8, tzinfo=timezone.utc)
        assert events["evt-timed"].location == "Main St"
        assert events["evt-weekly"].title == "Untitled Event"
        assert events["evt-weekly"].recurrence_rule == "FREQ=WEEKLY;BYDAY=MO"
        assert events["evt-allday"].all_day is True
        assert events["evt-allday"].end - events["evt-allday"].start == timedelta(days=1)
        assert events["evt-allday"].calendar == "work"
        assert json.loads(result.cursor) == {"primary": "sync-primary", "work": "sync-work"}

        event_requests = [c.request for c in responses.calls if "/events" in c.request.url]
        assert _query(event_requests[1])["pageToken"] == "page-2"
        assert "timeMin" in _query(event_requests[0])
        assert event_requests[0].headers["Authorization"] == "Bearer ya29.access"

    @responses.activate
    def test_incremental_fetch_uses_sync_token(self):
        self._add_calendar_list()
        responses.add(
            responses.GET,
            f"{API}/calendars/primary/events",
            json={
                "items": [
                    {"id": "evt-gone", "status": "cancelled"},
                    {
                        "id": "evt-new",
                        "summary": "Lunch",
                        "start": {"dateTime": "2026-01-20T12:00:00Z"},
                        "end": {"dateTime": "2026-01-20T13:00:00Z"},
                    },
                ],
                "nextSyncToken": "sync-primary-2",
            },
        )
        responses.add(
            responses.GET,
            f"{API}/calendars/work/events",
            json={"items": [], "nextSyncToken": "sync-work-2"},
        )
        cursor = json.dumps({"primary": "sync-primary", "work": "sync-work"})

        result = self.adapter.fetch_events(self.credential, _time_range(), cursor, "Work")

        assert result.full is False
        assert result.deleted_ids == {"evt-gone"}
        assert [e.id for e in result.events] == ["evt-new"]
        assert result.replaced_calendars == set()
        first = next(c.request for c in responses.calls if "/calendars/primary/events" in c.request.url)
        assert _query(first)["syncToken"] == "sync-primary"
        assert "timeMin" not in _query(first)
        assert json.loads(result.cursor) == {"primary": "sync-primary-2", "work": "sync-work-2"}

    @responses.activate
    def test_recurring_exceptions_leave_the_series(self):
        self._add_calendar_list()
        responses.add(
            responses.GET,
            f"{API}/calendars/primary/events",
            json={
                "items": [
                    {
                        "id": "evt-series",
                        "summary": "Standup",
                        "start": {"dateTime": "2026-01-05T09:00:00+01:00", "timeZone": "Europe/Berlin"},
                        "end": {"dateTime": "2026-01-05T09:30:00+01:00", "timeZone": "Europe/Berlin"},
                        "recurrence": [
                            "RRULE:FREQ=WEEKLY;BYDAY=MO",
                            "EXDATE;TZID=Europe/Berlin:20260126T090000",
                        ],
                    },
                    {
                        "id": "evt-series_20260112T080000Z",
                        "status": "cancelled",
                        "recurringEventId": "evt-series",
                        "originalStartTime": {"dateTime": "2026-01-12T09:00:00+01:00"},
                    },
                    {
                        "id": "evt-series_20260119T080000Z",
                        "summary": "Standup (late)",
                        "recurringEventId": "evt-series",
                        "originalStartTime": {"dateTime": "2026-01-19T09:00:00+01:00"},
                        "start": {"dateTime": "2026-01-19T11:00:00+01:00"},
                        "end": {"dateTime": "2026-01-19T11:30:00+01:00"},
                    },
                ],
                "nextSyncToken": "sync-primary",
            },
        )
        responses.add(
            responses.GET,
            f"{API}/calendars/work/events",
            json={"items": [], "nextSyncToken": "sync-work"},
        )

        result = self.adapter.fetch_events(self.credential, _time_range(), None, "Work")
        published = {e.id: e for e in EventSnapshots().apply("Work", result)}

        assert result.exdates == {
            "evt-series": {
                datetime(2026, 1, 12, 8, tzinfo=timezone.utc),
                datetime(2026, 1, 19, 8, tzinfo=timezone.utc),
            }
        }
        assert set(published) == {"evt-series", "evt-series_20260119T080000Z"}
        series = published["evt-series"]
        assert series.start.utcoffset() == timedelta(hours=1)
        assert datetime(2026, 1, 26, 8, tzinfo=timezone.utc) in series.exdates
        for day in (12, 19, 26):
            window = TimeRange(
                datetime(2026, 1, day, tzinfo=timezone.utc),
                datetime(2026, 1, day + 1, tzinfo=timezone.utc),
            )
            assert not series.occurs_within(window)
        assert series.occurs_within(
            TimeRange(datetime(2026, 2, 2, tzinfo=timezone.utc), datetime(2026, 2, 3, tzinfo=timezone.utc))
        )
        assert published["evt-series_20260119T080000Z"].start == datetime(
            2026, 1, 19, 10, tzinfo=timezone.utc
        )

    @responses.activate
    def test_expired_sync_token(self):
        self._add_calendar_list()
        responses.add(
            responses.GET,
            f"{API}/calendars/primary/events",
            json={"error": {"code": 410, "message": "Sync token is no longer valid"}},
            status=410,
        )
        cursor = json.dumps({"primary": "stale", "work": "sync-work"})

        with pytest.raises(CursorInvalid):
            self.adapter.fetch_events(self.credential, _time_range(), cursor, "Work")

    @responses.activate
    def test_expired_access_token(self):
        responses.add(responses.GET, f"{API}/users/me/calendarList", status=401)

        with pytest.raises(AuthError):
            self.adapter.fetch_events(self.credential, _time_range(), None, "Work")

"""Google Calendar access over OAuth2 and the Calendar v3 REST API."""

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional
from urllib.parse import quote

from dateutil import parser as date_parser
from dateutil import tz

from ..auth.credentials import AuthorizationCode, OAuthCredential
from ..config import GoogleSettings
from ..errors import AuthError, CursorInvalid, NetworkError, NotApplicable, ReauthRequired
from ..models import Event, FetchResult, Provider, TimeRange
from .http_client import BaseHttpClient
from .ical import UNTITLED_EVENT, to_aware

__all__ = ["GoogleAdapter"]

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600  # seconds, when the response omits expires_in
PAGE_SIZE = 250


def _parse_exdate(line: str) -> list[datetime]:
    """Instants of an ``EXDATE[;TZID=..][;VALUE=DATE]:v1,v2`` recurrence line."""
    head, _, values = line.partition(":")
    params = dict(param.partition("=")[::2] for param in head.split(";")[1:])
    zone = tz.gettz(params["TZID"]) if params.get("TZID") else None
    instants = []
    for value in values.split(","):
        value = value.strip()
        if not value:
            continue
        parsed = date_parser.isoparse(value)
        if len(value) == 8:
            instant, _ = to_aware(parsed.date())
        else:
            if parsed.tzinfo is None and zone is not None:
                parsed = parsed.replace(tzinfo=zone)
            instant, _ = to_aware(parsed)
        instants.append(instant)
    return instants


class GoogleAdapter(BaseHttpClient):
    """OAuth2 + Calendar API adapter for Google accounts."""

    provider = Provider.GOOGLE
    supports_refresh = True

    def __init__(
        self,
        settings: Optional[GoogleSettings] = None,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        """Initialize Google adapter.

        Args:
            settings: OAuth client and endpoint configuration
            clock: Source of the current Unix time (tests pin it)
            **kwargs: Passed to BaseHttpClient (timeout, session, cancel_token)
        """
        super().__init__(**kwargs)
        self.settings = (settings or GoogleSettings()).resolved()
        self._clock = clock

    # Token endpoint

    def _token_request(self, form: dict) -> dict:
        form = dict(form, client_id=self.settings.client_id)
        if self.settings.client_secret:
            form["client_secret"] = self.settings.client_secret
        response = self._request(
            "POST",
            self.settings.token_url,
            data=form,
            headers={"Accept": "application/json"},
            allow_status=(400, 401),
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            error = body.get("error", "unknown_error") if isinstance(body, dict) else "unknown_error"
            if error == "invalid_grant":
                raise ReauthRequired("Google rejected the grant (revoked or expired)")
            raise AuthError(f"Google token endpoint refused the request: {error}")
        if not isinstance(body, dict) or not body.get("access_token"):
            raise NetworkError("Google token response had no access token")
        return body

    def _credential_from(self, body: dict, refresh_token: Optional[str]) -> OAuthCredential:
        lifetime = body.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        return OAuthCredential(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or refresh_token or "",
            expires_at=self._clock() + float(lifetime),
            scope=body.get("scope", ""),
            token_type=body.get("token_type", "Bearer"),
        )

    def authenticate(self, secret: AuthorizationCode) -> OAuthCredential:
        """Exchange an authorization code for access and refresh tokens.

        Raises:
            AuthError: Code rejected, or no refresh token granted
        """
        form = {
            "grant_type": "authorization_code",
            "code": secret.code,
            "redirect_uri": secret.redirect_uri,
        }
        if secret.code_verifier:
            form["code_verifier"] = secret.code_verifier
        try:
            body = self._token_request(form)
        except ReauthRequired as e:
            raise AuthError(f"Authorization code rejected: {e}") from e

        credential = self._credential_from(body, None)
        if not credential.refresh_token:
            raise AuthError("Google did not grant offline access (no refresh token)")
        logger.info("Google authorization code exchanged")
        return credential

    def refresh(self, payload: OAuthCredential) -> OAuthCredential:
        """Exchange the refresh token for a new access token.

        A response without a refresh token keeps the current one.

        Raises:
            ReauthRequired: Refresh token revoked (``invalid_grant``)
        """
        if not payload.refresh_token:
            raise NotApplicable("Credential has no refresh token")
        body = self._token_request(
            {"grant_type": "refresh_token", "refresh_token": payload.refresh_token}
        )
        logger.debug("Google access token refreshed")
        return self._credential_from(body, payload.refresh_token)

    # Calendar API

    def _get(self, credential: OAuthCredential, path: str, params: dict) -> dict:
        response = self._request(
            "GET",
            f"{self.settings.api_url}{path}",
            params=params,
            headers={
                "Accept": "application/json",
                "Authorization": f"{credential.token_type or 'Bearer'} {credential.access_token}",
            },
            allow_status=(410,),
        )
        if response.status_code == 410:
            raise CursorInvalid("Google sync token expired")
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Malformed Google API response: {e}") from e

    def _pages(self, credential: OAuthCredential, path: str, params: dict) -> Iterator[dict]:
        page_token = None
        while True:
            self.cancel_token.raise_if_cancelled()
            query = dict(params)
            if page_token:
                query["pageToken"] = page_token
            page = self._get(credential, path, query)
            yield page
            page_token = page.get("nextPageToken")
            if not page_token:
                return

    def list_calendars(self, credential: OAuthCredential) -> list[dict]:
        calendars = []
        for page in self._pages(credential, "/users/me/calendarList", {"maxResults": PAGE_SIZE}):
            calendars.extend(item for item in page.get("items", []) if item.get("id"))
        logger.debug(f"Discovered {len(calendars)} Google calendars")
        return calendars

    def _parse_item(self, item: dict, calendar_id: str, source_account: str) -> Optional[Event]:
        start_spec = item.get("start") or {}
        if not start_spec:
            logger.info(f"Skipping Google event {item.get('id')} without start")
            return None
        start, all_day = self._parse_time(start_spec)
        end_spec = item.get("end") or {}
        if end_spec:
            end, _ = self._parse_time(end_spec)
        else:
            end = start + timedelta(days=1) if all_day else start

        rule = None
        exdates: list[datetime] = []
        for line in item.get("recurrence") or []:
            if line.startswith("RRULE:") and rule is None:
                rule = line[len("RRULE:"):]
            elif line.startswith(("EXDATE:", "EXDATE;")):
                exdates.extend(_parse_exdate(line))

        return Event(
            id=item["id"],
            start=start,
            end=max(start, end),
            title=item.get("summary") or UNTITLED_EVENT,
            source_account=source_account,
            recurrence_rule=rule,
            all_day=all_day,
            calendar=calendar_id,
            location=item.get("location"),
            description=item.get("description"),
            exdates=tuple(sorted(exdates)) if rule is not None else (),
        )

    @staticmethod
    def _parse_time(value: dict):
        if value.get("dateTime"):
            parsed = date_parser.isoparse(value["dateTime"])
            # Series expand in their named zone so DST shifts are followed
            zone = tz.gettz(value["timeZone"]) if value.get("timeZone") else None
            if zone is not None and parsed.tzinfo is not None:
                parsed = parsed.astimezone(zone)
            return to_aware(parsed)
        return to_aware(date_parser.isoparse(value["date"]).date())

    def _record_exception(self, item: dict, result: FetchResult) -> None:
        """Exclude a moved or cancelled instance from its series."""
        series_id = item.get("recurringEventId")
        original = item.get("originalStartTime")
        if not series_id or not original:
            return
        try:
            instant, _ = self._parse_time(original)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring exception {item.get('id')} with bad original start: {e}")
            return
        result.exdates.setdefault(series_id, set()).add(instant)

    def _fetch_calendar(
        self,
        credential: OAuthCredential,
        calendar_id: str,
        time_range: TimeRange,
        sync_token: Optional[str],
        source_account: str,
        result: FetchResult,
    ) -> Optional[str]:
        if sync_token:
            # syncToken cannot be combined with timeMin/timeMax
            params = {"syncToken": sync_token, "maxResults": PAGE_SIZE}
        else:
            params = {
                "timeMin": time_range.start.isoformat(),
                "timeMax": time_range.end.isoformat(),
                "maxResults": PAGE_SIZE,
            }

        next_sync_token = None
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        for page in self._pages(credential, path, params):
            for item in page.get("items", []):
                if not item.get("id"):
                    continue
                self._record_exception(item, result)
                if item.get("status") == "cancelled":
                    if sync_token:
                        result.deleted_ids.add(item["id"])
                    continue
                try:
                    event = self._parse_item(item, calendar_id, source_account)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed Google event {item.get('id')}: {e}")
                    continue
                if event is not None:
                    result.events.append(event)
            next_sync_token = page.get("nextSyncToken") or next_sync_token
        return next_sync_token

    def fetch_events(
        self,
        payload: OAuthCredential,
        time_range: TimeRange,
        cursor: Optional[str],
        source_account: str,
    ) -> FetchResult:
        """Fetch events, using per-calendar sync tokens when a cursor exists.

        The cursor is a JSON map of calendar id to ``nextSyncToken``.

        Raises:
            CursorInvalid: Google answered 410 Gone for a sync token
        """
        previous: Optional[dict] = None
        if cursor:
            try:
                previous = json.loads(cursor)
            except ValueError:
                raise CursorInvalid("Unreadable Google cursor") from None
            if not isinstance(previous, dict):
                raise CursorInvalid("Unreadable Google cursor")

        full = previous is None
        result = FetchResult(full=full)
        tokens = {}
        calendar_ids = [calendar["id"] for calendar in self.list_calendars(payload)]

        for calendar_id in calendar_ids:
            sync_token = None if full else previous.get(calendar_id)
            if not full and not sync_token:
                # New calendar since last sync
                result.replaced_calendars.add(calendar_id)
            token = self._fetch_calendar(
                payload, calendar_id, time_range, sync_token, source_account, result
            )
            if token:
                tokens[calendar_id] = token

        if previous is not None:
            result.replaced_calendars.update(
                calendar_id for calendar_id in previous if calendar_id not in calendar_ids
            )
        result.cursor = json.dumps(tokens, sort_keys=True)
        logger.debug(
            f"Fetched {len(result.events)} Google events "
            f"({len(result.deleted_ids)} deletions, full={full})"
        )
        return result

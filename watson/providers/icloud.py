"""iCloud calendar access over CalDAV.

Authentication uses the Apple ID plus an app-specific password
(appleid.apple.com > Sign-In and Security > App-Specific Passwords) sent
as HTTP basic auth. iCloud has no token to refresh.
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urljoin

from ..auth.credentials import PasswordCredential
from ..config import ICLOUD_CALDAV_URL
from ..errors import AuthError, CursorInvalid, NetworkError, NotApplicable
from ..models import Event, FetchResult, Provider, TimeRange
from .http_client import BaseHttpClient
from .ical import parse_calendar

__all__ = ["ICloudAdapter", "CalendarInfo"]

logger = logging.getLogger(__name__)

NS = {
    "d": "DAV:",
    "c": "urn:ietf:params:xml:ns:caldav",
    "cs": "http://calendarserver.org/ns/",
    "apple": "http://apple.com/ns/ical/",
}

PRINCIPAL_BODY = """\
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal/>
  </d:prop>
</d:propfind>
"""

CALENDARS_BODY = """\
<d:propfind xmlns:d="DAV:" xmlns:cs="http://calendarserver.org/ns/" xmlns:apple="http://apple.com/ns/ical/">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <cs:getctag/>
    <apple:calendar-color/>
  </d:prop>
</d:propfind>
"""

EVENTS_BODY = """\
<c:calendar-query xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:d="DAV:">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>
"""


@dataclass
class CalendarInfo:
    """A calendar collection discovered under the principal."""

    href: str
    name: str
    ctag: Optional[str] = None
    color: Optional[str] = None


def _caldav_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _parse_multistatus(content: bytes) -> ET.Element:
    try:
        return ET.fromstring(content)
    except ET.ParseError as e:
        raise NetworkError(f"Malformed CalDAV response: {e}") from e


class ICloudAdapter(BaseHttpClient):
    """CalDAV adapter for iCloud calendars."""

    provider = Provider.ICLOUD
    supports_refresh = False

    def __init__(self, base_url: str = ICLOUD_CALDAV_URL, **kwargs):
        """Initialize iCloud adapter.

        Args:
            base_url: CalDAV server root
            **kwargs: Passed to BaseHttpClient (timeout, session, cancel_token)
        """
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def _dav(
        self,
        method: str,
        url: str,
        body: str,
        depth: str,
        credential: PasswordCredential,
    ) -> ET.Element:
        response = self._request(
            method,
            url,
            data=body.encode("utf-8"),
            headers={
                "Content-Type": "application/xml; charset=utf-8",
                "Depth": depth,
            },
            auth=(credential.apple_id, credential.password),
        )
        return _parse_multistatus(response.content)

    def discover_principal(self, credential: PasswordCredential) -> str:
        """Return the principal id (first path segment of the principal href).

        Raises:
            AuthError: Credentials rejected or no principal advertised
        """
        root = self._dav("PROPFIND", f"{self.base_url}/", PRINCIPAL_BODY, "0", credential)
        href = root.find(".//d:current-user-principal/d:href", NS)
        if href is None or not (href.text or "").strip():
            raise AuthError("iCloud did not return a principal for this Apple ID")
        principal = href.text.strip().strip("/").split("/")[0]
        if not principal:
            raise AuthError("iCloud returned an empty principal")
        return principal

    def list_calendars(self, credential: PasswordCredential, principal: str) -> list[CalendarInfo]:
        """Calendar collections (not inboxes or reminders) with their ctags."""
        url = f"{self.base_url}/{principal}/calendars/"
        root = self._dav("PROPFIND", url, CALENDARS_BODY, "1", credential)

        calendars = []
        for response in root.findall("d:response", NS):
            href = response.findtext("d:href", default="", namespaces=NS).strip()
            prop = response.find("d:propstat/d:prop", NS)
            if not href or prop is None:
                continue
            if prop.find("d:resourcetype/c:calendar", NS) is None:
                continue
            ctag = prop.findtext("cs:getctag", default="", namespaces=NS).strip()
            color = prop.findtext("apple:calendar-color", default="", namespaces=NS).strip()
            calendars.append(
                CalendarInfo(
                    href=href,
                    name=prop.findtext("d:displayname", default="", namespaces=NS).strip() or href,
                    ctag=ctag or None,
                    color=color or None,
                )
            )
        logger.debug(f"Discovered {len(calendars)} iCloud calendars")
        return calendars

    def fetch_calendar(
        self,
        credential: PasswordCredential,
        calendar: CalendarInfo,
        time_range: TimeRange,
        source_account: str,
    ) -> list[Event]:
        """Run a calendar-query REPORT limited to ``time_range``."""
        body = EVENTS_BODY.format(
            start=_caldav_time(time_range.start), end=_caldav_time(time_range.end)
        )
        root = self._dav(
            "REPORT", urljoin(f"{self.base_url}/", calendar.href), body, "1", credential
        )
        events = []
        for data in root.iterfind(".//c:calendar-data", NS):
            if data.text:
                events.extend(parse_calendar(data.text, source_account, calendar.href))
        return events

    def authenticate(self, secret: PasswordCredential) -> PasswordCredential:
        """Verify the Apple ID and app-specific password via principal discovery."""
        if not secret.apple_id or not secret.password:
            raise AuthError("Apple ID and app-specific password are required")
        self.discover_principal(secret)
        logger.info("iCloud credentials verified")
        return secret

    def refresh(self, payload: PasswordCredential) -> PasswordCredential:
        raise NotApplicable("iCloud app-specific passwords do not expire")

    def fetch_events(
        self,
        payload: PasswordCredential,
        time_range: TimeRange,
        cursor: Optional[str],
        source_account: str,
    ) -> FetchResult:
        """Fetch events, re-querying only calendars whose ctag changed.

        The cursor is a JSON map of calendar href to ctag.
        """
        previous: Optional[dict] = None
        if cursor:
            try:
                previous = json.loads(cursor)
            except ValueError:
                raise CursorInvalid("Unreadable iCloud cursor") from None
            if not isinstance(previous, dict):
                raise CursorInvalid("Unreadable iCloud cursor")

        principal = self.discover_principal(payload)
        calendars = self.list_calendars(payload, principal)

        full = previous is None
        current_hrefs = {calendar.href for calendar in calendars}
        replaced: set[str] = set()
        if previous is not None:
            replaced.update(href for href in previous if href not in current_hrefs)

        events: list[Event] = []
        for calendar in calendars:
            self.cancel_token.raise_if_cancelled()
            if not full and calendar.ctag and previous.get(calendar.href) == calendar.ctag:
                continue
            events.extend(self.fetch_calendar(payload, calendar, time_range, source_account))
            replaced.add(calendar.href)

        new_cursor = json.dumps(
            {calendar.href: calendar.ctag for calendar in calendars if calendar.ctag},
            sort_keys=True,
        )
        logger.debug(
            f"Fetched {len(events)} iCloud events from {len(replaced)} changed calendars"
        )
        return FetchResult(
            events=events,
            cursor=new_cursor,
            full=full,
            replaced_calendars=set() if full else replaced,
        )

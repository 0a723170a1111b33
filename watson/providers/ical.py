"""iCalendar (RFC 5545) parsing into Event objects."""

import logging
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from icalendar import Calendar

from ..models import Event

__all__ = ["parse_calendar", "to_aware", "UNTITLED_EVENT"]

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"


def to_aware(value) -> tuple[datetime, bool]:
    """Normalize a DTSTART/DTEND value to an aware datetime.

    Dates become local midnight and are flagged all-day. Floating
    (naive) datetimes are interpreted in the local timezone.

    Returns:
        (datetime, is_all_day)
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.astimezone(), False
        return value, False
    if isinstance(value, date):
        return datetime.combine(value, time()).astimezone(), True
    raise TypeError(f"Unsupported date value: {value!r}")


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _instant_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _exdates(component) -> tuple[datetime, ...]:
    """EXDATE values as aware datetimes; the property may repeat."""
    prop = component.get("EXDATE")
    if prop is None:
        return ()
    props = prop if isinstance(prop, list) else [prop]
    instants = []
    for item in props:
        for value in item.dts:
            instant, _ = to_aware(value.dt)
            instants.append(instant)
    return tuple(instants)


def _event_id(component, uid: str) -> str:
    # Overridden instances of a series share the UID
    recurrence_id = component.get("RECURRENCE-ID")
    if recurrence_id is None:
        return uid
    instance, _ = to_aware(recurrence_id.dt)
    return f"{uid}@{_instant_key(instance)}"


def _parse_event(component, source_account: str, calendar_id: Optional[str]) -> Optional[Event]:
    uid = _text(component, "UID")
    dtstart = component.get("DTSTART")
    if not uid or dtstart is None:
        logger.info("Skipping VEVENT without UID or DTSTART")
        return None

    start, all_day = to_aware(dtstart.dt)
    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        end, _ = to_aware(dtend.dt)
    elif duration is not None:
        end = start + duration.dt
    elif all_day:
        end = start + timedelta(days=1)
    else:
        end = start
    if end < start:
        end = start

    rrule = component.get("RRULE")
    recurrence_rule = rrule.to_ical().decode("utf-8") if rrule is not None else None

    return Event(
        id=_event_id(component, uid),
        start=start,
        end=end,
        title=_text(component, "SUMMARY") or UNTITLED_EVENT,
        source_account=source_account,
        recurrence_rule=recurrence_rule,
        all_day=all_day,
        calendar=calendar_id,
        location=_text(component, "LOCATION"),
        description=_text(component, "DESCRIPTION"),
        exdates=_exdates(component) if recurrence_rule is not None else (),
    )


def parse_calendar(
    data: str, source_account: str, calendar_id: Optional[str] = None
) -> list[Event]:
    """Parse every VEVENT in an iCalendar document.

    Components missing a UID or DTSTART are skipped. Instances overridden by a
    RECURRENCE-ID component are excluded from their series. A document
    that cannot be parsed at all yields no events and a warning.
    """
    try:
        calendar = Calendar.from_ical(data)
    except ValueError as e:
        logger.warning(f"Ignoring unparseable calendar data: {e}")
        return []

    events = []
    overridden: dict[str, set[datetime]] = {}
    for component in calendar.walk("VEVENT"):
        try:
            event = _parse_event(component, source_account, calendar_id)
            recurrence_id = component.get("RECURRENCE-ID")
            if event is not None and recurrence_id is not None:
                instance, _ = to_aware(recurrence_id.dt)
                overridden.setdefault(_text(component, "UID"), set()).add(instance)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed VEVENT: {e}")
            continue
        if event is not None:
            events.append(event)

    if overridden:
        events = [
            replace(event, exdates=event.exdates + tuple(sorted(overridden[event.id])))
            if event.recurrence_rule is not None and event.id in overridden
            else event
            for event in events
        ]
    return events

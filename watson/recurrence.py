"""Recurrence expansion for snapshot range queries."""

import logging
from datetime import datetime, timezone

from dateutil import parser as date_parser
from dateutil.rrule import rrulestr

__all__ = ["recurs_within"]

logger = logging.getLogger(__name__)


def _normalize_until(rule: str, dtstart: datetime) -> str:
    """Rewrite a floating or date-only UNTIL as a UTC instant.

    RFC 5545 lets UNTIL be a DATE or a local time when DTSTART is, but
    dateutil refuses a naive UNTIL next to an aware DTSTART. The bound is
    read in DTSTART's timezone.
    """
    parts = []
    for part in rule.split(";"):
        name, _, value = part.partition("=")
        if name.upper() == "UNTIL" and value and not value.upper().endswith("Z"):
            until = date_parser.isoparse(value)
            if len(value) == 8:
                until = datetime.combine(until.date(), dtstart.timetz())
            else:
                until = until.replace(tzinfo=dtstart.tzinfo)
            value = until.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            part = f"{name}={value}"
        parts.append(part)
    return ";".join(parts)


def recurs_within(event, time_range) -> bool:
    """True if any occurrence of ``event`` overlaps ``time_range``.

    Occurrences listed in ``event.exdates`` (cancelled instances and
    instances replaced by an override) are skipped. Rules dateutil cannot
    parse are treated as matching, so a malformed RRULE never hides an
    event from the widget.
    """
    duration = event.end - event.start
    try:
        rule = _normalize_until(event.recurrence_rule, event.start)
        occurrences = rrulestr(
            f"RRULE:{rule}", dtstart=event.start, forceset=True, cache=False
        )
    except (ValueError, TypeError) as e:
        logger.debug(f"Unparseable RRULE on {event.id}: {e}")
        return True
    for instant in event.exdates:
        occurrences.exdate(instant)

    # Occurrences starting before the window can still run into it
    window_start = time_range.start - duration
    try:
        for occurrence in occurrences.xafter(window_start, count=2, inc=True):
            if occurrence >= time_range.end:
                return False
            if time_range.overlaps(occurrence, occurrence + duration):
                return True
    except (ValueError, TypeError) as e:
        logger.debug(f"Failed to expand RRULE on {event.id}: {e}")
        return True
    return False

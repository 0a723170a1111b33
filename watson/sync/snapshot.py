"""In-memory event snapshots published to readers."""

import threading
from dataclasses import replace

from ..models import Event, FetchResult

__all__ = ["EventSnapshots"]


class EventSnapshots:
    """Last published events per account.

    Readers get an immutable tuple and never wait on a running sync; the
    lock is only held while swapping references.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, tuple[Event, ...]] = {}

    def get(self, label: str) -> tuple[Event, ...]:
        with self._lock:
            return self._events.get(label, ())

    def has(self, label: str) -> bool:
        """True once a snapshot was published for ``label`` in this process."""
        with self._lock:
            return label in self._events

    def apply(self, label: str, result: FetchResult) -> tuple[Event, ...]:
        """Merge a fetch result into the account snapshot and publish it."""
        with self._lock:
            current = self._events.get(label, ())

        if result.full:
            merged = {event.id: event for event in result.events}
        else:
            merged = {
                event.id: event
                for event in current
                if event.calendar not in result.replaced_calendars
                and event.id not in result.deleted_ids
            }
            for event in result.events:
                previous = merged.get(event.id)
                if previous is not None and previous.exdates:
                    # Exceptions reported earlier still apply to a re-sent series
                    event = replace(
                        event, exdates=tuple(sorted(set(event.exdates) | set(previous.exdates)))
                    )
                merged[event.id] = event

        for series_id, instants in result.exdates.items():
            series = merged.get(series_id)
            if series is not None and series.recurrence_rule is not None:
                merged[series_id] = replace(
                    series, exdates=tuple(sorted(set(series.exdates) | instants))
                )

        published = tuple(sorted(merged.values(), key=lambda event: (event.start, event.id)))
        with self._lock:
            self._events[label] = published
        return published

    def drop(self, label: str) -> None:
        with self._lock:
            self._events.pop(label, None)

from __future__ import annotations

from collections.abc import MutableSequence
from typing import Any, Iterable, Iterator, List, Optional

from initialstate_streamer.errors import EventIndexError, InvalidEventError
from initialstate_streamer.events import EventRecord


class EventBuffer(MutableSequence):
    """
    Ordered, duplicate-friendly list of pending events.

    Only ``EventRecord`` instances are accepted. Indexes are plain offsets in
    ``[0, len)``; negative indexes and slices are rejected. Not thread-safe.
    """

    def __init__(self, events: Optional[Iterable[EventRecord]] = None) -> None:
        self._events: List[EventRecord] = []
        if events is not None:
            self.extend(events)

    @staticmethod
    def _check_event(event: Any) -> EventRecord:
        if event is None:
            raise InvalidEventError("cannot add None to an event buffer")
        if not isinstance(event, EventRecord):
            raise InvalidEventError(
                f"expected EventRecord, got {type(event).__name__}"
            )
        return event

    def _check_index(self, index: Any, upper: Optional[int] = None) -> int:
        if isinstance(index, bool) or not isinstance(index, int):
            raise TypeError(f"event buffer indexes must be int, not {type(index).__name__}")
        upper = len(self._events) if upper is None else upper
        if index < 0 or index >= upper:
            raise EventIndexError(
                f"index {index} out of range for {len(self._events)} events"
            )
        return index

    def __getitem__(self, index: int) -> EventRecord:
        return self._events[self._check_index(index)]

    def __setitem__(self, index: int, event: EventRecord) -> None:
        i = self._check_index(index)
        self._events[i] = self._check_event(event)

    def __delitem__(self, index: int) -> None:
        del self._events[self._check_index(index)]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[EventRecord]:
        return iter(self._events)

    def __contains__(self, event: object) -> bool:
        return event in self._events

    def insert(self, index: int, event: EventRecord) -> None:
        i = self._check_index(index, upper=len(self._events) + 1)
        self._events.insert(i, self._check_event(event))

    def extend(self, events: Iterable[EventRecord]) -> None:
        # all-or-nothing
        checked = [self._check_event(e) for e in events]
        self._events.extend(checked)

    def index(self, event: Any, start: int = 0, stop: Optional[int] = None) -> int:
        if stop is None:
            stop = len(self._events)
        return self._events.index(event, start, stop)

    def pop(self, index: Optional[int] = None) -> EventRecord:
        if index is None:
            if not self._events:
                raise EventIndexError("pop from an empty event buffer")
            return self._events.pop()
        return self._events.pop(self._check_index(index))

    def discard(self, event: EventRecord) -> bool:
        """Remove the first occurrence of ``event``; return whether one was found."""
        try:
            self._events.remove(event)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._events.clear()

    def snapshot(self) -> List[EventRecord]:
        return list(self._events)

    def __repr__(self) -> str:
        return f"EventBuffer({self._events!r})"

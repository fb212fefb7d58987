"""
Change feeds for clients that need to follow entity state.

PollingNotifier refetches a collection at a fixed interval and diffs it against
the last snapshot; QueueChangeFeed reads pushed events from the event queue.
Both expose the same `changes()` generator so callers do not care which
transport is behind it.

Polling is last-state-wins: an intermediate status that came and went between
two polls is never reported. A failed fetch is logged and the next cycle tries
again, with no backoff.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Protocol

from campus_assist.db import ServiceRequestRecord
from campus_assist.events import (
    CHANGE_ADDED,
    CHANGE_CHANGED,
    CHANGE_REMOVED,
    ChangeEvent,
    EventQueue,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotEntry:
    kind: str
    status: str
    revision: int
    updated_at: float


def snapshot(records: Iterable[ServiceRequestRecord]) -> dict[str, SnapshotEntry]:
    return {
        r.request_id: SnapshotEntry(
            kind=r.kind.value, status=r.status, revision=r.revision, updated_at=r.updated_at
        )
        for r in records
    }


def diff_snapshots(
    before: dict[str, SnapshotEntry], after: dict[str, SnapshotEntry]
) -> list[ChangeEvent]:
    """Events that turn `before` into `after`; removals come last."""
    events: list[ChangeEvent] = []
    for entity_id, entry in after.items():
        previous = before.get(entity_id)
        if previous is None:
            events.append(
                ChangeEvent(entry.kind, entity_id, CHANGE_ADDED, status=entry.status)
            )
        elif (previous.revision, previous.updated_at) != (entry.revision, entry.updated_at):
            events.append(
                ChangeEvent(
                    entry.kind,
                    entity_id,
                    CHANGE_CHANGED,
                    status=entry.status,
                    previous_status=previous.status,
                )
            )
    for entity_id, previous in before.items():
        if entity_id not in after:
            events.append(
                ChangeEvent(
                    previous.kind,
                    entity_id,
                    CHANGE_REMOVED,
                    previous_status=previous.status,
                )
            )
    return events


class ChangeFeed(Protocol):
    def changes(self) -> Iterator[ChangeEvent]:
        ...

    def close(self) -> None:
        ...


class PeriodicTask:
    """Runs `fn` every `interval_seconds` on a timer thread until stopped.

    Use as a context manager; the thread is always stopped on exit.
    """

    def __init__(self, interval_seconds: float, fn: Callable[[], None], name: str = "periodic-task"):
        self.interval_seconds = interval_seconds
        self.fn = fn
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout if timeout is not None else self.interval_seconds + 5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.fn()
            except Exception:
                logger.exception("%s tick failed", self.name)
            self._stop.wait(self.interval_seconds)

    def __enter__(self) -> "PeriodicTask":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class PollingNotifier:
    def __init__(
        self,
        fetch: Callable[[], Iterable[ServiceRequestRecord]],
        interval_seconds: float = 5.0,
        name: str = "polling-notifier",
    ):
        self.fetch = fetch
        self.interval_seconds = interval_seconds
        self._state: dict[str, SnapshotEntry] = {}
        self._lock = threading.Lock()
        self._pending: "queue.Queue[ChangeEvent]" = queue.Queue()
        self._closed = threading.Event()
        self._task = PeriodicTask(interval_seconds, self._tick, name=name)

    @property
    def state(self) -> dict[str, SnapshotEntry]:
        with self._lock:
            return dict(self._state)

    def poll_once(self) -> list[ChangeEvent]:
        """Fetch, diff against the last snapshot and return the resulting events."""
        try:
            records = list(self.fetch())
        except Exception:
            logger.exception("Poll failed; retrying on the next cycle")
            return []
        if self._closed.is_set():
            # Torn down while the fetch was in flight.
            return []
        after = snapshot(records)
        with self._lock:
            events = diff_snapshots(self._state, after)
            self._state = after
        return events

    def _tick(self) -> None:
        for event in self.poll_once():
            self._pending.put(event)

    def start(self) -> "PollingNotifier":
        self._closed.clear()
        self._task.start()
        return self

    def close(self) -> None:
        self._closed.set()
        self._task.stop()

    def changes(self) -> Iterator[ChangeEvent]:
        """Yield events as polls produce them; ends once closed and drained."""
        while True:
            try:
                yield self._pending.get(timeout=self.interval_seconds)
            except queue.Empty:
                if self._closed.is_set():
                    return

    def __enter__(self) -> "PollingNotifier":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class QueueChangeFeed:
    """Change feed backed by the push event queue for one topic."""

    def __init__(
        self,
        events: EventQueue,
        topic: str,
        wait_seconds: float = 1.0,
    ):
        self.events = events
        self.topic = topic
        self.wait_seconds = wait_seconds
        self._closed = threading.Event()

    def drain(self) -> list[ChangeEvent]:
        """Return everything queued right now without blocking."""
        drained = []
        while True:
            event = self.events.next_event(self.topic, block=False)
            if event is None:
                return drained
            drained.append(event)

    def changes(self) -> Iterator[ChangeEvent]:
        while not self._closed.is_set():
            event = self.events.next_event(
                self.topic, block=True, timeout=max(1, int(self.wait_seconds))
            )
            if event is None:
                self._closed.wait(self.wait_seconds)
                continue
            yield event

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> "QueueChangeFeed":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

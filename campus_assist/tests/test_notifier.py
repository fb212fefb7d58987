import threading
import unittest

from campus_assist.db import InMemoryEntityStore
from campus_assist.events import (
    CHANGE_ADDED,
    CHANGE_CHANGED,
    CHANGE_REMOVED,
    ChangeEvent,
    InMemoryEventQueue,
)
from campus_assist.notifier import (
    PeriodicTask,
    PollingNotifier,
    QueueChangeFeed,
    SnapshotEntry,
    diff_snapshots,
)
from shared.types import EntityKind


class DiffSnapshotTests(unittest.TestCase):
    def test_removals_come_after_updates(self):
        before = {
            "a": SnapshotEntry("ride", "pending", 0, 1.0),
            "b": SnapshotEntry("ride", "pending", 0, 1.0),
            "c": SnapshotEntry("ride", "pending", 0, 1.0),
        }
        after = {
            "a": SnapshotEntry("ride", "pending", 0, 1.0),
            "b": SnapshotEntry("ride", "accepted", 1, 2.0),
            "d": SnapshotEntry("ride", "pending", 0, 3.0),
        }
        events = diff_snapshots(before, after)
        self.assertEqual(
            [(e.change, e.entity_id) for e in events],
            [(CHANGE_CHANGED, "b"), (CHANGE_ADDED, "d"), (CHANGE_REMOVED, "c")],
        )
        changed = events[0]
        self.assertEqual(changed.previous_status, "pending")
        self.assertEqual(changed.status, "accepted")

    def test_identical_snapshots_produce_nothing(self):
        state = {"a": SnapshotEntry("complaint", "pending", 2, 5.0)}
        self.assertEqual(diff_snapshots(state, dict(state)), [])


class PollingNotifierTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()

    def _pending_rides(self):
        return self.store.list_requests(kind=EntityKind.RIDE, statuses=["pending"])

    def test_poll_once_reports_new_and_vanished_records(self):
        notifier = PollingNotifier(self._pending_rides, interval_seconds=60)
        self.assertEqual(notifier.poll_once(), [])

        ride = self.store.create_request(EntityKind.RIDE, "s1")
        events = notifier.poll_once()
        self.assertEqual([(e.change, e.entity_id) for e in events], [(CHANGE_ADDED, ride.request_id)])
        self.assertIn(ride.request_id, notifier.state)

        self.store.update_request_if(
            ride.request_id,
            expected_status="pending",
            changes={"status": "accepted", "fulfiller_id": "d1"},
        )
        events = notifier.poll_once()
        self.assertEqual([(e.change, e.entity_id) for e in events], [(CHANGE_REMOVED, ride.request_id)])
        self.assertEqual(notifier.poll_once(), [])

    def test_failed_fetch_is_logged_and_state_kept(self):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("network down")
            return self._pending_rides()

        self.store.create_request(EntityKind.RIDE, "s1")
        notifier = PollingNotifier(flaky, interval_seconds=60)
        self.assertEqual(len(notifier.poll_once()), 1)
        with self.assertLogs("campus_assist.notifier", level="ERROR"):
            self.assertEqual(notifier.poll_once(), [])
        self.assertEqual(len(notifier.state), 1)
        self.assertEqual(notifier.poll_once(), [])

    def test_changes_stream_from_background_polls(self):
        notifier = PollingNotifier(self._pending_rides, interval_seconds=0.01)
        ride = self.store.create_request(EntityKind.RIDE, "s1")
        with notifier:
            event = next(notifier.changes())
        self.assertEqual(event.entity_id, ride.request_id)
        self.assertEqual(event.change, CHANGE_ADDED)

    def test_close_ends_the_stream(self):
        notifier = PollingNotifier(self._pending_rides, interval_seconds=0.01)
        notifier.start()
        notifier.close()
        self.assertEqual(list(notifier.changes()), [])


class PeriodicTaskTests(unittest.TestCase):
    def test_runs_until_stopped_and_survives_errors(self):
        ticks = threading.Event()
        count = {"n": 0}

        def tick():
            count["n"] += 1
            if count["n"] == 1:
                raise ValueError("first tick fails")
            ticks.set()

        task = PeriodicTask(0.01, tick, name="test-task")
        with self.assertLogs("campus_assist.notifier", level="ERROR"):
            with task:
                self.assertTrue(ticks.wait(2))
        self.assertFalse(task.running)


class QueueChangeFeedTests(unittest.TestCase):
    def test_drain_returns_queued_events_in_order(self):
        events = InMemoryEventQueue()
        events.publish("actor:s1", ChangeEvent("ride", "r1", CHANGE_ADDED, status="pending"))
        events.publish("actor:s1", ChangeEvent("ride", "r1", CHANGE_CHANGED, status="accepted"))
        events.publish("actor:s2", ChangeEvent("ride", "r2", CHANGE_ADDED))
        with QueueChangeFeed(events, "actor:s1") as feed:
            drained = feed.drain()
        self.assertEqual([e.status for e in drained], ["pending", "accepted"])
        self.assertEqual(feed.drain(), [])

    def test_changes_yields_until_closed(self):
        events = InMemoryEventQueue()
        events.publish("actor:d1", ChangeEvent("ride", "r1", CHANGE_ADDED))
        feed = QueueChangeFeed(events, "actor:d1", wait_seconds=0.01)
        stream = feed.changes()
        self.assertEqual(next(stream).entity_id, "r1")
        feed.close()
        self.assertEqual(list(stream), [])


if __name__ == "__main__":
    unittest.main()

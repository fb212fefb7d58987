import threading
import unittest

from campus_assist.assignments import AssignmentService
from campus_assist.db import ActorRecord, InMemoryEntityStore
from campus_assist.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from campus_assist.events import InMemoryEventQueue, actor_topic
from campus_assist.messaging import MessagingService
from campus_assist.policy import ActorContext
from shared.types import AssignmentStatus, Role


def _seed(store, actor_id, role, first, last):
    store.insert_actor_if_absent(
        ActorRecord(
            actor_id=actor_id,
            email=f"{actor_id}@example.com",
            first_name=first,
            last_name=last,
            role=role,
        )
    )
    return ActorContext(actor_id, role, f"{first} {last}")


class AssignmentServiceTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()
        self.events = InMemoryEventQueue()
        self.service = AssignmentService(self.store, self.events)
        self.admin = _seed(self.store, "admin-1", Role.ADMIN, "Admin", "One")
        self.helper = _seed(self.store, "helper-1", Role.HELPER, "Neema", "Juma")
        self.other_helper = _seed(self.store, "helper-2", Role.HELPER, "Baraka", "Ali")
        self.student = _seed(self.store, "student-1", Role.STUDENT, "Asha", "Mussa")

    def test_assign_and_scope_reads(self):
        record = self.service.assign(self.admin, "helper-1", "student-1")
        self.assertEqual(record.status, AssignmentStatus.ACTIVE)
        self.assertEqual(self.store.list_system_logs()[0].message, "Neema Juma assigned to Asha Mussa")
        self.assertIsNotNone(self.events.next_event(actor_topic("student-1"), block=False))

        self.assertEqual(len(self.service.list_for(self.admin)), 1)
        self.assertEqual(len(self.service.list_for(self.helper)), 1)
        self.assertEqual(self.service.list_for(self.other_helper), [])
        self.assertEqual(len(self.service.list_for(self.student)), 1)

        self.assertEqual(
            [a.actor_id for a in self.service.assigned_actors(self.helper)], ["student-1"]
        )
        self.assertEqual(
            [a.actor_id for a in self.service.assigned_actors(self.student)], ["helper-1"]
        )

    def test_one_active_helper_per_student(self):
        self.service.assign(self.admin, "helper-1", "student-1")
        with self.assertRaises(ConflictError):
            self.service.assign(self.admin, "helper-2", "student-1")

    def test_concurrent_assignments_have_exactly_one_winner(self):
        helpers = [
            _seed(self.store, f"helper-x{i}", Role.HELPER, "Helper", str(i)).actor_id
            for i in range(8)
        ]
        barrier = threading.Barrier(len(helpers))
        winners, conflicts, other = [], [], []

        def attempt(helper_id):
            barrier.wait()
            try:
                self.service.assign(self.admin, helper_id, "student-1")
                winners.append(helper_id)
            except ConflictError:
                conflicts.append(helper_id)
            except Exception as exc:
                other.append(exc)

        threads = [threading.Thread(target=attempt, args=(h,)) for h in helpers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(other, [])
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(conflicts), len(helpers) - 1)
        active = self.store.list_assignments(
            student_id="student-1", status=AssignmentStatus.ACTIVE
        )
        self.assertEqual([a.helper_id for a in active], winners)

    def test_visible_actor_follows_assignments(self):
        self.service.assign(self.admin, "helper-1", "student-1")
        driver = _seed(self.store, "driver-a", Role.DRIVER, "Daudi", "Kimaro")
        self.assertEqual(
            self.service.visible_actor(self.helper, "student-1").actor_id, "student-1"
        )
        self.assertEqual(
            self.service.visible_actor(self.student, "helper-1").actor_id, "helper-1"
        )
        self.assertEqual(self.service.visible_actor(driver, "driver-a").actor_id, "driver-a")
        self.assertEqual(self.service.visible_actor(self.admin, "helper-2").actor_id, "helper-2")
        with self.assertRaises(PermissionDenied):
            self.service.visible_actor(driver, "student-1")
        with self.assertRaises(PermissionDenied):
            self.service.visible_actor(self.other_helper, "student-1")
        with self.assertRaises(NotFound):
            self.service.visible_actor(self.admin, "nobody")

    def test_deactivate_is_one_way_and_allows_reassignment(self):
        record = self.service.assign(self.admin, "helper-1", "student-1")
        inactive = self.service.deactivate(self.admin, record.assignment_id)
        self.assertEqual(inactive.status, AssignmentStatus.INACTIVE)
        with self.assertRaises(InvalidStateTransition):
            self.service.deactivate(self.admin, record.assignment_id)
        with self.assertRaises(NotFound):
            self.service.deactivate(self.admin, "missing")

        again = self.service.assign(self.admin, "helper-1", "student-1")
        self.assertNotEqual(again.assignment_id, record.assignment_id)
        self.assertEqual(self.service.assigned_actors(self.student)[0].actor_id, "helper-1")

    def test_roles_are_validated(self):
        with self.assertRaises(ValidationError):
            self.service.assign(self.admin, "student-1", "helper-1")
        with self.assertRaises(NotFound):
            self.service.assign(self.admin, "helper-1", "nobody")
        with self.assertRaises(PermissionDenied):
            self.service.assign(self.helper, "helper-1", "student-1")


class MessagingServiceTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()
        self.events = InMemoryEventQueue()
        self.service = MessagingService(self.store, self.events)
        self.student = _seed(self.store, "student-1", Role.STUDENT, "Asha", "Mussa")
        self.helper = _seed(self.store, "helper-1", Role.HELPER, "Neema", "Juma")

    def test_send_and_read_flow(self):
        sent = self.service.send(self.student, "helper-1", "  Can we meet at 10?  ")
        self.assertEqual(sent.content, "Can we meet at 10?")
        self.assertFalse(sent.read)
        self.assertEqual(self.events.next_event(actor_topic("helper-1"), block=False).entity_id, sent.message_id)

        inbox = self.service.inbox(self.helper, unread_only=True)
        self.assertEqual([m.message_id for m in inbox], [sent.message_id])

        with self.assertRaises(PermissionDenied):
            self.service.mark_read(self.student, sent.message_id)
        read = self.service.mark_read(self.helper, sent.message_id)
        self.assertTrue(read.read)
        self.assertEqual(self.service.inbox(self.helper, unread_only=True), [])

        self.service.send(self.helper, "student-1", "Yes")
        self.assertEqual(
            [m.content for m in self.service.conversation(self.student, "helper-1")],
            ["Can we meet at 10?", "Yes"],
        )

    def test_send_validation(self):
        with self.assertRaises(ValidationError):
            self.service.send(self.student, "helper-1", "   ")
        with self.assertRaises(ValidationError):
            self.service.send(self.student, "helper-1", "x" * 5000)
        with self.assertRaises(ValidationError):
            self.service.send(self.student, "student-1", "hello me")
        with self.assertRaises(NotFound):
            self.service.send(self.student, "ghost", "hello")
        with self.assertRaises(NotFound):
            self.service.mark_read(self.helper, "missing")


if __name__ == "__main__":
    unittest.main()

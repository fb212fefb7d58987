import time
import unittest

from campus_assist.db import UNCHECKED, ActorRecord, PostgresEntityStore
from shared.types import AssignmentStatus, EntityKind, Role


class PostgresEntityStoreTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres store logic.
    """

    def setUp(self):
        self.db = PostgresEntityStore("sqlite+pysqlite:///:memory:")

    def _actor(self, actor_id="u1", role=Role.STUDENT, email="asha@example.com"):
        return ActorRecord(
            actor_id=actor_id,
            email=email,
            first_name="Asha",
            last_name="Mussa",
            role=role,
        )

    def test_insert_actor_is_idempotent(self):
        self.assertTrue(self.db.insert_actor_if_absent(self._actor()))
        self.assertFalse(self.db.insert_actor_if_absent(self._actor()))
        self.assertEqual(len(self.db.list_actors()), 1)
        found = self.db.find_actor_by_email("ASHA@example.com ")
        self.assertIsNotNone(found)
        self.assertEqual(found.role, Role.STUDENT)

    def test_list_actors_filters_by_role(self):
        self.db.insert_actor_if_absent(self._actor("s1"))
        self.db.insert_actor_if_absent(self._actor("d1", Role.DRIVER, "d@example.com"))
        drivers = self.db.list_actors(role=Role.DRIVER)
        self.assertEqual([a.actor_id for a in drivers], ["d1"])

    def test_update_actor_profile_merges(self):
        self.db.insert_actor_if_absent(self._actor())
        self.db.update_actor_profile("u1", {"disability_type": "visual"})
        updated = self.db.update_actor_profile("u1", {"photo_path": "users/u1/profile_picture.png"})
        self.assertEqual(updated.profile["disability_type"], "visual")
        self.assertEqual(updated.profile["photo_path"], "users/u1/profile_picture.png")
        self.assertIsNone(self.db.update_actor_profile("missing", {"a": 1}))

    def test_conditional_update_checks_status_and_fulfiller(self):
        ride = self.db.create_request(
            EntityKind.RIDE, "s1", details={"pickup_location": "Campus Gate"}
        )
        accepted = self.db.update_request_if(
            ride.request_id,
            expected_status="pending",
            expected_fulfiller=None,
            changes={"status": "accepted", "fulfiller_id": "d1"},
        )
        self.assertIsNotNone(accepted)
        self.assertEqual(accepted.revision, 1)
        self.assertEqual(accepted.details["pickup_location"], "Campus Gate")

        # The slot is taken, so an unclaimed-fulfiller predicate no longer holds.
        self.assertIsNone(
            self.db.update_request_if(
                ride.request_id,
                expected_status="accepted",
                expected_fulfiller=None,
                changes={"fulfiller_id": "d2"},
            )
        )
        self.assertIsNone(
            self.db.update_request_if(
                ride.request_id,
                expected_status="accepted",
                expected_fulfiller="d2",
                changes={"status": "completed"},
            )
        )
        completed = self.db.update_request_if(
            ride.request_id,
            expected_status="accepted",
            expected_fulfiller="d1",
            changes={"status": "completed"},
            details={"completed_at": 1.0},
        )
        self.assertEqual(completed.status, "completed")
        self.assertEqual(completed.revision, 2)
        self.assertEqual(completed.details["completed_at"], 1.0)

        self.assertIsNone(
            self.db.update_request_if(
                ride.request_id,
                expected_status="accepted",
                expected_fulfiller=UNCHECKED,
                changes={"status": "rejected"},
            )
        )
        self.assertEqual(self.db.get_request(ride.request_id).status, "completed")

    def test_list_requests_filters(self):
        first = self.db.create_request(EntityKind.RIDE, "s1")
        self.db.create_request(EntityKind.COMPLAINT, "s1")
        cursor = first.updated_at
        time.sleep(0.01)
        self.db.update_request_if(
            first.request_id,
            expected_status="pending",
            changes={"status": "accepted", "fulfiller_id": "d1"},
        )
        self.assertEqual(len(self.db.list_requests(kind=EntityKind.RIDE)), 1)
        self.assertEqual(len(self.db.list_requests(requester_id="s1")), 2)
        self.assertEqual(len(self.db.list_requests(statuses=["pending"])), 1)
        self.assertEqual(len(self.db.list_requests(fulfiller_id="d1")), 1)
        changed = self.db.list_requests(updated_after=cursor)
        self.assertEqual([r.request_id for r in changed], [first.request_id])

    def test_assignment_deactivation_is_one_way(self):
        assignment = self.db.create_assignment("h1", "s1")
        self.assertEqual(assignment.status, AssignmentStatus.ACTIVE)
        inactive = self.db.deactivate_assignment(assignment.assignment_id)
        self.assertEqual(inactive.status, AssignmentStatus.INACTIVE)
        self.assertIsNone(self.db.deactivate_assignment(assignment.assignment_id))
        self.assertEqual(
            self.db.list_assignments(student_id="s1", status=AssignmentStatus.ACTIVE), []
        )

    def test_only_one_active_assignment_per_student(self):
        first = self.db.create_assignment("h1", "s1")
        self.assertIsNone(self.db.create_assignment("h2", "s1"))
        self.assertIsNotNone(self.db.create_assignment("h2", "s2"))
        self.db.deactivate_assignment(first.assignment_id)
        second = self.db.create_assignment("h2", "s1")
        self.assertEqual(second.helper_id, "h2")
        self.assertEqual(
            [a.helper_id for a in self.db.list_assignments(student_id="s1", status=AssignmentStatus.ACTIVE)],
            ["h2"],
        )

    def test_verification_codes_expire_and_consume_once(self):
        now = time.time()
        old = self.db.create_verification_code(
            code="111111",
            student_id="s1",
            helper_id="h1",
            helper_name="Helper",
            issued_at=now,
            expires_at=now + 600,
        )
        self.assertEqual(self.db.expire_verification_codes("s1", "h1", now + 1), 1)
        fresh = self.db.create_verification_code(
            code="222222",
            student_id="s1",
            helper_id="h1",
            helper_name="Helper",
            issued_at=now + 2,
            expires_at=now + 602,
        )
        usable = self.db.list_verification_codes(student_id="s1", usable_at=now + 3)
        self.assertEqual([c.code_id for c in usable], [fresh.code_id])
        self.assertFalse(self.db.consume_verification_code(old.code_id, now + 3))
        self.assertTrue(self.db.consume_verification_code(fresh.code_id, now + 3))
        self.assertFalse(self.db.consume_verification_code(fresh.code_id, now + 4))

    def test_messages_conversation_and_read_flag(self):
        first = self.db.create_message("s1", "h1", "Hello")
        self.db.create_message("h1", "s1", "Hi there")
        self.db.create_message("s1", "d1", "Ride?")
        conversation = self.db.list_conversation("h1", "s1")
        self.assertEqual([m.content for m in conversation], ["Hello", "Hi there"])
        self.assertEqual(len(self.db.list_inbox("h1", unread_only=True)), 1)
        read = self.db.mark_message_read(first.message_id)
        self.assertTrue(read.read)
        self.assertEqual(self.db.list_inbox("h1", unread_only=True), [])
        self.assertIsNone(self.db.mark_message_read("missing"))

    def test_system_logs_newest_first(self):
        self.db.add_system_log("Ride requested", "first", "s1", "student")
        time.sleep(0.01)
        self.db.add_system_log("Ride accepted", "second", "d1", "driver")
        logs = self.db.list_system_logs()
        self.assertEqual([log.message for log in logs], ["second", "first"])
        filtered = self.db.list_system_logs(log_type="Ride requested")
        self.assertEqual(len(filtered), 1)


if __name__ == "__main__":
    unittest.main()

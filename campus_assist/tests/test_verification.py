import unittest
from unittest.mock import patch

from campus_assist.db import InMemoryEntityStore
from campus_assist.errors import (
    InvalidStateTransition,
    PermissionDenied,
    VerificationFailed,
)
from campus_assist.events import InMemoryEventQueue, actor_topic
from campus_assist.lifecycle import LifecycleController
from campus_assist.policy import ActorContext
from campus_assist.service_requests import ServiceRequestService
from campus_assist.verification import VerificationService, generate_code
from shared.types import Role


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class VerificationTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()
        self.events = InMemoryEventQueue()
        self.clock = FakeClock()
        lifecycle = LifecycleController(self.store, self.events)
        self.requests = ServiceRequestService(self.store, lifecycle)
        self.codes = VerificationService(
            self.store, lifecycle, ttl_seconds=600, events=self.events, clock=self.clock
        )
        self.helper = ActorContext("helper-1", Role.HELPER, "Neema Juma")
        self.student = ActorContext("student-1", Role.STUDENT, "Asha Mussa")
        self.store.create_assignment(self.helper.actor_id, self.student.actor_id)
        self.confirmation = self.requests.create_help_confirmation(
            self.helper, self.student.actor_id, "2025-03-01", "Read lecture notes aloud"
        )

    def test_generate_code_is_six_digits(self):
        for _ in range(20):
            code = generate_code()
            self.assertEqual(len(code), 6)
            self.assertTrue(code.isdigit())

    def test_matching_code_confirms_session(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        visible = self.codes.current_codes_for_student(self.student)
        self.assertEqual([c.code_id for c in visible], [issued.code_id])
        self.assertEqual(visible[0].helper_name, "Neema Juma")

        confirmed = self.codes.confirm_help(
            self.helper, self.confirmation.request_id, issued.code
        )
        self.assertEqual(confirmed.status, "confirmed")
        self.assertEqual(confirmed.details["verification_code_id"], issued.code_id)
        self.assertEqual(self.codes.current_codes_for_student(self.student), [])

    def test_mismatch_leaves_confirmation_pending(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        wrong = "000000" if issued.code != "000000" else "111111"
        with self.assertRaises(VerificationFailed):
            self.codes.confirm_help(self.helper, self.confirmation.request_id, wrong)
        self.assertEqual(self.store.get_request(self.confirmation.request_id).status, "pending")
        # The code is still good after a typo.
        self.codes.confirm_help(self.helper, self.confirmation.request_id, issued.code)

    def test_code_survives_a_confirmation_rejected_midway(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        consume = self.store.consume_verification_code

        def consume_then_reject(code_id, now):
            consumed = consume(code_id, now)
            self.requests.reject_help_confirmation(
                self.student, self.confirmation.request_id
            )
            return consumed

        with patch.object(
            self.store, "consume_verification_code", side_effect=consume_then_reject
        ):
            with self.assertRaises(InvalidStateTransition):
                self.codes.confirm_help(
                    self.helper, self.confirmation.request_id, issued.code
                )
        self.assertEqual(
            self.store.get_request(self.confirmation.request_id).status, "rejected"
        )
        self.assertEqual(
            [c.code_id for c in self.codes.current_codes_for_student(self.student)],
            [issued.code_id],
        )

        retry = self.requests.create_help_confirmation(
            self.helper, self.student.actor_id, "2025-03-02", "Read lecture notes aloud"
        )
        confirmed = self.codes.confirm_help(self.helper, retry.request_id, issued.code)
        self.assertEqual(confirmed.status, "confirmed")

    def test_expired_code_is_rejected(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        self.clock.now += 601
        with self.assertRaises(VerificationFailed):
            self.codes.confirm_help(self.helper, self.confirmation.request_id, issued.code)
        self.assertEqual(self.codes.current_codes_for_student(self.student), [])

    def test_code_cannot_be_reused(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        self.codes.confirm_help(self.helper, self.confirmation.request_id, issued.code)
        second = self.requests.create_help_confirmation(
            self.helper, self.student.actor_id, "2025-03-02", "Campus tour"
        )
        with self.assertRaises(VerificationFailed):
            self.codes.confirm_help(self.helper, second.request_id, issued.code)

    def test_new_code_invalidates_earlier_one(self):
        first = self.codes.issue(self.helper, self.student.actor_id)
        self.clock.now += 5
        second = self.codes.issue(self.helper, self.student.actor_id)
        visible = self.codes.current_codes_for_student(self.student)
        self.assertEqual([c.code_id for c in visible], [second.code_id])
        if first.code != second.code:
            with self.assertRaises(VerificationFailed):
                self.codes.confirm_help(self.helper, self.confirmation.request_id, first.code)

    def test_code_is_bound_to_the_pair(self):
        other_helper = ActorContext("helper-2", Role.HELPER, "Other")
        self.store.create_assignment(other_helper.actor_id, "student-2")
        other = self.codes.issue(other_helper, "student-2")
        with self.assertRaises(VerificationFailed):
            self.codes.confirm_help(self.helper, self.confirmation.request_id, other.code)
        with self.assertRaises(PermissionDenied):
            self.codes.confirm_help(other_helper, self.confirmation.request_id, other.code)

    def test_issue_requires_active_assignment(self):
        with self.assertRaises(PermissionDenied):
            self.codes.issue(self.helper, "student-9")
        with self.assertRaises(PermissionDenied):
            self.codes.issue(self.student, self.student.actor_id)

    def test_confirm_requires_pending_confirmation(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        self.requests.reject_help_confirmation(self.student, self.confirmation.request_id)
        with self.assertRaises(InvalidStateTransition):
            self.codes.confirm_help(self.helper, self.confirmation.request_id, issued.code)

    def test_issue_notifies_student(self):
        issued = self.codes.issue(self.helper, self.student.actor_id)
        topic = actor_topic(self.student.actor_id)
        seen = []
        while True:
            event = self.events.next_event(topic, block=False)
            if event is None:
                break
            seen.append(event)
        self.assertIn(issued.code_id, [e.entity_id for e in seen])


if __name__ == "__main__":
    unittest.main()

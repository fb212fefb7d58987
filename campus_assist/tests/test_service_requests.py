import time
import unittest

from campus_assist.db import InMemoryEntityStore
from campus_assist.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from campus_assist.lifecycle import LifecycleController
from campus_assist.policy import ActorContext
from campus_assist.service_requests import (
    LOCATION_ERROR,
    ServiceRequestService,
    parse_coordinates,
)
from shared.types import EntityKind, Role


class ServiceRequestTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()
        self.lifecycle = LifecycleController(self.store)
        self.service = ServiceRequestService(self.store, self.lifecycle)
        self.student = ActorContext("student-1", Role.STUDENT, "Asha Mussa")
        self.other_student = ActorContext("student-2", Role.STUDENT, "Juma Ali")
        self.driver_a = ActorContext("driver-a", Role.DRIVER, "Driver A")
        self.driver_b = ActorContext("driver-b", Role.DRIVER, "Driver B")
        self.admin = ActorContext("admin-1", Role.ADMIN, "Admin One")
        self.helper = ActorContext("helper-1", Role.HELPER, "Neema Juma")

    def test_parse_coordinates(self):
        self.assertEqual(parse_coordinates("-6.77", 39.2), {"lat": -6.77, "lng": 39.2})
        for lat, lng in [(None, 1), ("abc", 1), (91, 0), (0, 181), (float("nan"), 0)]:
            with self.assertRaises(ValidationError) as ctx:
                parse_coordinates(lat, lng)
            self.assertEqual(ctx.exception.message, LOCATION_ERROR)

    def test_ride_flow_and_location(self):
        ride = self.service.create_ride(self.student, " Campus Gate ", "Library")
        self.assertEqual(ride.details["pickup_location"], "Campus Gate")
        with self.assertRaises(ValidationError):
            self.service.create_ride(self.student, "", "Library")
        with self.assertRaises(PermissionDenied):
            self.service.create_ride(self.driver_a, "A", "B")

        with self.assertRaises(ValidationError):
            self.service.accept_ride(self.driver_a, ride.request_id, None, None)
        self.assertEqual(self.store.get_request(ride.request_id).status, "pending")

        accepted = self.service.accept_ride(self.driver_a, ride.request_id, -6.78, 39.20)
        self.assertEqual(accepted.details["driver_location"], {"lat": -6.78, "lng": 39.2})

        moved = self.service.update_driver_location(self.driver_a, ride.request_id, -6.79, 39.21)
        self.assertEqual(moved.details["driver_location"]["lat"], -6.79)
        self.assertEqual(moved.status, "accepted")
        with self.assertRaises(InvalidStateTransition):
            self.service.update_driver_location(self.driver_b, ride.request_id, 0, 0)
        with self.assertRaises(NotFound):
            self.service.update_driver_location(self.driver_a, "missing", 0, 0)

        self.service.complete_ride(self.driver_a, ride.request_id)
        with self.assertRaises(InvalidStateTransition):
            self.service.update_driver_location(self.driver_a, ride.request_id, 0, 0)

    def test_driver_visibility(self):
        mine = self.service.create_ride(self.student, "A", "B")
        theirs = self.service.create_ride(self.student, "C", "D")
        open_ride = self.service.create_ride(self.other_student, "E", "F")
        self.service.accept_ride(self.driver_a, mine.request_id, 0, 0)
        self.service.accept_ride(self.driver_b, theirs.request_id, 0, 0)

        seen = {r.request_id for r in self.service.visible_requests(self.driver_a, EntityKind.RIDE)}
        self.assertEqual(seen, {mine.request_id, open_ride.request_id})
        with self.assertRaises(PermissionDenied):
            self.service.get_request(self.driver_a, theirs.request_id)

        student_rides = self.service.visible_requests(self.student, EntityKind.RIDE)
        self.assertEqual(len(student_rides), 2)
        self.assertEqual(len(self.service.visible_requests(self.admin, EntityKind.RIDE)), 3)
        with self.assertRaises(PermissionDenied):
            self.service.visible_requests(self.helper, EntityKind.RIDE)

    def test_driver_stats(self):
        rides = [self.service.create_ride(self.student, "A", str(i)) for i in range(4)]
        self.service.accept_ride(self.driver_a, rides[0].request_id, 0, 0)
        self.service.complete_ride(self.driver_a, rides[0].request_id)
        self.service.accept_ride(self.driver_a, rides[1].request_id, 0, 0)
        self.service.reject_ride(self.driver_a, rides[2].request_id)
        self.service.reject_ride(self.driver_b, rides[3].request_id)

        stats = self.service.driver_stats(self.driver_a)
        self.assertEqual(stats["total_rides"], 3)
        self.assertEqual(stats["completed_rides"], 1)
        self.assertEqual(stats["rejected_rides"], 1)
        self.assertEqual(stats["acceptance_rate"], 66.7)

        self.assertEqual(self.service.driver_stats(self.admin, "driver-b")["rejected_rides"], 1)
        with self.assertRaises(PermissionDenied):
            self.service.driver_stats(self.driver_a, "driver-b")
        empty = self.service.driver_stats(ActorContext("driver-c", Role.DRIVER))
        self.assertEqual(empty["acceptance_rate"], 0.0)

    def test_complaint_follow_up_and_resolution(self):
        complaint = self.service.create_complaint(self.student, "Lift broken", "Block B lift")
        with self.assertRaises(PermissionDenied):
            self.service.add_follow_up(self.other_student, complaint.request_id, "Me too")
        followed = self.service.add_follow_up(self.student, complaint.request_id, "Still broken")
        self.assertEqual(followed.details["follow_up"], "Still broken")
        self.assertEqual(followed.status, "pending")

        resolved = self.service.resolve_complaint(self.admin, complaint.request_id, "Repaired")
        self.assertEqual(resolved.details["feedback"], "Repaired")
        # Follow-ups still land after resolution without reopening it.
        late = self.service.add_follow_up(self.student, complaint.request_id, "Thanks")
        self.assertEqual(late.status, "resolved")

        self.assertEqual(
            len(self.service.visible_requests(self.other_student, EntityKind.COMPLAINT)), 0
        )

    def test_follow_up_race_is_a_conflict(self):
        complaint = self.service.create_complaint(self.student, "Ramp", "Blocked ramp")
        original = self.store.update_request_if

        def racing(request_id, **kwargs):
            # An admin picks the complaint up between the read and the write.
            self.store.update_request_if = original
            self.service.start_complaint(self.admin, request_id)
            return original(request_id, **kwargs)

        self.store.update_request_if = racing
        try:
            with self.assertRaises(ConflictError):
                self.service.add_follow_up(self.student, complaint.request_id, "Any news?")
        finally:
            self.store.update_request_if = original

    def test_gadget_loan_validation(self):
        kwargs = dict(
            gadget_name="Tablet",
            full_name="Asha Mussa",
            reg_number="2021-04-0001",
            course="BSc CS",
            disability_type="visual",
            gadget_types=["tablet", " "],
            duration="1 semester",
        )
        loan = self.service.create_gadget_loan(self.student, **kwargs)
        self.assertEqual(loan.details["gadget_types"], ["tablet"])
        with self.assertRaises(ValidationError):
            self.service.create_gadget_loan(self.student, **dict(kwargs, gadget_types=[]))
        with self.assertRaises(ValidationError):
            self.service.create_gadget_loan(self.student, **dict(kwargs, disability_type="x"))

        self.service.approve_loan(self.admin, loan.request_id)
        returned = self.service.return_loan(self.admin, loan.request_id)
        self.assertEqual(returned.status, "returned")

    def test_help_confirmation_requires_assignment_and_iso_date(self):
        with self.assertRaises(PermissionDenied):
            self.service.create_help_confirmation(self.helper, "student-1", "2025-03-01", "Notes")
        self.store.create_assignment("helper-1", "student-1")
        with self.assertRaises(ValidationError):
            self.service.create_help_confirmation(self.helper, "student-1", "01/03/2025", "Notes")
        record = self.service.create_help_confirmation(
            self.helper, "student-1", "2025-03-01", "Notes"
        )
        self.assertEqual(record.requester_id, "student-1")
        self.assertEqual(record.fulfiller_id, "helper-1")
        self.assertEqual(
            [r.request_id for r in self.service.visible_requests(self.student, EntityKind.HELP_CONFIRMATION)],
            [record.request_id],
        )

    def test_changes_since_is_ordered_and_scoped(self):
        first = self.service.create_ride(self.student, "A", "B")
        cursor = first.updated_at
        time.sleep(0.01)
        complaint = self.service.create_complaint(self.student, "Noise", "Loud hall")
        self.service.accept_ride(self.driver_a, first.request_id, 0, 0)
        self.service.create_complaint(self.other_student, "Other", "Not mine")

        changed = self.service.changes_since(self.student, cursor)
        ids = [r.request_id for r in changed]
        self.assertEqual(set(ids), {first.request_id, complaint.request_id})
        self.assertEqual(
            [r.updated_at for r in changed], sorted(r.updated_at for r in changed)
        )

    def test_ride_taken_by_another_driver_is_withdrawn(self):
        ride = self.service.create_ride(self.student, "A", "B")
        seen = self.service.changes_since(self.driver_b, None)
        self.assertEqual([r.status for r in seen], ["pending"])
        cursor = seen[0].updated_at
        time.sleep(0.01)
        self.service.accept_ride(self.driver_a, ride.request_id, 0, 0)

        self.assertEqual(self.service.changes_since(self.driver_b, cursor), [])
        withdrawn = self.service.withdrawn_since(self.driver_b, cursor)
        self.assertEqual([r.request_id for r in withdrawn], [ride.request_id])
        self.assertEqual(self.service.withdrawn_since(self.driver_a, cursor), [])
        self.assertEqual(self.service.withdrawn_since(self.student, cursor), [])
        self.assertEqual(self.service.withdrawn_since(self.driver_b, None), [])


if __name__ == "__main__":
    unittest.main()

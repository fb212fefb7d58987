import unittest

from campus_assist.errors import PermissionDenied
from campus_assist.policy import PERMITS, ActorContext, is_permitted, require
from shared.types import Action, EntityKind, Role


class PolicyTests(unittest.TestCase):
    def test_only_students_create_rides(self):
        for role in Role:
            self.assertEqual(
                is_permitted(role, EntityKind.RIDE, Action.CREATE), role == Role.STUDENT
            )

    def test_only_drivers_transition_rides(self):
        for role in Role:
            self.assertEqual(
                is_permitted(role, EntityKind.RIDE, Action.TRANSITION),
                role == Role.DRIVER,
            )

    def test_every_role_can_file_complaints_and_message(self):
        for role in Role:
            self.assertTrue(is_permitted(role, EntityKind.COMPLAINT, Action.CREATE))
            self.assertTrue(is_permitted(role, EntityKind.MESSAGE, Action.CREATE))

    def test_admin_only_surfaces(self):
        for role in (Role.HELPER, Role.STUDENT, Role.DRIVER):
            self.assertFalse(is_permitted(role, EntityKind.ACTOR, Action.CREATE))
            self.assertFalse(is_permitted(role, EntityKind.ASSIGNMENT, Action.CREATE))
            self.assertFalse(is_permitted(role, EntityKind.SYSTEM_LOG, Action.READ_ALL))
        self.assertTrue(is_permitted(Role.ADMIN, EntityKind.ACTOR, Action.CREATE))

    def test_verification_codes_issue_to_helpers_and_show_to_students(self):
        self.assertTrue(is_permitted(Role.HELPER, EntityKind.VERIFICATION_CODE, Action.CREATE))
        self.assertFalse(is_permitted(Role.HELPER, EntityKind.VERIFICATION_CODE, Action.READ_OWN))
        self.assertTrue(is_permitted(Role.STUDENT, EntityKind.VERIFICATION_CODE, Action.READ_OWN))
        self.assertFalse(is_permitted(Role.STUDENT, EntityKind.VERIFICATION_CODE, Action.CREATE))

    def test_unlisted_triples_are_denied(self):
        self.assertNotIn((Role.DRIVER, EntityKind.GADGET_LOAN, Action.READ_OWN), PERMITS)
        self.assertFalse(is_permitted(Role.DRIVER, EntityKind.GADGET_LOAN, Action.READ_OWN))

    def test_require_raises_readable_error(self):
        driver = ActorContext("d1", Role.DRIVER)
        require(driver, EntityKind.RIDE, Action.UPDATE)
        with self.assertRaises(PermissionDenied) as ctx:
            require(driver, EntityKind.ASSIGNMENT, Action.CREATE)
        self.assertIn("driver", ctx.exception.message)
        self.assertEqual(ctx.exception.status_code, 403)


if __name__ == "__main__":
    unittest.main()

"""
Role-to-action permission table.

Deny is the default: a (role, kind, action) triple is allowed only when it is
listed in PERMITS. Lookups are pure and have no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass

from campus_assist.errors import PermissionDenied
from shared.types import Action, EntityKind, Role


@dataclass(frozen=True)
class ActorContext:
    """Authenticated identity threaded explicitly through every service call."""

    actor_id: str
    role: Role
    display_name: str = ""


def _grant(role: Role, kind: EntityKind, *actions: Action) -> set[tuple[Role, EntityKind, Action]]:
    return {(role, kind, action) for action in actions}


PERMITS: frozenset[tuple[Role, EntityKind, Action]] = frozenset(
    # Admin
    _grant(Role.ADMIN, EntityKind.ACTOR, Action.CREATE, Action.READ_OWN, Action.READ_ALL)
    | _grant(Role.ADMIN, EntityKind.ASSIGNMENT, Action.CREATE, Action.READ_ALL, Action.UPDATE)
    | _grant(Role.ADMIN, EntityKind.RIDE, Action.READ_ALL)
    | _grant(Role.ADMIN, EntityKind.HELP_CONFIRMATION, Action.READ_ALL)
    | _grant(
        Role.ADMIN,
        EntityKind.COMPLAINT,
        Action.CREATE,
        Action.READ_OWN,
        Action.READ_ALL,
        Action.TRANSITION,
        Action.UPDATE,
    )
    | _grant(Role.ADMIN, EntityKind.GADGET_LOAN, Action.READ_ALL, Action.TRANSITION)
    | _grant(Role.ADMIN, EntityKind.MESSAGE, Action.CREATE, Action.READ_OWN, Action.UPDATE)
    | _grant(Role.ADMIN, EntityKind.SYSTEM_LOG, Action.READ_ALL)
    # Helper
    | _grant(Role.HELPER, EntityKind.ACTOR, Action.READ_OWN, Action.READ_ASSIGNED)
    | _grant(Role.HELPER, EntityKind.ASSIGNMENT, Action.READ_ASSIGNED)
    | _grant(
        Role.HELPER,
        EntityKind.HELP_CONFIRMATION,
        Action.CREATE,
        Action.READ_ASSIGNED,
        Action.TRANSITION,
    )
    | _grant(Role.HELPER, EntityKind.VERIFICATION_CODE, Action.CREATE)
    | _grant(Role.HELPER, EntityKind.COMPLAINT, Action.CREATE, Action.READ_OWN, Action.UPDATE)
    | _grant(Role.HELPER, EntityKind.MESSAGE, Action.CREATE, Action.READ_OWN, Action.UPDATE)
    # Student
    | _grant(Role.STUDENT, EntityKind.ACTOR, Action.READ_OWN, Action.READ_ASSIGNED)
    | _grant(Role.STUDENT, EntityKind.ASSIGNMENT, Action.READ_OWN)
    | _grant(Role.STUDENT, EntityKind.RIDE, Action.CREATE, Action.READ_OWN)
    | _grant(Role.STUDENT, EntityKind.HELP_CONFIRMATION, Action.READ_OWN, Action.TRANSITION)
    | _grant(Role.STUDENT, EntityKind.VERIFICATION_CODE, Action.READ_OWN)
    | _grant(Role.STUDENT, EntityKind.COMPLAINT, Action.CREATE, Action.READ_OWN, Action.UPDATE)
    | _grant(Role.STUDENT, EntityKind.GADGET_LOAN, Action.CREATE, Action.READ_OWN)
    | _grant(Role.STUDENT, EntityKind.MESSAGE, Action.CREATE, Action.READ_OWN, Action.UPDATE)
    # Driver
    | _grant(Role.DRIVER, EntityKind.ACTOR, Action.READ_OWN)
    | _grant(
        Role.DRIVER,
        EntityKind.RIDE,
        Action.READ_ASSIGNED,
        Action.TRANSITION,
        Action.UPDATE,
    )
    | _grant(Role.DRIVER, EntityKind.COMPLAINT, Action.CREATE, Action.READ_OWN, Action.UPDATE)
    | _grant(Role.DRIVER, EntityKind.MESSAGE, Action.CREATE, Action.READ_OWN, Action.UPDATE)
)


def is_permitted(role: Role, kind: EntityKind, action: Action) -> bool:
    return (role, kind, action) in PERMITS


def require(actor: ActorContext, kind: EntityKind, action: Action) -> None:
    """Raise PermissionDenied unless the actor's role may perform the action."""
    if not is_permitted(actor.role, kind, action):
        raise PermissionDenied(
            f"A {actor.role.value} may not {action.value.replace('_', ' ')} "
            f"{kind.value.replace('_', ' ')} records."
        )

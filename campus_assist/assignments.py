"""
Helper-student pairing.

A student has at most one active assignment. Deactivation is one-way; pairing
the same people again creates a new record.
"""

from __future__ import annotations

import logging
from typing import Optional

from campus_assist import audit
from campus_assist.db import ActorRecord, AssignmentRecord, EntityStore
from campus_assist.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from campus_assist.events import (
    CHANGE_ADDED,
    CHANGE_CHANGED,
    ChangeEvent,
    EventQueue,
    actor_topic,
    publish_quietly,
)
from campus_assist.policy import ActorContext, is_permitted, require
from shared.types import Action, AssignmentStatus, EntityKind, Role

logger = logging.getLogger(__name__)


class AssignmentService:
    def __init__(self, store: EntityStore, events: Optional[EventQueue] = None):
        self.store = store
        self.events = events

    def _actor_with_role(self, actor_id: str, role: Role) -> ActorRecord:
        record = self.store.get_actor(actor_id)
        if not record:
            raise NotFound(f"The {role.value} could not be found.")
        if record.role != role:
            raise ValidationError(f"{record.full_name or actor_id} is not a {role.value}.")
        return record

    def _announce(self, actor: ActorContext, record: AssignmentRecord, change: str) -> None:
        event = ChangeEvent(
            entity_kind=EntityKind.ASSIGNMENT.value,
            entity_id=record.assignment_id,
            change=change,
            status=record.status.value,
            actor_id=actor.actor_id,
        )
        publish_quietly(
            self.events,
            [actor_topic(record.helper_id), actor_topic(record.student_id)],
            event,
        )

    def assign(
        self, admin: ActorContext, helper_id: str, student_id: str
    ) -> AssignmentRecord:
        require(admin, EntityKind.ASSIGNMENT, Action.CREATE)
        helper = self._actor_with_role(helper_id, Role.HELPER)
        student = self._actor_with_role(student_id, Role.STUDENT)
        record = self.store.create_assignment(helper_id, student_id)
        if record is None:
            raise ConflictError(
                f"{student.full_name} already has an active helper. "
                "Deactivate that assignment first."
            )
        audit.record(
            self.store,
            admin,
            "Assignment created",
            f"{helper.full_name} assigned to {student.full_name}",
        )
        self._announce(admin, record, CHANGE_ADDED)
        return record

    def deactivate(self, admin: ActorContext, assignment_id: str) -> AssignmentRecord:
        require(admin, EntityKind.ASSIGNMENT, Action.UPDATE)
        updated = self.store.deactivate_assignment(assignment_id)
        if updated is None:
            if not self.store.get_assignment(assignment_id):
                raise NotFound("The assignment could not be found.")
            raise InvalidStateTransition("This assignment is already inactive.")
        audit.record(
            self.store,
            admin,
            "Assignment deactivated",
            f"Assignment {assignment_id} deactivated",
        )
        self._announce(admin, updated, CHANGE_CHANGED)
        return updated

    def list_for(
        self, actor: ActorContext, status: Optional[AssignmentStatus] = None
    ) -> list[AssignmentRecord]:
        if is_permitted(actor.role, EntityKind.ASSIGNMENT, Action.READ_ALL):
            return self.store.list_assignments(status=status)
        if is_permitted(actor.role, EntityKind.ASSIGNMENT, Action.READ_ASSIGNED):
            return self.store.list_assignments(helper_id=actor.actor_id, status=status)
        require(actor, EntityKind.ASSIGNMENT, Action.READ_OWN)
        return self.store.list_assignments(student_id=actor.actor_id, status=status)

    def assigned_actors(self, actor: ActorContext) -> list[ActorRecord]:
        """The people on the other side of the actor's active assignments."""
        require(actor, EntityKind.ACTOR, Action.READ_ASSIGNED)
        if actor.role == Role.HELPER:
            rows = self.store.list_assignments(
                helper_id=actor.actor_id, status=AssignmentStatus.ACTIVE
            )
            ids = [a.student_id for a in rows]
        else:
            rows = self.store.list_assignments(
                student_id=actor.actor_id, status=AssignmentStatus.ACTIVE
            )
            ids = [a.helper_id for a in rows]
        found = (self.store.get_actor(i) for i in ids)
        return [a for a in found if a is not None]

    def visible_actor(self, actor: ActorContext, actor_id: str) -> ActorRecord:
        """Another actor's record, if the caller may see it."""
        record = self.store.get_actor(actor_id)
        if actor_id == actor.actor_id:
            require(actor, EntityKind.ACTOR, Action.READ_OWN)
        elif not is_permitted(actor.role, EntityKind.ACTOR, Action.READ_ALL):
            require(actor, EntityKind.ACTOR, Action.READ_ASSIGNED)
            if actor_id not in {a.actor_id for a in self.assigned_actors(actor)}:
                raise PermissionDenied("You do not have access to this person.")
        if not record:
            raise NotFound("That person could not be found.")
        return record

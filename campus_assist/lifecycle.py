"""
Request lifecycle controller.

Every service request kind (ride, help confirmation, complaint, gadget loan)
moves along a fixed directed path of statuses:

    ride               pending -> accepted | rejected, accepted -> completed | rejected
    help_confirmation  pending -> confirmed | rejected
    complaint          pending -> in_progress -> resolved, pending -> resolved
    gadget_loan        pending -> borrowed | rejected, borrowed -> returned

Transitions are applied with the store's conditional update, so the write
lands only if the status and fulfiller are still what the precondition check
saw. Two drivers accepting the same ride cannot both win: the loser's update
matches nothing and surfaces as ConflictError.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from campus_assist import audit
from campus_assist.db import UNCHECKED, EntityStore, ServiceRequestRecord
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
from campus_assist.policy import ActorContext, require
from shared.types import (
    Action,
    ComplaintStatus,
    ConfirmationStatus,
    EntityKind,
    LoanStatus,
    RideStatus,
    Role,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """One edge of a kind's status graph.

    `open_sources` may be left by any actor holding one of `roles`;
    `fulfiller_sources` only by the recorded fulfiller. A claiming transition
    records the actor as fulfiller and requires that nobody else holds it.
    """

    name: str
    target: str
    roles: frozenset
    verb: str
    open_sources: frozenset = frozenset()
    fulfiller_sources: frozenset = frozenset()
    claims: bool = False
    requester_only: bool = False
    stamp: Optional[str] = None
    record_actor_as: Optional[str] = None

    @property
    def sources(self) -> frozenset:
        return self.open_sources | self.fulfiller_sources


def _t(name: str, target: Any, roles: set, verb: str, **kwargs) -> Transition:
    for key in ("open_sources", "fulfiller_sources"):
        if key in kwargs:
            kwargs[key] = frozenset(s.value for s in kwargs[key])
    return Transition(
        name=name, target=target.value, roles=frozenset(roles), verb=verb, **kwargs
    )


LIFECYCLES: dict[EntityKind, dict[str, Transition]] = {
    EntityKind.RIDE: {
        "accept": _t(
            "accept",
            RideStatus.ACCEPTED,
            {Role.DRIVER},
            "accepted",
            open_sources={RideStatus.PENDING},
            claims=True,
        ),
        "reject": _t(
            "reject",
            RideStatus.REJECTED,
            {Role.DRIVER},
            "rejected",
            open_sources={RideStatus.PENDING},
            fulfiller_sources={RideStatus.ACCEPTED},
            record_actor_as="rejected_by",
        ),
        "complete": _t(
            "complete",
            RideStatus.COMPLETED,
            {Role.DRIVER},
            "completed",
            fulfiller_sources={RideStatus.ACCEPTED},
            stamp="completed_at",
        ),
    },
    EntityKind.HELP_CONFIRMATION: {
        "confirm": _t(
            "confirm",
            ConfirmationStatus.CONFIRMED,
            {Role.HELPER},
            "confirmed",
            fulfiller_sources={ConfirmationStatus.PENDING},
            stamp="confirmed_at",
        ),
        "reject": _t(
            "reject",
            ConfirmationStatus.REJECTED,
            {Role.STUDENT},
            "rejected",
            open_sources={ConfirmationStatus.PENDING},
            requester_only=True,
            record_actor_as="rejected_by",
        ),
    },
    EntityKind.COMPLAINT: {
        "start": _t(
            "start",
            ComplaintStatus.IN_PROGRESS,
            {Role.ADMIN},
            "started work on",
            open_sources={ComplaintStatus.PENDING},
            claims=True,
        ),
        "resolve": _t(
            "resolve",
            ComplaintStatus.RESOLVED,
            {Role.ADMIN},
            "resolved",
            open_sources={ComplaintStatus.PENDING},
            fulfiller_sources={ComplaintStatus.IN_PROGRESS},
            claims=True,
            stamp="resolved_at",
        ),
    },
    EntityKind.GADGET_LOAN: {
        "approve": _t(
            "approve",
            LoanStatus.BORROWED,
            {Role.ADMIN},
            "approved",
            open_sources={LoanStatus.PENDING},
            claims=True,
            stamp="borrowed_date",
        ),
        "reject": _t(
            "reject",
            LoanStatus.REJECTED,
            {Role.ADMIN},
            "rejected",
            open_sources={LoanStatus.PENDING},
            record_actor_as="rejected_by",
        ),
        "return": _t(
            "return",
            LoanStatus.RETURNED,
            {Role.ADMIN},
            "recorded the return of",
            open_sources={LoanStatus.BORROWED},
            stamp="return_date",
        ),
    },
}


def terminal_statuses(kind: EntityKind) -> frozenset:
    """Statuses with no outgoing transition for the kind."""
    transitions = LIFECYCLES[kind].values()
    targets = {t.target for t in transitions}
    sources = set().union(*(t.sources for t in transitions))
    return frozenset(targets - sources)


def describe(record: ServiceRequestRecord) -> str:
    details = record.details
    if record.kind == EntityKind.RIDE:
        return (
            f"ride from {details.get('pickup_location')} "
            f"to {details.get('destination')}"
        )
    if record.kind == EntityKind.COMPLAINT:
        return f"complaint \"{details.get('title', '')}\""
    if record.kind == EntityKind.GADGET_LOAN:
        return f"loan of {details.get('gadget_name', 'a gadget')}"
    if record.kind == EntityKind.HELP_CONFIRMATION:
        return f"help session on {details.get('date', 'an unknown date')}"
    return f"{record.kind.value} {record.request_id}"


class LifecycleController:
    def __init__(self, store: EntityStore, events: Optional[EventQueue] = None):
        self.store = store
        self.events = events

    def _load(
        self, request_id: str, kind: Optional[EntityKind] = None
    ) -> ServiceRequestRecord:
        record = self.store.get_request(request_id)
        if not record or (kind is not None and record.kind != kind):
            label = kind.value.replace("_", " ") if kind else "request"
            raise NotFound(f"The {label} could not be found.")
        return record

    def _check_source(
        self, record: ServiceRequestRecord, transition: Transition, actor: ActorContext
    ) -> Any:
        """Return the fulfiller predicate for the conditional update, or raise."""
        status = record.status
        if status in transition.fulfiller_sources and record.fulfiller_id == actor.actor_id:
            return actor.actor_id
        if status in transition.open_sources:
            if not transition.claims:
                return UNCHECKED
            if record.fulfiller_id is None:
                return None
            if record.fulfiller_id != actor.actor_id:
                raise ConflictError(
                    f"This {describe(record)} was already taken by someone else."
                )
        elif (
            transition.claims
            and record.fulfiller_id not in (None, actor.actor_id)
            and status not in terminal_statuses(record.kind)
        ):
            raise ConflictError(
                f"This {describe(record)} was already taken by someone else."
            )
        raise InvalidStateTransition(
            f"Cannot {transition.name} a {record.kind.value.replace('_', ' ')} "
            f"that is {status.replace('_', ' ')}."
        )

    def apply(
        self,
        actor: ActorContext,
        request_id: str,
        action: str,
        *,
        kind: Optional[EntityKind] = None,
        details: Optional[dict] = None,
    ) -> ServiceRequestRecord:
        record = self._load(request_id, kind)
        transition = LIFECYCLES.get(record.kind, {}).get(action)
        if transition is None:
            raise ValidationError(
                f"'{action}' is not a valid action for a "
                f"{record.kind.value.replace('_', ' ')}."
            )
        require(actor, record.kind, Action.TRANSITION)
        if actor.role not in transition.roles:
            raise PermissionDenied(
                f"A {actor.role.value} may not {transition.name} this request."
            )
        if transition.requester_only and record.requester_id != actor.actor_id:
            raise PermissionDenied("Only the requester may do that.")

        expected_fulfiller = self._check_source(record, transition, actor)

        changes: dict = {"status": transition.target}
        if transition.claims:
            changes["fulfiller_id"] = actor.actor_id
        patch = dict(details or {})
        if transition.stamp:
            patch[transition.stamp] = time.time()
        if transition.record_actor_as:
            patch[transition.record_actor_as] = actor.actor_id

        updated = self.store.update_request_if(
            record.request_id,
            expected_status=record.status,
            expected_fulfiller=expected_fulfiller,
            changes=changes,
            details=patch,
        )
        if updated is None:
            # Lost the race: classify against what the store holds now.
            self._check_source(self._load(request_id), transition, actor)
            raise ConflictError(
                f"This {describe(record)} changed while you were working on it. "
                "Refresh and try again."
            )

        logger.info(
            "%s %s -> %s by %s",
            record.request_id,
            record.status,
            updated.status,
            actor.actor_id,
        )
        audit.record(
            self.store,
            actor,
            f"{record.kind.value.replace('_', ' ').capitalize()} {transition.verb}",
            f"{actor.display_name or actor.actor_id} {transition.verb} {describe(updated)}",
        )
        self.announce(updated, CHANGE_CHANGED, actor, previous_status=record.status)
        return updated

    def announce(
        self,
        record: ServiceRequestRecord,
        change: str,
        actor: Optional[ActorContext] = None,
        previous_status: Optional[str] = None,
    ) -> None:
        event = ChangeEvent(
            entity_kind=record.kind.value,
            entity_id=record.request_id,
            change=change,
            status=record.status,
            previous_status=previous_status,
            actor_id=actor.actor_id if actor else None,
        )
        topics = [actor_topic(record.requester_id)]
        if record.fulfiller_id:
            topics.append(actor_topic(record.fulfiller_id))
        publish_quietly(self.events, topics, event)

    def created(self, actor: ActorContext, record: ServiceRequestRecord) -> None:
        audit.record(
            self.store,
            actor,
            f"{record.kind.value.replace('_', ' ').capitalize()} requested",
            f"{actor.display_name or actor.actor_id} requested a {describe(record)}",
        )
        self.announce(record, CHANGE_ADDED, actor)

    # Convenience wrappers named after the operations they perform.
    def accept(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "accept", **kwargs)

    def reject(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "reject", **kwargs)

    def complete(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "complete", **kwargs)

    def confirm(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "confirm", **kwargs)

    def start(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "start", **kwargs)

    def resolve(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "resolve", **kwargs)

    def approve(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "approve", **kwargs)

    def mark_returned(self, actor: ActorContext, request_id: str, **kwargs) -> ServiceRequestRecord:
        return self.apply(actor, request_id, "return", **kwargs)

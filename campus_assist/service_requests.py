"""
Service request intake and role-scoped reads.

Creation, non-status field updates and listings live here; every status change
is delegated to the lifecycle controller.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import date
from typing import Iterable, Optional

from campus_assist.db import EntityStore, ServiceRequestRecord
from campus_assist.errors import (
    ConflictError,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from campus_assist.events import CHANGE_CHANGED
from campus_assist.lifecycle import LifecycleController
from campus_assist.policy import ActorContext, is_permitted, require
from shared.constants import (
    MAX_DESCRIPTION_LENGTH,
    MAX_LOCATION_LENGTH,
    MAX_TITLE_LENGTH,
)
from shared.types import (
    Action,
    AssignmentStatus,
    DisabilityType,
    EntityKind,
    REQUEST_KINDS,
    RideStatus,
    Role,
)

logger = logging.getLogger(__name__)

LOCATION_ERROR = (
    "Could not get your location. Please enable location services and try again."
)


def _required_text(value: Optional[str], label: str, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required.")
    if len(text) > max_length:
        raise ValidationError(f"{label} must be at most {max_length} characters.")
    return text


def parse_coordinates(lat, lng) -> dict:
    """Return a {lat, lng} mapping or raise the user-facing location error."""
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError) as exc:
        raise ValidationError(LOCATION_ERROR) from exc
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise ValidationError(LOCATION_ERROR)
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        raise ValidationError(LOCATION_ERROR)
    return {"lat": lat_f, "lng": lng_f}


class ServiceRequestService:
    def __init__(self, store: EntityStore, lifecycle: LifecycleController):
        self.store = store
        self.lifecycle = lifecycle

    def _create(
        self,
        actor: ActorContext,
        kind: EntityKind,
        *,
        requester_id: str,
        description: str = "",
        fulfiller_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ServiceRequestRecord:
        record = self.store.create_request(
            kind,
            requester_id,
            description=description,
            fulfiller_id=fulfiller_id,
            details=details,
        )
        self.lifecycle.created(actor, record)
        return record

    # --- Rides ------------------------------------------------------------------
    def create_ride(
        self, actor: ActorContext, pickup_location: str, destination: str
    ) -> ServiceRequestRecord:
        require(actor, EntityKind.RIDE, Action.CREATE)
        pickup = _required_text(pickup_location, "Pickup location", MAX_LOCATION_LENGTH)
        dest = _required_text(destination, "Destination", MAX_LOCATION_LENGTH)
        return self._create(
            actor,
            EntityKind.RIDE,
            requester_id=actor.actor_id,
            description=f"Ride from {pickup} to {dest}",
            details={"pickup_location": pickup, "destination": dest},
        )

    def accept_ride(
        self, actor: ActorContext, request_id: str, lat, lng
    ) -> ServiceRequestRecord:
        location = parse_coordinates(lat, lng)
        return self.lifecycle.accept(
            actor,
            request_id,
            kind=EntityKind.RIDE,
            details={"driver_location": location, "location_updated_at": time.time()},
        )

    def reject_ride(self, actor: ActorContext, request_id: str) -> ServiceRequestRecord:
        return self.lifecycle.reject(actor, request_id, kind=EntityKind.RIDE)

    def complete_ride(self, actor: ActorContext, request_id: str) -> ServiceRequestRecord:
        return self.lifecycle.complete(actor, request_id, kind=EntityKind.RIDE)

    def update_driver_location(
        self, actor: ActorContext, request_id: str, lat, lng
    ) -> ServiceRequestRecord:
        require(actor, EntityKind.RIDE, Action.UPDATE)
        location = parse_coordinates(lat, lng)
        updated = self.store.update_request_if(
            request_id,
            expected_status=RideStatus.ACCEPTED.value,
            expected_fulfiller=actor.actor_id,
            details={"driver_location": location, "location_updated_at": time.time()},
        )
        if updated is None:
            current = self.store.get_request(request_id)
            if not current or current.kind != EntityKind.RIDE:
                raise NotFound("The ride could not be found.")
            raise InvalidStateTransition(
                "Location can only be shared for a ride you have accepted."
            )
        self.lifecycle.announce(updated, CHANGE_CHANGED, actor, previous_status=updated.status)
        return updated

    def driver_stats(self, actor: ActorContext, driver_id: Optional[str] = None) -> dict:
        driver_id = driver_id or actor.actor_id
        if not is_permitted(actor.role, EntityKind.RIDE, Action.READ_ALL):
            require(actor, EntityKind.RIDE, Action.READ_ASSIGNED)
            if driver_id != actor.actor_id:
                raise PermissionDenied("You can only view your own ride statistics.")
        claimed = self.store.list_requests(kind=EntityKind.RIDE, fulfiller_id=driver_id)
        rejected_unclaimed = [
            r
            for r in self.store.list_requests(
                kind=EntityKind.RIDE, statuses=[RideStatus.REJECTED.value]
            )
            if r.fulfiller_id is None and r.details.get("rejected_by") == driver_id
        ]
        total = len(claimed) + len(rejected_unclaimed)
        completed = sum(1 for r in claimed if r.status == RideStatus.COMPLETED.value)
        rejected = len(rejected_unclaimed) + sum(
            1 for r in claimed if r.status == RideStatus.REJECTED.value
        )
        acceptance_rate = round(100.0 * len(claimed) / total, 1) if total else 0.0
        return {
            "driver_id": driver_id,
            "total_rides": total,
            "completed_rides": completed,
            "rejected_rides": rejected,
            "acceptance_rate": acceptance_rate,
        }

    # --- Complaints -------------------------------------------------------------
    def create_complaint(
        self, actor: ActorContext, title: str, description: str
    ) -> ServiceRequestRecord:
        require(actor, EntityKind.COMPLAINT, Action.CREATE)
        return self._create(
            actor,
            EntityKind.COMPLAINT,
            requester_id=actor.actor_id,
            description=_required_text(description, "Description", MAX_DESCRIPTION_LENGTH),
            details={"title": _required_text(title, "Title", MAX_TITLE_LENGTH)},
        )

    def add_follow_up(
        self, actor: ActorContext, request_id: str, follow_up: str
    ) -> ServiceRequestRecord:
        require(actor, EntityKind.COMPLAINT, Action.UPDATE)
        text = _required_text(follow_up, "Follow-up", MAX_DESCRIPTION_LENGTH)
        current = self.store.get_request(request_id)
        if not current or current.kind != EntityKind.COMPLAINT:
            raise NotFound("The complaint could not be found.")
        if current.requester_id != actor.actor_id:
            raise PermissionDenied("Only the person who filed a complaint can follow up on it.")
        updated = self.store.update_request_if(
            request_id,
            expected_status=current.status,
            details={"follow_up": text, "follow_up_at": time.time()},
        )
        if updated is None:
            raise ConflictError(
                "This complaint changed while you were working on it. Refresh and try again."
            )
        self.lifecycle.announce(updated, CHANGE_CHANGED, actor, previous_status=current.status)
        return updated

    def start_complaint(self, actor: ActorContext, request_id: str) -> ServiceRequestRecord:
        return self.lifecycle.start(actor, request_id, kind=EntityKind.COMPLAINT)

    def resolve_complaint(
        self, actor: ActorContext, request_id: str, feedback: Optional[str] = None
    ) -> ServiceRequestRecord:
        details = {}
        if feedback is not None and feedback.strip():
            details["feedback"] = _required_text(feedback, "Feedback", MAX_DESCRIPTION_LENGTH)
        return self.lifecycle.resolve(
            actor, request_id, kind=EntityKind.COMPLAINT, details=details
        )

    # --- Gadget loans -----------------------------------------------------------
    def create_gadget_loan(
        self,
        actor: ActorContext,
        *,
        gadget_name: str,
        full_name: str,
        reg_number: str,
        course: str,
        disability_type: str,
        gadget_types: Iterable[str],
        duration: str,
    ) -> ServiceRequestRecord:
        require(actor, EntityKind.GADGET_LOAN, Action.CREATE)
        types = [t.strip() for t in (gadget_types or []) if t and t.strip()]
        if not types:
            raise ValidationError("Select at least one gadget type.")
        try:
            disability = DisabilityType(disability_type).value
        except ValueError as exc:
            raise ValidationError(
                f"Disability type '{disability_type}' is not one of the allowed options."
            ) from exc
        name = _required_text(gadget_name, "Gadget name", MAX_TITLE_LENGTH)
        return self._create(
            actor,
            EntityKind.GADGET_LOAN,
            requester_id=actor.actor_id,
            description=f"Loan request for {name}",
            details={
                "gadget_name": name,
                "full_name": _required_text(full_name, "Full name", MAX_TITLE_LENGTH),
                "reg_number": _required_text(reg_number, "Registration number", MAX_TITLE_LENGTH),
                "course": _required_text(course, "Course", MAX_TITLE_LENGTH),
                "disability_type": disability,
                "gadget_types": types,
                "duration": _required_text(duration, "Duration", MAX_TITLE_LENGTH),
            },
        )

    def approve_loan(self, actor: ActorContext, request_id: str) -> ServiceRequestRecord:
        return self.lifecycle.approve(actor, request_id, kind=EntityKind.GADGET_LOAN)

    def reject_loan(self, actor: ActorContext, request_id: str) -> ServiceRequestRecord:
        return self.lifecycle.reject(actor, request_id, kind=EntityKind.GADGET_LOAN)

    def return_loan(self, actor: ActorContext, request_id: str) -> ServiceRequestRecord:
        return self.lifecycle.mark_returned(actor, request_id, kind=EntityKind.GADGET_LOAN)

    # --- Help confirmations -----------------------------------------------------
    def create_help_confirmation(
        self, actor: ActorContext, student_id: str, session_date: str, description: str
    ) -> ServiceRequestRecord:
        require(actor, EntityKind.HELP_CONFIRMATION, Action.CREATE)
        active = self.store.list_assignments(
            helper_id=actor.actor_id,
            student_id=student_id,
            status=AssignmentStatus.ACTIVE,
        )
        if not active:
            raise PermissionDenied("You can only log help for students assigned to you.")
        try:
            parsed = date.fromisoformat((session_date or "").strip())
        except ValueError as exc:
            raise ValidationError("Date must be in YYYY-MM-DD format.") from exc
        return self._create(
            actor,
            EntityKind.HELP_CONFIRMATION,
            requester_id=student_id,
            fulfiller_id=actor.actor_id,
            description=_required_text(description, "Description", MAX_DESCRIPTION_LENGTH),
            details={"date": parsed.isoformat(), "helper_name": actor.display_name},
        )

    def reject_help_confirmation(
        self, actor: ActorContext, request_id: str
    ) -> ServiceRequestRecord:
        return self.lifecycle.reject(actor, request_id, kind=EntityKind.HELP_CONFIRMATION)

    # --- Reads ------------------------------------------------------------------
    def _can_see(self, actor: ActorContext, record: ServiceRequestRecord) -> bool:
        kind = record.kind
        if is_permitted(actor.role, kind, Action.READ_ALL):
            return True
        if is_permitted(actor.role, kind, Action.READ_OWN) and record.requester_id == actor.actor_id:
            return True
        if is_permitted(actor.role, kind, Action.READ_ASSIGNED):
            if record.fulfiller_id == actor.actor_id:
                return True
            if (
                kind == EntityKind.RIDE
                and actor.role == Role.DRIVER
                and record.status == RideStatus.PENDING.value
            ):
                return True
        return False

    def get_request(
        self, actor: ActorContext, request_id: str, kind: Optional[EntityKind] = None
    ) -> ServiceRequestRecord:
        record = self.store.get_request(request_id)
        if not record or (kind is not None and record.kind != kind):
            raise NotFound("The request could not be found.")
        if not self._can_see(actor, record):
            raise PermissionDenied("You do not have access to this request.")
        return record

    def visible_requests(
        self,
        actor: ActorContext,
        kind: EntityKind,
        updated_after: Optional[float] = None,
    ) -> list[ServiceRequestRecord]:
        role = actor.role
        if is_permitted(role, kind, Action.READ_ALL):
            return self.store.list_requests(kind=kind, updated_after=updated_after)

        can_own = is_permitted(role, kind, Action.READ_OWN)
        can_assigned = is_permitted(role, kind, Action.READ_ASSIGNED)
        if not (can_own or can_assigned):
            require(actor, kind, Action.READ_OWN)

        found: dict[str, ServiceRequestRecord] = {}
        if can_own:
            for r in self.store.list_requests(
                kind=kind, requester_id=actor.actor_id, updated_after=updated_after
            ):
                found[r.request_id] = r
        if can_assigned:
            if kind == EntityKind.RIDE and role == Role.DRIVER:
                batches = [
                    self.store.list_requests(
                        kind=kind,
                        statuses=[RideStatus.PENDING.value],
                        updated_after=updated_after,
                    ),
                    self.store.list_requests(
                        kind=kind,
                        statuses=[RideStatus.ACCEPTED.value],
                        fulfiller_id=actor.actor_id,
                        updated_after=updated_after,
                    ),
                ]
            else:
                batches = [
                    self.store.list_requests(
                        kind=kind, fulfiller_id=actor.actor_id, updated_after=updated_after
                    )
                ]
            for batch in batches:
                for r in batch:
                    found[r.request_id] = r
        return sorted(found.values(), key=lambda r: r.created_at)

    def changes_since(
        self, actor: ActorContext, since: Optional[float] = None
    ) -> list[ServiceRequestRecord]:
        """Requests relevant to the actor updated after the cursor, oldest first."""
        changed: list[ServiceRequestRecord] = []
        for kind in REQUEST_KINDS:
            if not any(
                is_permitted(actor.role, kind, action)
                for action in (Action.READ_ALL, Action.READ_OWN, Action.READ_ASSIGNED)
            ):
                continue
            changed.extend(self.visible_requests(actor, kind, updated_after=since))
        return sorted(changed, key=lambda r: r.updated_at)

    def withdrawn_since(
        self, actor: ActorContext, since: Optional[float]
    ) -> list[ServiceRequestRecord]:
        """
        Rides that left a driver's view after the cursor: claimed by another
        driver, rejected or completed. `changes_since` cannot return these
        because the driver may no longer read them, so the feed reports
        their ids instead.
        """
        if since is None or actor.role != Role.DRIVER:
            return []
        visible = {
            r.request_id
            for r in self.visible_requests(actor, EntityKind.RIDE, updated_after=since)
        }
        return [
            r
            for r in self.store.list_requests(kind=EntityKind.RIDE, updated_after=since)
            if r.request_id not in visible
        ]

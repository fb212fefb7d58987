"""
One-time verification codes for help-session confirmation.

A helper asks for a code, the student sees it on their own screen and reads it
out, and the helper enters it to confirm the session. A code is bound to one
helper/student pair, expires after a time window, and works once.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from typing import Callable, Optional

from campus_assist import audit
from campus_assist.db import (
    EntityStore,
    ServiceRequestRecord,
    VerificationCodeRecord,
)
from campus_assist.errors import (
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ServiceError,
    VerificationFailed,
)
from campus_assist.events import (
    CHANGE_ADDED,
    ChangeEvent,
    EventQueue,
    actor_topic,
    publish_quietly,
)
from campus_assist.lifecycle import LifecycleController
from campus_assist.policy import ActorContext, require
from shared.constants import VERIFICATION_CODE_LENGTH
from shared.types import (
    Action,
    AssignmentStatus,
    ConfirmationStatus,
    EntityKind,
)

logger = logging.getLogger(__name__)


def generate_code(length: int = VERIFICATION_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class VerificationService:
    def __init__(
        self,
        store: EntityStore,
        lifecycle: LifecycleController,
        ttl_seconds: int = 600,
        events: Optional[EventQueue] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.ttl_seconds = ttl_seconds
        self.events = events
        self.clock = clock

    def issue(self, helper: ActorContext, student_id: str) -> VerificationCodeRecord:
        """Issue a fresh code for the pair, invalidating any earlier unused one."""
        require(helper, EntityKind.VERIFICATION_CODE, Action.CREATE)
        if not self.store.list_assignments(
            helper_id=helper.actor_id,
            student_id=student_id,
            status=AssignmentStatus.ACTIVE,
        ):
            raise PermissionDenied(
                "You can only request codes for students assigned to you."
            )
        now = self.clock()
        expired = self.store.expire_verification_codes(student_id, helper.actor_id, now)
        if expired:
            logger.info(
                "Invalidated %d earlier code(s) for %s/%s", expired, helper.actor_id, student_id
            )
        record = self.store.create_verification_code(
            code=generate_code(),
            student_id=student_id,
            helper_id=helper.actor_id,
            helper_name=helper.display_name,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        audit.record(
            self.store,
            helper,
            "Verification code issued",
            f"{helper.display_name or helper.actor_id} requested a verification code",
        )
        publish_quietly(
            self.events,
            [actor_topic(student_id)],
            ChangeEvent(
                entity_kind=EntityKind.VERIFICATION_CODE.value,
                entity_id=record.code_id,
                change=CHANGE_ADDED,
                actor_id=helper.actor_id,
            ),
        )
        return record

    def current_codes_for_student(
        self, student: ActorContext
    ) -> list[VerificationCodeRecord]:
        require(student, EntityKind.VERIFICATION_CODE, Action.READ_OWN)
        return self.store.list_verification_codes(
            student_id=student.actor_id, usable_at=self.clock()
        )

    def confirm_help(
        self, helper: ActorContext, request_id: str, code: str
    ) -> ServiceRequestRecord:
        require(helper, EntityKind.HELP_CONFIRMATION, Action.TRANSITION)
        record = self.store.get_request(request_id)
        if not record or record.kind != EntityKind.HELP_CONFIRMATION:
            raise NotFound("The help confirmation could not be found.")
        if record.fulfiller_id != helper.actor_id:
            raise PermissionDenied("Only the helper who logged this session can confirm it.")
        if record.status != ConfirmationStatus.PENDING.value:
            raise InvalidStateTransition(
                f"Cannot confirm a help confirmation that is {record.status}."
            )

        now = self.clock()
        entered = (code or "").strip()
        candidates = self.store.list_verification_codes(
            student_id=record.requester_id, helper_id=helper.actor_id, usable_at=now
        )
        match = next(
            (c for c in candidates if hmac.compare_digest(c.code.encode(), entered.encode())),
            None,
        )
        if match is None:
            logger.warning("Verification failed for confirmation %s", request_id)
            raise VerificationFailed("The verification code is incorrect or has expired.")
        if not self.store.consume_verification_code(match.code_id, now):
            raise VerificationFailed("This verification code has already been used.")

        try:
            return self.lifecycle.confirm(
                helper,
                request_id,
                kind=EntityKind.HELP_CONFIRMATION,
                details={"verification_code_id": match.code_id},
            )
        except ServiceError:
            # The session was not confirmed, so the code is still owed.
            self.store.release_verification_code(match.code_id, now)
            raise

"""
Entity store abstraction for Postgres and an in-memory test implementation.

Lifecycle transitions go through `update_request_if`, an atomic conditional
update: it writes only when the stored status (and optionally the fulfiller)
still match what the caller expects, and returns None otherwise.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterator, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    text,
    or_,
    and_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from campus_assist.errors import StoreUnavailable
from shared.types import ActorStatus, AssignmentStatus, EntityKind, Role

logger = logging.getLogger(__name__)


class _Unchecked:
    def __repr__(self) -> str:
        return "UNCHECKED"


# Sentinel for `expected_fulfiller`: skip the fulfiller predicate entirely.
UNCHECKED: Any = _Unchecked()

# A conditional update retries when only the revision moved underneath it.
_CAS_ATTEMPTS = 3


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ActorRecord:
    actor_id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    phone: Optional[str] = None
    status: ActorStatus = ActorStatus.ACTIVE
    profile: dict = field(default_factory=dict)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def as_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role.value,
            "phone": self.phone,
            "status": self.status.value,
            "profile": dict(self.profile),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AssignmentRecord:
    assignment_id: str
    helper_id: str
    student_id: str
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "assignment_id": self.assignment_id,
            "helper_id": self.helper_id,
            "student_id": self.student_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ServiceRequestRecord:
    request_id: str
    kind: EntityKind
    requester_id: str
    status: str
    description: str = ""
    fulfiller_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    revision: int = 0
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "kind": self.kind.value,
            "requester_id": self.requester_id,
            "fulfiller_id": self.fulfiller_id,
            "status": self.status,
            "description": self.description,
            "details": dict(self.details),
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class MessageRecord:
    message_id: str
    sender_id: str
    receiver_id: str
    content: str
    read: bool = False
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "read": self.read,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VerificationCodeRecord:
    code_id: str
    code: str
    student_id: str
    helper_id: str
    helper_name: str
    issued_at: float
    expires_at: float
    used_at: Optional[float] = None

    def is_usable(self, now: float) -> bool:
        return self.used_at is None and now < self.expires_at


@dataclass
class SystemLogRecord:
    log_id: str
    type: str
    message: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "log_id": self.log_id,
            "type": self.type,
            "message": self.message,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "created_at": self.created_at,
        }


class EntityStore(Protocol):
    """Interface for durable record access."""

    def insert_actor_if_absent(self, actor: ActorRecord) -> bool:
        ...

    def get_actor(self, actor_id: str) -> Optional[ActorRecord]:
        ...

    def find_actor_by_email(self, email: str) -> Optional[ActorRecord]:
        ...

    def list_actors(
        self, role: Optional[Role] = None, limit: int = 500
    ) -> list[ActorRecord]:
        ...

    def update_actor_profile(
        self, actor_id: str, profile: dict
    ) -> Optional[ActorRecord]:
        ...

    def create_assignment(
        self, helper_id: str, student_id: str
    ) -> Optional[AssignmentRecord]:
        """Insert an active pairing; None if the student already has one."""
        ...

    def get_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        ...

    def list_assignments(
        self,
        *,
        helper_id: Optional[str] = None,
        student_id: Optional[str] = None,
        status: Optional[AssignmentStatus] = None,
    ) -> list[AssignmentRecord]:
        ...

    def deactivate_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        ...

    def create_request(
        self,
        kind: EntityKind,
        requester_id: str,
        *,
        status: str = "pending",
        description: str = "",
        fulfiller_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ServiceRequestRecord:
        ...

    def get_request(self, request_id: str) -> Optional[ServiceRequestRecord]:
        ...

    def list_requests(
        self,
        *,
        kind: Optional[EntityKind] = None,
        statuses: Optional[Collection[str]] = None,
        requester_id: Optional[str] = None,
        fulfiller_id: Optional[str] = None,
        updated_after: Optional[float] = None,
        limit: int = 500,
    ) -> list[ServiceRequestRecord]:
        ...

    def update_request_if(
        self,
        request_id: str,
        *,
        expected_status: str,
        expected_fulfiller: Any = UNCHECKED,
        changes: Optional[dict] = None,
        details: Optional[dict] = None,
    ) -> Optional[ServiceRequestRecord]:
        ...

    def create_message(
        self, sender_id: str, receiver_id: str, content: str
    ) -> MessageRecord:
        ...

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        ...

    def list_conversation(self, actor_a: str, actor_b: str) -> list[MessageRecord]:
        ...

    def list_inbox(
        self, receiver_id: str, unread_only: bool = False
    ) -> list[MessageRecord]:
        ...

    def mark_message_read(self, message_id: str) -> Optional[MessageRecord]:
        ...

    def create_verification_code(
        self,
        *,
        code: str,
        student_id: str,
        helper_id: str,
        helper_name: str,
        issued_at: float,
        expires_at: float,
    ) -> VerificationCodeRecord:
        ...

    def list_verification_codes(
        self,
        *,
        student_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        usable_at: Optional[float] = None,
    ) -> list[VerificationCodeRecord]:
        ...

    def expire_verification_codes(
        self, student_id: str, helper_id: str, now: float
    ) -> int:
        ...

    def consume_verification_code(self, code_id: str, now: float) -> bool:
        ...

    def release_verification_code(self, code_id: str, used_at: float) -> bool:
        """Undo a consume stamped `used_at`; expiry is left untouched."""
        ...

    def add_system_log(
        self,
        log_type: str,
        message: str,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> SystemLogRecord:
        ...

    def list_system_logs(
        self, limit: int = 100, log_type: Optional[str] = None
    ) -> list[SystemLogRecord]:
        ...


def _fulfiller_matches(current: Optional[str], expected: Any) -> bool:
    if expected is UNCHECKED:
        return True
    return current == expected


class InMemoryEntityStore:
    """Simple in-memory store for development and tests.

    Reads hand out copies so callers never alias stored state, and every
    compare-and-set runs under one lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.actors: Dict[str, ActorRecord] = {}
        self.assignments: Dict[str, AssignmentRecord] = {}
        self.requests: Dict[str, ServiceRequestRecord] = {}
        self.messages: Dict[str, MessageRecord] = {}
        self.codes: Dict[str, VerificationCodeRecord] = {}
        self.logs: list[SystemLogRecord] = []

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.actors.clear()
            self.assignments.clear()
            self.requests.clear()
            self.messages.clear()
            self.codes.clear()
            self.logs.clear()

    # --- Actors -----------------------------------------------------------------
    def insert_actor_if_absent(self, actor: ActorRecord) -> bool:
        with self._lock:
            if actor.actor_id in self.actors:
                return False
            self.actors[actor.actor_id] = copy.deepcopy(actor)
            return True

    def get_actor(self, actor_id: str) -> Optional[ActorRecord]:
        return copy.deepcopy(self.actors.get(actor_id))

    def find_actor_by_email(self, email: str) -> Optional[ActorRecord]:
        needle = email.strip().lower()
        for actor in self.actors.values():
            if actor.email.lower() == needle:
                return copy.deepcopy(actor)
        return None

    def list_actors(
        self, role: Optional[Role] = None, limit: int = 500
    ) -> list[ActorRecord]:
        items = [a for a in self.actors.values() if role is None or a.role == role]
        items.sort(key=lambda a: a.created_at)
        return copy.deepcopy(items[:limit])

    def update_actor_profile(
        self, actor_id: str, profile: dict
    ) -> Optional[ActorRecord]:
        with self._lock:
            record = self.actors.get(actor_id)
            if not record:
                return None
            record.profile.update(profile)
            record.updated_at = time.time()
            return copy.deepcopy(record)

    # --- Assignments ------------------------------------------------------------
    def create_assignment(
        self, helper_id: str, student_id: str
    ) -> Optional[AssignmentRecord]:
        record = AssignmentRecord(
            assignment_id=_new_id(), helper_id=helper_id, student_id=student_id
        )
        with self._lock:
            if any(
                a.student_id == student_id and a.status == AssignmentStatus.ACTIVE
                for a in self.assignments.values()
            ):
                return None
            self.assignments[record.assignment_id] = record
        return copy.deepcopy(record)

    def get_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        return copy.deepcopy(self.assignments.get(assignment_id))

    def list_assignments(
        self,
        *,
        helper_id: Optional[str] = None,
        student_id: Optional[str] = None,
        status: Optional[AssignmentStatus] = None,
    ) -> list[AssignmentRecord]:
        items = [
            a
            for a in self.assignments.values()
            if (helper_id is None or a.helper_id == helper_id)
            and (student_id is None or a.student_id == student_id)
            and (status is None or a.status == status)
        ]
        items.sort(key=lambda a: a.created_at)
        return copy.deepcopy(items)

    def deactivate_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        with self._lock:
            record = self.assignments.get(assignment_id)
            if not record or record.status != AssignmentStatus.ACTIVE:
                return None
            record.status = AssignmentStatus.INACTIVE
            record.updated_at = time.time()
            return copy.deepcopy(record)

    # --- Service requests -------------------------------------------------------
    def create_request(
        self,
        kind: EntityKind,
        requester_id: str,
        *,
        status: str = "pending",
        description: str = "",
        fulfiller_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ServiceRequestRecord:
        record = ServiceRequestRecord(
            request_id=_new_id(),
            kind=kind,
            requester_id=requester_id,
            status=status,
            description=description,
            fulfiller_id=fulfiller_id,
            details=dict(details or {}),
        )
        with self._lock:
            self.requests[record.request_id] = record
        return copy.deepcopy(record)

    def get_request(self, request_id: str) -> Optional[ServiceRequestRecord]:
        return copy.deepcopy(self.requests.get(request_id))

    def list_requests(
        self,
        *,
        kind: Optional[EntityKind] = None,
        statuses: Optional[Collection[str]] = None,
        requester_id: Optional[str] = None,
        fulfiller_id: Optional[str] = None,
        updated_after: Optional[float] = None,
        limit: int = 500,
    ) -> list[ServiceRequestRecord]:
        items = [
            r
            for r in self.requests.values()
            if (kind is None or r.kind == kind)
            and (statuses is None or r.status in statuses)
            and (requester_id is None or r.requester_id == requester_id)
            and (fulfiller_id is None or r.fulfiller_id == fulfiller_id)
            and (updated_after is None or r.updated_at > updated_after)
        ]
        items.sort(key=lambda r: r.created_at)
        return copy.deepcopy(items[:limit])

    def update_request_if(
        self,
        request_id: str,
        *,
        expected_status: str,
        expected_fulfiller: Any = UNCHECKED,
        changes: Optional[dict] = None,
        details: Optional[dict] = None,
    ) -> Optional[ServiceRequestRecord]:
        with self._lock:
            record = self.requests.get(request_id)
            if not record:
                return None
            if record.status != expected_status:
                return None
            if not _fulfiller_matches(record.fulfiller_id, expected_fulfiller):
                return None
            for key, value in (changes or {}).items():
                setattr(record, key, value)
            if details:
                record.details.update(details)
            record.revision += 1
            record.updated_at = time.time()
            return copy.deepcopy(record)

    # --- Messages ---------------------------------------------------------------
    def create_message(
        self, sender_id: str, receiver_id: str, content: str
    ) -> MessageRecord:
        record = MessageRecord(
            message_id=_new_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
        )
        with self._lock:
            self.messages[record.message_id] = record
        return copy.deepcopy(record)

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        return copy.deepcopy(self.messages.get(message_id))

    def list_conversation(self, actor_a: str, actor_b: str) -> list[MessageRecord]:
        pair = {actor_a, actor_b}
        items = [
            m for m in self.messages.values() if {m.sender_id, m.receiver_id} == pair
        ]
        items.sort(key=lambda m: m.created_at)
        return copy.deepcopy(items)

    def list_inbox(
        self, receiver_id: str, unread_only: bool = False
    ) -> list[MessageRecord]:
        items = [
            m
            for m in self.messages.values()
            if m.receiver_id == receiver_id and not (unread_only and m.read)
        ]
        items.sort(key=lambda m: m.created_at, reverse=True)
        return copy.deepcopy(items)

    def mark_message_read(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            record = self.messages.get(message_id)
            if not record:
                return None
            if not record.read:
                record.read = True
                record.updated_at = time.time()
            return copy.deepcopy(record)

    # --- Verification codes -----------------------------------------------------
    def create_verification_code(
        self,
        *,
        code: str,
        student_id: str,
        helper_id: str,
        helper_name: str,
        issued_at: float,
        expires_at: float,
    ) -> VerificationCodeRecord:
        record = VerificationCodeRecord(
            code_id=_new_id(),
            code=code,
            student_id=student_id,
            helper_id=helper_id,
            helper_name=helper_name,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        with self._lock:
            self.codes[record.code_id] = record
        return copy.deepcopy(record)

    def list_verification_codes(
        self,
        *,
        student_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        usable_at: Optional[float] = None,
    ) -> list[VerificationCodeRecord]:
        items = [
            c
            for c in self.codes.values()
            if (student_id is None or c.student_id == student_id)
            and (helper_id is None or c.helper_id == helper_id)
            and (usable_at is None or c.is_usable(usable_at))
        ]
        items.sort(key=lambda c: c.issued_at, reverse=True)
        return copy.deepcopy(items)

    def expire_verification_codes(
        self, student_id: str, helper_id: str, now: float
    ) -> int:
        expired = 0
        with self._lock:
            for record in self.codes.values():
                if (
                    record.student_id == student_id
                    and record.helper_id == helper_id
                    and record.is_usable(now)
                ):
                    record.expires_at = now
                    expired += 1
        return expired

    def consume_verification_code(self, code_id: str, now: float) -> bool:
        with self._lock:
            record = self.codes.get(code_id)
            if not record or not record.is_usable(now):
                return False
            record.used_at = now
            return True

    def release_verification_code(self, code_id: str, used_at: float) -> bool:
        with self._lock:
            record = self.codes.get(code_id)
            if not record or record.used_at != used_at:
                return False
            record.used_at = None
            return True

    # --- System logs ------------------------------------------------------------
    def add_system_log(
        self,
        log_type: str,
        message: str,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> SystemLogRecord:
        record = SystemLogRecord(
            log_id=_new_id(),
            type=log_type,
            message=message,
            actor_id=actor_id,
            actor_role=actor_role,
        )
        with self._lock:
            self.logs.append(record)
        return copy.deepcopy(record)

    def list_system_logs(
        self, limit: int = 100, log_type: Optional[str] = None
    ) -> list[SystemLogRecord]:
        items = [e for e in self.logs if log_type is None or e.type == log_type]
        items.sort(key=lambda e: e.created_at, reverse=True)
        return copy.deepcopy(items[:limit])


class PostgresEntityStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresEntityStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        try:
            with self.Session() as session:
                yield session
        except OperationalError as exc:
            logger.exception("Entity store operation failed")
            raise StoreUnavailable(
                "The data store is temporarily unavailable. Please try again."
            ) from exc

    # --- Row mapping ------------------------------------------------------------
    def _to_actor(self, row: "ActorRow") -> ActorRecord:
        return ActorRecord(
            actor_id=row.actor_id,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
            role=Role(row.role),
            phone=row.phone,
            status=ActorStatus(row.status),
            profile=dict(row.profile or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_assignment(self, row: "AssignmentRow") -> AssignmentRecord:
        return AssignmentRecord(
            assignment_id=row.assignment_id,
            helper_id=row.helper_id,
            student_id=row.student_id,
            status=AssignmentStatus(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_request(self, row: "ServiceRequestRow") -> ServiceRequestRecord:
        return ServiceRequestRecord(
            request_id=row.request_id,
            kind=EntityKind(row.kind),
            requester_id=row.requester_id,
            fulfiller_id=row.fulfiller_id,
            status=row.status,
            description=row.description or "",
            details=dict(row.details or {}),
            revision=row.revision,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_message(self, row: "MessageRow") -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=row.content,
            read=row.read,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_code(self, row: "VerificationCodeRow") -> VerificationCodeRecord:
        return VerificationCodeRecord(
            code_id=row.code_id,
            code=row.code,
            student_id=row.student_id,
            helper_id=row.helper_id,
            helper_name=row.helper_name,
            issued_at=row.issued_at,
            expires_at=row.expires_at,
            used_at=row.used_at,
        )

    def _to_log(self, row: "SystemLogRow") -> SystemLogRecord:
        return SystemLogRecord(
            log_id=row.log_id,
            type=row.type,
            message=row.message,
            actor_id=row.actor_id,
            actor_role=row.actor_role,
            created_at=row.created_at,
        )

    # --- Actors -----------------------------------------------------------------
    def insert_actor_if_absent(self, actor: ActorRecord) -> bool:
        with self._session_scope() as session:
            if session.get(ActorRow, actor.actor_id):
                return False
            session.add(
                ActorRow(
                    actor_id=actor.actor_id,
                    email=actor.email,
                    first_name=actor.first_name,
                    last_name=actor.last_name,
                    role=actor.role.value,
                    phone=actor.phone,
                    status=actor.status.value,
                    profile=dict(actor.profile),
                    created_at=actor.created_at,
                    updated_at=actor.updated_at,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # Another writer inserted the same identity first.
                session.rollback()
                return False
            return True

    def get_actor(self, actor_id: str) -> Optional[ActorRecord]:
        with self._session_scope() as session:
            row = session.get(ActorRow, actor_id)
            return self._to_actor(row) if row else None

    def find_actor_by_email(self, email: str) -> Optional[ActorRecord]:
        with self._session_scope() as session:
            stmt = select(ActorRow).where(ActorRow.email == email.strip().lower())
            row = session.execute(stmt).scalars().first()
            return self._to_actor(row) if row else None

    def list_actors(
        self, role: Optional[Role] = None, limit: int = 500
    ) -> list[ActorRecord]:
        with self._session_scope() as session:
            stmt = select(ActorRow).order_by(ActorRow.created_at.asc()).limit(limit)
            if role is not None:
                stmt = stmt.where(ActorRow.role == role.value)
            return [self._to_actor(row) for row in session.execute(stmt).scalars()]

    def update_actor_profile(
        self, actor_id: str, profile: dict
    ) -> Optional[ActorRecord]:
        with self._session_scope() as session:
            row = session.get(ActorRow, actor_id)
            if not row:
                return None
            merged = dict(row.profile or {})
            merged.update(profile)
            row.profile = merged
            row.updated_at = time.time()
            session.commit()
            session.refresh(row)
            return self._to_actor(row)

    # --- Assignments ------------------------------------------------------------
    def create_assignment(
        self, helper_id: str, student_id: str
    ) -> Optional[AssignmentRecord]:
        now = time.time()
        with self._session_scope() as session:
            row = AssignmentRow(
                assignment_id=_new_id(),
                helper_id=helper_id,
                student_id=student_id,
                status=AssignmentStatus.ACTIVE.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # uq_active_assignment_per_student: another pairing won.
                session.rollback()
                return None
            session.refresh(row)
            return self._to_assignment(row)

    def get_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        with self._session_scope() as session:
            row = session.get(AssignmentRow, assignment_id)
            return self._to_assignment(row) if row else None

    def list_assignments(
        self,
        *,
        helper_id: Optional[str] = None,
        student_id: Optional[str] = None,
        status: Optional[AssignmentStatus] = None,
    ) -> list[AssignmentRecord]:
        with self._session_scope() as session:
            stmt = select(AssignmentRow).order_by(AssignmentRow.created_at.asc())
            if helper_id is not None:
                stmt = stmt.where(AssignmentRow.helper_id == helper_id)
            if student_id is not None:
                stmt = stmt.where(AssignmentRow.student_id == student_id)
            if status is not None:
                stmt = stmt.where(AssignmentRow.status == status.value)
            return [
                self._to_assignment(row) for row in session.execute(stmt).scalars()
            ]

    def deactivate_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        with self._session_scope() as session:
            result = session.execute(
                update(AssignmentRow)
                .where(
                    AssignmentRow.assignment_id == assignment_id,
                    AssignmentRow.status == AssignmentStatus.ACTIVE.value,
                )
                .values(status=AssignmentStatus.INACTIVE.value, updated_at=time.time()),
                execution_options={"synchronize_session": False},
            )
            session.commit()
            if result.rowcount != 1:
                return None
            row = session.get(AssignmentRow, assignment_id)
            session.refresh(row)
            return self._to_assignment(row)

    # --- Service requests -------------------------------------------------------
    def create_request(
        self,
        kind: EntityKind,
        requester_id: str,
        *,
        status: str = "pending",
        description: str = "",
        fulfiller_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ServiceRequestRecord:
        now = time.time()
        with self._session_scope() as session:
            row = ServiceRequestRow(
                request_id=_new_id(),
                kind=kind.value,
                requester_id=requester_id,
                fulfiller_id=fulfiller_id,
                status=status,
                description=description,
                details=dict(details or {}),
                revision=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_request(row)

    def get_request(self, request_id: str) -> Optional[ServiceRequestRecord]:
        with self._session_scope() as session:
            row = session.get(ServiceRequestRow, request_id)
            return self._to_request(row) if row else None

    def list_requests(
        self,
        *,
        kind: Optional[EntityKind] = None,
        statuses: Optional[Collection[str]] = None,
        requester_id: Optional[str] = None,
        fulfiller_id: Optional[str] = None,
        updated_after: Optional[float] = None,
        limit: int = 500,
    ) -> list[ServiceRequestRecord]:
        with self._session_scope() as session:
            stmt = (
                select(ServiceRequestRow)
                .order_by(ServiceRequestRow.created_at.asc())
                .limit(limit)
            )
            if kind is not None:
                stmt = stmt.where(ServiceRequestRow.kind == kind.value)
            if statuses is not None:
                stmt = stmt.where(ServiceRequestRow.status.in_(list(statuses)))
            if requester_id is not None:
                stmt = stmt.where(ServiceRequestRow.requester_id == requester_id)
            if fulfiller_id is not None:
                stmt = stmt.where(ServiceRequestRow.fulfiller_id == fulfiller_id)
            if updated_after is not None:
                stmt = stmt.where(ServiceRequestRow.updated_at > updated_after)
            return [self._to_request(row) for row in session.execute(stmt).scalars()]

    def update_request_if(
        self,
        request_id: str,
        *,
        expected_status: str,
        expected_fulfiller: Any = UNCHECKED,
        changes: Optional[dict] = None,
        details: Optional[dict] = None,
    ) -> Optional[ServiceRequestRecord]:
        for _ in range(_CAS_ATTEMPTS):
            with self._session_scope() as session:
                row = session.get(ServiceRequestRow, request_id)
                if not row or row.status != expected_status:
                    return None
                if not _fulfiller_matches(row.fulfiller_id, expected_fulfiller):
                    return None
                merged = dict(row.details or {})
                merged.update(details or {})
                seen_revision = row.revision
                stmt = update(ServiceRequestRow).where(
                    ServiceRequestRow.request_id == request_id,
                    ServiceRequestRow.status == expected_status,
                    ServiceRequestRow.revision == seen_revision,
                )
                if expected_fulfiller is None:
                    stmt = stmt.where(ServiceRequestRow.fulfiller_id.is_(None))
                elif expected_fulfiller is not UNCHECKED:
                    stmt = stmt.where(
                        ServiceRequestRow.fulfiller_id == expected_fulfiller
                    )
                result = session.execute(
                    stmt.values(
                        **dict(changes or {}),
                        details=merged,
                        revision=seen_revision + 1,
                        updated_at=time.time(),
                    ),
                    execution_options={"synchronize_session": False},
                )
                session.commit()
                if result.rowcount == 1:
                    session.refresh(row)
                    return self._to_request(row)
        logger.warning(
            "Conditional update on %s gave up after %d attempts",
            request_id,
            _CAS_ATTEMPTS,
        )
        return None

    # --- Messages ---------------------------------------------------------------
    def create_message(
        self, sender_id: str, receiver_id: str, content: str
    ) -> MessageRecord:
        now = time.time()
        with self._session_scope() as session:
            row = MessageRow(
                message_id=_new_id(),
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                read=False,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_message(row)

    def get_message(self, message_id: str) -> Optional[MessageRecord]:
        with self._session_scope() as session:
            row = session.get(MessageRow, message_id)
            return self._to_message(row) if row else None

    def list_conversation(self, actor_a: str, actor_b: str) -> list[MessageRecord]:
        with self._session_scope() as session:
            stmt = (
                select(MessageRow)
                .where(
                    or_(
                        and_(
                            MessageRow.sender_id == actor_a,
                            MessageRow.receiver_id == actor_b,
                        ),
                        and_(
                            MessageRow.sender_id == actor_b,
                            MessageRow.receiver_id == actor_a,
                        ),
                    )
                )
                .order_by(MessageRow.created_at.asc())
            )
            return [self._to_message(row) for row in session.execute(stmt).scalars()]

    def list_inbox(
        self, receiver_id: str, unread_only: bool = False
    ) -> list[MessageRecord]:
        with self._session_scope() as session:
            stmt = (
                select(MessageRow)
                .where(MessageRow.receiver_id == receiver_id)
                .order_by(MessageRow.created_at.desc())
            )
            if unread_only:
                stmt = stmt.where(MessageRow.read.is_(False))
            return [self._to_message(row) for row in session.execute(stmt).scalars()]

    def mark_message_read(self, message_id: str) -> Optional[MessageRecord]:
        with self._session_scope() as session:
            session.execute(
                update(MessageRow)
                .where(MessageRow.message_id == message_id, MessageRow.read.is_(False))
                .values(read=True, updated_at=time.time()),
                execution_options={"synchronize_session": False},
            )
            session.commit()
            row = session.get(MessageRow, message_id)
            if not row:
                return None
            session.refresh(row)
            return self._to_message(row)

    # --- Verification codes -----------------------------------------------------
    def create_verification_code(
        self,
        *,
        code: str,
        student_id: str,
        helper_id: str,
        helper_name: str,
        issued_at: float,
        expires_at: float,
    ) -> VerificationCodeRecord:
        with self._session_scope() as session:
            row = VerificationCodeRow(
                code_id=_new_id(),
                code=code,
                student_id=student_id,
                helper_id=helper_id,
                helper_name=helper_name,
                issued_at=issued_at,
                expires_at=expires_at,
                used_at=None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_code(row)

    def list_verification_codes(
        self,
        *,
        student_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        usable_at: Optional[float] = None,
    ) -> list[VerificationCodeRecord]:
        with self._session_scope() as session:
            stmt = select(VerificationCodeRow).order_by(
                VerificationCodeRow.issued_at.desc()
            )
            if student_id is not None:
                stmt = stmt.where(VerificationCodeRow.student_id == student_id)
            if helper_id is not None:
                stmt = stmt.where(VerificationCodeRow.helper_id == helper_id)
            if usable_at is not None:
                stmt = stmt.where(
                    VerificationCodeRow.used_at.is_(None),
                    VerificationCodeRow.expires_at > usable_at,
                )
            return [self._to_code(row) for row in session.execute(stmt).scalars()]

    def expire_verification_codes(
        self, student_id: str, helper_id: str, now: float
    ) -> int:
        with self._session_scope() as session:
            result = session.execute(
                update(VerificationCodeRow)
                .where(
                    VerificationCodeRow.student_id == student_id,
                    VerificationCodeRow.helper_id == helper_id,
                    VerificationCodeRow.used_at.is_(None),
                    VerificationCodeRow.expires_at > now,
                )
                .values(expires_at=now),
                execution_options={"synchronize_session": False},
            )
            session.commit()
            return result.rowcount or 0

    def consume_verification_code(self, code_id: str, now: float) -> bool:
        with self._session_scope() as session:
            result = session.execute(
                update(VerificationCodeRow)
                .where(
                    VerificationCodeRow.code_id == code_id,
                    VerificationCodeRow.used_at.is_(None),
                    VerificationCodeRow.expires_at > now,
                )
                .values(used_at=now),
                execution_options={"synchronize_session": False},
            )
            session.commit()
            return result.rowcount == 1

    def release_verification_code(self, code_id: str, used_at: float) -> bool:
        with self._session_scope() as session:
            result = session.execute(
                update(VerificationCodeRow)
                .where(
                    VerificationCodeRow.code_id == code_id,
                    VerificationCodeRow.used_at == used_at,
                )
                .values(used_at=None),
                execution_options={"synchronize_session": False},
            )
            session.commit()
            return result.rowcount == 1

    # --- System logs ------------------------------------------------------------
    def add_system_log(
        self,
        log_type: str,
        message: str,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> SystemLogRecord:
        with self._session_scope() as session:
            row = SystemLogRow(
                log_id=_new_id(),
                type=log_type,
                message=message,
                actor_id=actor_id,
                actor_role=actor_role,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_log(row)

    def list_system_logs(
        self, limit: int = 100, log_type: Optional[str] = None
    ) -> list[SystemLogRecord]:
        with self._session_scope() as session:
            stmt = (
                select(SystemLogRow)
                .order_by(SystemLogRow.created_at.desc())
                .limit(limit)
            )
            if log_type is not None:
                stmt = stmt.where(SystemLogRow.type == log_type)
            return [self._to_log(row) for row in session.execute(stmt).scalars()]


Base = declarative_base()


class ActorRow(Base):
    __tablename__ = "users"

    actor_id = Column("id", String, primary_key=True)
    email = Column(String, nullable=False, index=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ActorStatus.ACTIVE.value)
    profile = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AssignmentRow(Base):
    __tablename__ = "helper_student_assignments"
    __table_args__ = (
        Index(
            "uq_active_assignment_per_student",
            "student_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    assignment_id = Column("id", String, primary_key=True)
    helper_id = Column(String, nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class ServiceRequestRow(Base):
    __tablename__ = "service_requests"

    request_id = Column("id", String, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    requester_id = Column(String, nullable=False, index=True)
    fulfiller_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    details = Column(JSON, nullable=False, default=dict)
    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False, index=True)


class MessageRow(Base):
    __tablename__ = "messages"

    message_id = Column("id", String, primary_key=True)
    sender_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class VerificationCodeRow(Base):
    __tablename__ = "verification_codes"

    code_id = Column("id", String, primary_key=True)
    code = Column(String, nullable=False)
    student_id = Column(String, nullable=False, index=True)
    helper_id = Column(String, nullable=False, index=True)
    helper_name = Column(String, nullable=False, default="")
    issued_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    used_at = Column(Float, nullable=True)


class SystemLogRow(Base):
    __tablename__ = "system_logs"

    log_id = Column("id", String, primary_key=True)
    type = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    actor_id = Column(String, nullable=True)
    actor_role = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)

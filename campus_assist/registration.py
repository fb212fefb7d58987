"""
Account provisioning.

`register_user` is the admin-only path that creates an account with its
role-specific uploads. `materialize_actor` turns an identity-provider user
into an Actor record and is safe to call any number of times: from
registration, from the auth webhook, and lazily on the first authenticated
request.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from campus_assist import audit
from campus_assist.auth import AuthUser, IdentityProvider
from campus_assist.db import ActorRecord, EntityStore
from campus_assist.errors import ValidationError
from campus_assist.policy import ActorContext, require
from campus_assist.storage import StorageClient
from campus_assist.uploads import CheckedUpload, validate_upload
from shared.constants import MIN_PASSWORD_LENGTH
from shared.types import (
    Action,
    AssistantSpecialization,
    AssistantType,
    BankName,
    DisabilityType,
    EntityKind,
    Role,
    TimePeriod,
    UploadKind,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Metadata keys copied onto the actor profile.
PROFILE_FIELDS = (
    "disability_type",
    "assistant_type",
    "assistant_specialization",
    "time_period",
    "bank_name",
    "bank_account_number",
)

# Profile attribute holding the storage path of each upload kind.
UPLOAD_PATH_FIELDS = {
    UploadKind.PROFILE_PICTURE: "photo_path",
    UploadKind.APPLICATION_LETTER: "application_letter_path",
    UploadKind.DISABILITY_VIDEO: "disability_video_path",
}

ALLOWED_UPLOADS = {
    Role.ADMIN: {UploadKind.PROFILE_PICTURE},
    Role.DRIVER: {UploadKind.PROFILE_PICTURE},
    Role.HELPER: {UploadKind.PROFILE_PICTURE, UploadKind.APPLICATION_LETTER},
    Role.STUDENT: {UploadKind.PROFILE_PICTURE, UploadKind.DISABILITY_VIDEO},
}


@dataclass
class RegistrationForm:
    email: str
    password: str
    confirm_password: str
    first_name: str
    last_name: str
    role: str
    phone: str
    disability_type: Optional[str] = None
    assistant_type: Optional[str] = None
    assistant_specialization: Optional[str] = None
    time_period: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None


@dataclass
class RawUpload:
    filename: str
    content_type: str
    data: bytes = field(repr=False)


def _enum_value(enum_cls, value: Optional[str], label: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError as exc:
        raise ValidationError(f"{label} '{value}' is not one of the allowed options.") from exc


def validate_form(form: RegistrationForm) -> tuple[Role, dict]:
    """Check the text fields and return the role plus the identity metadata."""
    required = {
        "First name": form.first_name,
        "Last name": form.last_name,
        "Email": form.email,
        "Password": form.password,
        "Password confirmation": form.confirm_password,
        "Role": form.role,
        "Phone": form.phone,
    }
    missing = [label for label, value in required.items() if not (value or "").strip()]
    if missing:
        raise ValidationError(
            "Please fill in all required fields: " + ", ".join(missing) + "."
        )
    if not EMAIL_PATTERN.match(form.email.strip()):
        raise ValidationError("Please enter a valid email address.")
    if form.password != form.confirm_password:
        raise ValidationError("Passwords do not match.")
    if len(form.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
        )
    role = Role(_enum_value(Role, form.role, "Role"))

    metadata = {
        "first_name": form.first_name.strip(),
        "last_name": form.last_name.strip(),
        "phone": form.phone.strip(),
    }
    if role == Role.HELPER:
        helper_fields = (
            form.assistant_type,
            form.assistant_specialization,
            form.time_period,
            form.bank_name,
            form.bank_account_number,
        )
        if not all(helper_fields):
            raise ValidationError("Please fill in all helper-specific fields.")
        if not re.fullmatch(r"[0-9]+", form.bank_account_number):
            raise ValidationError("Bank account number must contain digits only.")
        metadata.update(
            assistant_type=_enum_value(AssistantType, form.assistant_type, "Assistant type"),
            assistant_specialization=_enum_value(
                AssistantSpecialization,
                form.assistant_specialization,
                "Assistant specialization",
            ),
            time_period=_enum_value(TimePeriod, form.time_period, "Time period"),
            bank_name=_enum_value(BankName, form.bank_name, "Bank name"),
            bank_account_number=form.bank_account_number,
        )
    elif role == Role.STUDENT:
        if not form.disability_type:
            raise ValidationError("Please select a disability type.")
        metadata["disability_type"] = _enum_value(
            DisabilityType, form.disability_type, "Disability type"
        )
    return role, metadata


def validate_files(role: Role, files: dict[UploadKind, RawUpload]) -> list[CheckedUpload]:
    if UploadKind.PROFILE_PICTURE not in files:
        raise ValidationError("A profile picture is required.")
    if role == Role.HELPER and UploadKind.APPLICATION_LETTER not in files:
        raise ValidationError("Helpers must upload an application letter.")
    checked = []
    for kind, upload in files.items():
        if kind not in ALLOWED_UPLOADS[role]:
            raise ValidationError(
                f"A {kind.value.replace('_', ' ')} is not accepted for a {role.value}."
            )
        checked.append(
            validate_upload(kind, upload.filename, upload.content_type, upload.data)
        )
    return checked


def materialize_actor(
    store: EntityStore, auth_user: AuthUser, profile: Optional[dict] = None
) -> ActorRecord:
    """
    Create the Actor for an identity if it does not exist yet.

    The role comes from app_metadata only; users can write their own
    user_metadata at sign-up, so a role found there is ignored.
    """
    metadata = auth_user.metadata or {}
    role_value = (auth_user.app_metadata or {}).get("role") or Role.STUDENT.value
    role = Role(_enum_value(Role, role_value, "Role"))
    base_profile = {k: metadata[k] for k in PROFILE_FIELDS if metadata.get(k)}
    base_profile.update(profile or {})
    record = ActorRecord(
        actor_id=auth_user.user_id,
        email=auth_user.email.strip().lower(),
        first_name=metadata.get("first_name") or "",
        last_name=metadata.get("last_name") or "",
        role=role,
        phone=metadata.get("phone"),
        profile=base_profile,
    )
    if store.insert_actor_if_absent(record):
        logger.info("Materialized %s actor %s", role.value, record.actor_id)
        return store.get_actor(record.actor_id) or record
    if profile:
        updated = store.update_actor_profile(record.actor_id, profile)
        if updated:
            return updated
    return store.get_actor(record.actor_id) or record


def register_user(
    store: EntityStore,
    identity: IdentityProvider,
    storage: StorageClient,
    admin: ActorContext,
    form: RegistrationForm,
    files: dict[UploadKind, RawUpload],
) -> ActorRecord:
    require(admin, EntityKind.ACTOR, Action.CREATE)
    role, metadata = validate_form(form)
    checked = validate_files(role, files)

    auth_user = identity.sign_up(form.email, form.password, metadata, role.value)
    paths = {}
    for upload in checked:
        path = f"users/{auth_user.user_id}/{upload.kind.value}{upload.extension}"
        paths[UPLOAD_PATH_FIELDS[upload.kind]] = storage.upload_bytes(
            path, upload.data, upload.content_type
        )

    actor = materialize_actor(store, auth_user, profile=paths)
    audit.record(
        store,
        admin,
        "User registered",
        f"{admin.display_name or admin.actor_id} registered {actor.full_name} "
        f"({actor.email}) as {actor.role.value}",
    )
    return actor

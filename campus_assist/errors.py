"""
Error taxonomy shared by the service layer and the HTTP surface.

Every failure is scoped to the single action that triggered it. The HTTP layer
maps these to status codes in `campus_assist.app`.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for failures surfaced to the initiating actor."""

    status_code = 400
    code = "service_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Missing or malformed input, raised before any store call."""

    code = "validation_error"


class VerificationFailed(ValidationError):
    """A verification code did not match the one issued for the pair."""

    code = "verification_failed"


class AuthenticationFailed(ServiceError):
    status_code = 401
    code = "authentication_failed"


class PermissionDenied(ServiceError):
    status_code = 403
    code = "permission_denied"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class InvalidStateTransition(ServiceError):
    """The entity is not in the source state the transition requires."""

    status_code = 409
    code = "invalid_state_transition"


class ConflictError(ServiceError):
    """Lost a race for an exclusive transition or resource."""

    status_code = 409
    code = "conflict"
    retryable = True


class StoreUnavailable(ServiceError):
    """A backing service (database, storage, auth, queue) failed."""

    status_code = 503
    code = "store_unavailable"
    retryable = True

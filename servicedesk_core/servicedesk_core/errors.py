"""Error taxonomy shared by the domain rules and the API layer.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API boundary maps it to.  Messages are actor-facing; internal detail
belongs in logs.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base class for every expected, actor-facing failure."""

    status_code: int = 400
    code: str = "service_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class PreconditionFailed(ValidationError):
    """A required input for the requested operation is missing or invalid."""

    code = "precondition_failed"


class InvalidSignature(ValidationError):
    code = "invalid_signature"


class AuthzError(ServiceError):
    status_code = 403
    code = "forbidden"


Forbidden = AuthzError


class SubscriptionBlocked(AuthzError):
    code = "subscription_blocked"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class StateError(ServiceError):
    status_code = 400
    code = "invalid_state"


class InvalidTransition(StateError):
    code = "invalid_transition"


class ProviderError(ServiceError):
    """The payment gateway could not be reached or answered with an error."""

    status_code = 502
    code = "provider_error"


class IdempotencyShortCircuit(ServiceError):
    """The event was already applied; acknowledge without side effects."""

    status_code = 200
    code = "already_processed"

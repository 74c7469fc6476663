"""
Typed access-control errors.

Every protected operation either returns a resolved context or raises one of these;
the Flask error handler in `create_app()` turns them into JSON responses using
`code` and `status_code`.
"""
from __future__ import annotations

from typing import Any


class AccessError(Exception):
    code = "access_error"
    status_code = 400

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body.update(self.details)
        return body


class Unauthenticated(AccessError):
    """Authentication required."""

    code = "unauthenticated"
    status_code = 401


class Forbidden(AccessError):
    """You do not have permission to perform this action."""

    code = "forbidden"
    status_code = 403


class UnknownRole(AccessError):
    """Role reference does not resolve."""

    code = "unknown_role"
    status_code = 400


class UnknownCapability(AccessError, ValueError):
    """Unrecognized capability name."""

    code = "unknown_capability"
    status_code = 400


class ValidationError(AccessError):
    """Validation failed."""

    code = "validation_failed"
    status_code = 400


class NotFound(AccessError):
    """Not found."""

    code = "not_found"
    status_code = 404


class Conflict(AccessError):
    """Request conflicts with current state."""

    code = "conflict"
    status_code = 409


class DuplicateName(Conflict):
    """A role with this name already exists."""

    code = "duplicate_name"


class DanglingAssignment(Conflict):
    """Role is still assigned to team members."""

    code = "dangling_assignment"


class ConcurrentModification(Conflict):
    """Record was modified by another request."""

    code = "concurrent_modification"


class InvitationAlreadyConsumed(Conflict):
    """Invitation has already been accepted."""

    code = "invitation_already_consumed"


class InvitationExpired(AccessError):
    """Invitation has expired."""

    code = "invitation_expired"
    status_code = 410


class InvitationRevoked(AccessError):
    """Invitation has been revoked."""

    code = "invitation_revoked"
    status_code = 410


class ResolutionError(AccessError):
    """Permission resolution failed."""

    code = "resolution_error"
    status_code = 500

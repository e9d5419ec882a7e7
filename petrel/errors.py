"""Petrel error types.

Error codes are stable strings for programmatic handling by the dashboard.
Every error carries the HTTP status it is rendered with.
"""

from __future__ import annotations

from typing import Any


class PetrelError(Exception):
    """Base error for all Petrel exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render the error body returned to clients."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if request_id:
            error["request_id"] = request_id
        return {
            "success": False,
            "status": self.status_code,
            "message": self.message,
            "error": error,
        }


class ValidationError(PetrelError):
    """Malformed name or configuration (400). Raised before any mutation."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class UnauthorizedError(PetrelError):
    """Authentication required (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class ForbiddenError(PetrelError):
    """Permission denied (403)."""

    code = "forbidden"
    message = "Permission denied"
    status_code = 403


class NotFoundError(PetrelError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class DuplicateNameError(PetrelError):
    """A workload or volume with this name already exists (409)."""

    code = "duplicate_name"
    message = "Name already in use"
    status_code = 409


class VolumeAttachedError(PetrelError):
    """Volume is referenced by a workload (409)."""

    code = "volume_attached"
    message = "Volume is attached to a workload"
    status_code = 409


class UpdateInProgressError(PetrelError):
    """An update job is already open for this workload (409)."""

    code = "update_in_progress"
    message = "An update is already in progress"
    status_code = 409


class UpdateInvalidatedError(PetrelError):
    """The update job was cancelled by a rollback or destroy (409)."""

    code = "update_invalidated"
    message = "Update was invalidated"
    status_code = 409


class NoRollbackAvailableError(PetrelError):
    """No retained version to roll back to (409)."""

    code = "no_rollback_available"
    message = "No rollback available"
    status_code = 409


class QuotaExceededError(PetrelError):
    """Tenant quota policy violated (429)."""

    code = "quota_exceeded"
    message = "Quota exceeded"
    status_code = 429


class LaunchFailedError(PetrelError):
    """Launcher could not start the workload (502)."""

    code = "launch_failed"
    message = "Launch failed"
    status_code = 502


class LaunchTimeoutError(PetrelError):
    """Launcher did not confirm within the allowed interval (504)."""

    code = "launch_timeout"
    message = "Launch timed out"
    status_code = 504

"""Pitcrew error hierarchy.

Every error carries a stable machine-readable ``code``, an HTTP status and an
optional ``details`` mapping. The API layer renders them as::

    {"error": {"code": ..., "message": ..., "details": {...}}}
"""

from __future__ import annotations

from typing import Any


class PitcrewError(Exception):
    """Base class for all Pitcrew errors."""

    code: str = "internal_error"
    message: str = "Internal error"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(PitcrewError):
    code = "validation_error"
    message = "Invalid request"
    status_code = 400


class UnauthorizedError(PitcrewError):
    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class NotFoundError(PitcrewError):
    code = "not_found"
    message = "Resource not found"
    status_code = 404


class InvalidStateError(PitcrewError):
    """Operation is not legal in the session's current status."""

    code = "invalid_state"
    message = "Operation not allowed in current session state"
    status_code = 409


class ChallengeConflictError(PitcrewError):
    """Another challenge is loaded; the caller must exit it first."""

    code = "challenge_conflict"
    message = "You must exit your current challenge before starting a new one"
    status_code = 409

    def __init__(self, *, session_id: str, current_challenge: str) -> None:
        super().__init__(
            details={
                "session_id": session_id,
                "current_challenge": current_challenge,
                "action": "exit_current_challenge_required",
                "retryable": True,
            }
        )
        self.session_id = session_id
        self.current_challenge = current_challenge


class SessionExpiredError(PitcrewError):
    """The session existed but is gone."""

    code = "session_expired"
    message = "Session has expired"
    status_code = 410


class ProvisioningError(PitcrewError):
    """The sandbox could not be brought up."""

    code = "provisioning_failed"
    message = "Sandbox provisioning failed"
    status_code = 500


class ProbeTimeoutError(ProvisioningError):
    code = "provisioning_timeout"
    message = "Sandbox did not become ready in time"


class ActiveSessionExistsError(PitcrewError):
    """Create-if-absent guard tripped: the user already has an active session."""

    code = "active_session_exists"
    message = "User already has an active session"
    status_code = 409


class BackendError(PitcrewError):
    """Compute or routing backend call failed."""

    code = "backend_error"
    message = "Infrastructure backend error"
    status_code = 502


class SandboxError(PitcrewError):
    """HTTP call into the sandbox failed."""

    code = "sandbox_error"
    message = "Sandbox request failed"
    status_code = 502


class RequestTimeoutError(PitcrewError):
    code = "timeout"
    message = "Request timed out"
    status_code = 504

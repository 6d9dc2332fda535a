"""Error taxonomy shared by the state machines and the HTTP layer.

Every error carries a stable machine-readable ``kind`` and the HTTP status
it maps to. The Flask error handler in ``app.py`` renders them as::

    {"error": {"kind": "...", "message": "...", "details": {...}}}
"""
from typing import Any, Dict, Optional


class HelpChainError(Exception):
    """Base class for all errors surfaced to API callers."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(HelpChainError):
    """Malformed or missing input. ``details`` maps field name to messages."""

    kind = "validation_error"
    status_code = 400

    @classmethod
    def from_form(cls, form) -> "ValidationError":  # noqa: ANN001
        return cls("Validation failed", details={"fields": dict(form.errors)})

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, details={"fields": {field: [message]}})


class AuthorizationError(HelpChainError):
    kind = "authorization_error"
    status_code = 403


class AuthenticationRequired(AuthorizationError):
    kind = "authentication_required"
    status_code = 401


class InvalidStateError(HelpChainError):
    """A transition was requested from a state that does not permit it."""

    kind = "invalid_state"
    status_code = 400

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any):
        if current_status is not None:
            details["current_status"] = current_status
        super().__init__(message, details=details)
        self.current_status = current_status


class AlreadyConfirmedError(InvalidStateError):
    kind = "already_confirmed"


class NotFoundError(HelpChainError):
    kind = "not_found"
    status_code = 404


class LedgerCallError(HelpChainError):
    """The external ledger call failed, reverted or timed out."""

    kind = "ledger_call_failed"
    status_code = 502

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Ledger call '{operation}' failed: {reason}",
            details={"operation": operation},
        )
        self.operation = operation
        self.reason = reason


class ServerError(HelpChainError):
    kind = "server_error"
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)

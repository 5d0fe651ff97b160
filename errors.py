"""Typed failures raised by the reservation engine and mapped to HTTP responses by app.py."""

from typing import Any, Dict, Optional


class ReservationError(Exception):
    """Base class for caller-facing reservation failures."""

    code = "reservation_error"
    http_status = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InsufficientCapacity(ReservationError):
    code = "insufficient_capacity"
    http_status = 409


class ExclusivityConflict(ReservationError):
    code = "exclusivity_conflict"
    http_status = 409


class InvalidTransition(ReservationError):
    code = "invalid_transition"
    http_status = 409


class NotFound(ReservationError):
    code = "not_found"
    http_status = 404


class PersistenceFailure(ReservationError):
    code = "persistence_failure"
    http_status = 503


class PermissionDenied(ReservationError):
    code = "permission_denied"
    http_status = 403


class InvalidRequest(ReservationError):
    code = "invalid_request"
    http_status = 400


class LedgerIntegrityError(RuntimeError):
    """A ledger counter would go negative; only reachable through a caller bug."""

"""
Cellar error taxonomy.

Every failure raised by the service layer carries a machine-readable ``code``
and the HTTP status a transport layer should map it to:

- NotFoundError     (NOT_FOUND, 404)   missing or soft-deleted row
- BadRequestError   (BAD_REQUEST, 400) precondition violated
- ConflictError     (CONFLICT, 409)    duplicate measurement / additive, vessel taken
- InternalError     (INTERNAL, 500)    unexpected failure, logged before raising
"""
from typing import Any, Dict, Optional


class CellarError(Exception):
    """Base exception for cellar operations"""
    code = "INTERNAL"
    http_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(CellarError):
    """Referenced batch, vessel, measurement, additive or purchase item is missing"""
    code = "NOT_FOUND"
    http_code = 404


class BadRequestError(CellarError):
    """Precondition violated"""
    code = "BAD_REQUEST"
    http_code = 400


class ConflictError(CellarError):
    """Duplicate entry or concurrent occupancy"""
    code = "CONFLICT"
    http_code = 409


class InternalError(CellarError):
    code = "INTERNAL"
    http_code = 500


class LedgerValidationError(InternalError):
    """A ledger row would record negative loss. Inputs are validated upstream, so this is a bug."""
    pass


class LineageCycleError(InternalError):
    """The transfer ledger describes a cycle."""

    def __init__(self, batch_id: int, path: list):
        super().__init__(
            f"Lineage cycle detected at batch {batch_id}",
            details={"batch_id": batch_id, "path": path},
        )
        self.batch_id = batch_id
        self.path = path


class UnitConversionError(ValueError):
    """Unknown unit or conversion across unit families."""
    pass

"""
JobLedger Error Handling

Specific error types with user-friendly messages and debugging context.
Validation, state, soft-block and concurrency failures each get their own
code so callers can offer "fix this field", "override" or "reload".
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input / state errors (400s)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    PO_OVERAGE = "PO_OVERAGE"

    # Lookups (404)
    NOT_FOUND = "NOT_FOUND"

    # Concurrency (409)
    VERSION_CONFLICT = "VERSION_CONFLICT"
    LOCKED = "LOCKED"
    UNDO_EXPIRED = "UNDO_EXPIRED"

    # Processing errors (500s)
    DATABASE_ERROR = "DATABASE_ERROR"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class JobLedgerError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = _jsonable(self.context)
        return result


class ValidationError(JobLedgerError):
    """One or more fields or requirements failed validation."""

    def __init__(self, errors: List[Dict[str, Any]], message: str = "Validation failed"):
        self.errors = errors
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            context={"errors": errors}
        )

    @property
    def requirements(self) -> set:
        return {e.get("requirement") or e.get("field") for e in self.errors}


class InvalidAmount(ValidationError):
    """Text could not be parsed as a monetary amount."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            [{"field": "amount", "message": f"'{value}' is not a valid amount"}],
            message=f"Invalid amount: '{value}'",
        )


class StateViolationError(JobLedgerError):
    """Illegal transition or edit for the invoice's current status."""

    def __init__(self, message: str, current_status: Optional[str] = None, target_status: Optional[str] = None):
        context = {}
        if current_status:
            context["current_status"] = current_status
        if target_status:
            context["target_status"] = target_status
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=message,
            context=context
        )


class POOverageError(JobLedgerError):
    """Approving would push a PO past its remaining balance. Overridable."""

    def __init__(self, po_id: str, remaining: Decimal, invoice_amount: Decimal, overage_amount: Decimal):
        self.po_id = po_id
        self.remaining = remaining
        self.invoice_amount = invoice_amount
        self.overage_amount = overage_amount
        super().__init__(
            code=ErrorCode.PO_OVERAGE,
            message=f"Invoice exceeds PO remaining balance by ${overage_amount:,.2f}",
            context={
                "po_id": po_id,
                "po_remaining": remaining,
                "invoice_amount": invoice_amount,
                "overage_amount": overage_amount,
                "requires_override": True,
            }
        )


class VersionConflictError(JobLedgerError):
    """Stored version advanced since the caller read it."""

    def __init__(self, entity_id: str, expected_version: int, current_version: Optional[int] = None):
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            code=ErrorCode.VERSION_CONFLICT,
            message="Data has been modified by another user. Reload and try again.",
            context={
                "entity_id": entity_id,
                "expected_version": expected_version,
                "current_version": current_version,
            }
        )


class LockedError(JobLedgerError):
    """Entity is being edited by someone else."""

    def __init__(self, entity_type: str, entity_id: str, locked_by: str, expires_at: Optional[str] = None):
        self.locked_by = locked_by
        self.expires_at = expires_at
        super().__init__(
            code=ErrorCode.LOCKED,
            message=f"{entity_type.capitalize()} is being edited by {locked_by}",
            context={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "locked_by": locked_by,
                "expires_at": expires_at,
            }
        )


class NotFoundError(JobLedgerError):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity.replace('_', ' ').capitalize()} not found",
            context={"entity": entity, "entity_id": entity_id}
        )


class UndoExpiredError(JobLedgerError):
    def __init__(self, undo_id: str, reason: str = "Undo window has expired"):
        super().__init__(
            code=ErrorCode.UNDO_EXPIRED,
            message=reason,
            context={"undo_id": undo_id}
        )


class DatabaseError(JobLedgerError):
    def __init__(self, operation: str, detail: str):
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Database operation failed: {operation}",
            detail=detail,
            context={"operation": operation}
        )


STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_TRANSITION: 400,
    ErrorCode.PO_OVERAGE: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VERSION_CONFLICT: 409,
    ErrorCode.LOCKED: 409,
    ErrorCode.UNDO_EXPIRED: 409,
    ErrorCode.DATABASE_ERROR: 500,
}

"""Invoice status machine: transition table, edit rules and transition requirements."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from jobledger.services.errors import StateViolationError, ValidationError
from jobledger.services.money import ZERO, exceeds, format_amount, to_decimal, total


class InvoiceStatus(str, Enum):
    INTAKE = "intake"
    RECEIVED = "received"  # legacy intake status
    NEEDS_REVIEW = "needs_review"
    READY_FOR_APPROVAL = "ready_for_approval"
    APPROVED = "approved"
    DENIED = "denied"
    IN_DRAW = "in_draw"
    PAID = "paid"
    SPLIT = "split"


S = InvoiceStatus

VALID_TRANSITIONS: Dict[InvoiceStatus, set] = {
    S.INTAKE: {S.NEEDS_REVIEW, S.READY_FOR_APPROVAL, S.DENIED, S.SPLIT},
    S.RECEIVED: {S.NEEDS_REVIEW, S.READY_FOR_APPROVAL, S.DENIED, S.SPLIT},
    S.NEEDS_REVIEW: {S.READY_FOR_APPROVAL, S.DENIED, S.SPLIT},
    S.READY_FOR_APPROVAL: {S.APPROVED, S.DENIED, S.NEEDS_REVIEW},
    S.APPROVED: {S.IN_DRAW, S.READY_FOR_APPROVAL, S.NEEDS_REVIEW},
    S.IN_DRAW: {S.PAID, S.APPROVED},
    S.DENIED: {S.NEEDS_REVIEW, S.SPLIT},
    S.SPLIT: {S.NEEDS_REVIEW},  # unsplit only
    S.PAID: set(),
}

EDITABLE_STATUSES = {S.INTAKE, S.RECEIVED, S.NEEDS_REVIEW, S.DENIED}
LOCKED_STATUSES = {S.READY_FOR_APPROVAL, S.APPROVED, S.IN_DRAW}
READ_ONLY_STATUSES = {S.PAID, S.SPLIT}

# Invoices whose allocations count against PO / CO balances
COMMITTED_STATUSES = {S.APPROVED, S.IN_DRAW, S.PAID}
# Invoices whose allocations count as billed against the budget
BILLED_STATUSES = {S.IN_DRAW, S.PAID}
# A split child in one of these blocks unsplit
SETTLED_STATUSES = {S.APPROVED, S.IN_DRAW, S.PAID}

CLOSE_OUT_STATUSES = {S.APPROVED, S.IN_DRAW}
CLOSE_OUT_REASONS = (
    "Work descoped / reduced scope",
    "Vendor credit issued",
    "Dispute resolved / settlement",
    "Change order adjustment",
    "Billing error corrected",
    "Other",
)

INVOICE_NUMBER_RE = re.compile(r"^[A-Za-z0-9\-_#\s.]+$")
INVOICE_NUMBER_MAX_LENGTH = 100
MAX_INVOICE_AMOUNT = Decimal("10000000")


def coerce_status(value: Any) -> InvoiceStatus:
    if isinstance(value, InvoiceStatus):
        return value
    try:
        return InvoiceStatus(str(value))
    except ValueError:
        raise StateViolationError(f"Unknown invoice status: {value}", current_status=str(value))


def can_transition(from_status: Any, to_status: Any) -> bool:
    return coerce_status(to_status) in VALID_TRANSITIONS.get(coerce_status(from_status), set())


def assert_valid_transition(from_status: Any, to_status: Any) -> None:
    current = coerce_status(from_status)
    target = coerce_status(to_status)
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        names = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise StateViolationError(
            f"Cannot transition from '{current.value}' to '{target.value}'. Allowed: {names}",
            current_status=current.value,
            target_status=target.value,
        )


def is_editable(status: Any) -> bool:
    return coerce_status(status) in EDITABLE_STATUSES


def is_locked(status: Any) -> bool:
    return coerce_status(status) in LOCKED_STATUSES


def fields_editable(status: Any, unlocked: bool = False) -> bool:
    status = coerce_status(status)
    return status in EDITABLE_STATUSES or (unlocked and status in LOCKED_STATUSES)


def allocations_editable(status: Any, unlocked: bool = False) -> bool:
    """in_draw can be unlocked for field edits; its allocations stay frozen."""
    status = coerce_status(status)
    if status == S.IN_DRAW:
        return False
    return fields_editable(status, unlocked)


@dataclass(frozen=True)
class Requirement:
    requirement: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"requirement": self.requirement, "message": self.message}


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _amount(value: Any) -> Optional[Decimal]:
    try:
        return to_decimal(value)
    except ValidationError:
        return None


def validate_fields(invoice: Dict[str, Any]) -> List[Requirement]:
    """Field-level checks applied on every save, independent of status."""
    problems: List[Requirement] = []
    number = invoice.get("invoice_number")
    if _present(number):
        number = str(number)
        if len(number) > INVOICE_NUMBER_MAX_LENGTH:
            problems.append(Requirement(
                "invoice_number",
                f"invoice_number cannot exceed {INVOICE_NUMBER_MAX_LENGTH} characters",
            ))
        elif not INVOICE_NUMBER_RE.match(number):
            problems.append(Requirement(
                "invoice_number",
                "Invoice number can only contain letters, numbers, spaces, and -_#.",
            ))

    amount = _amount(invoice.get("amount"))
    if amount is None:
        problems.append(Requirement("amount", "amount must be a number"))
    elif amount < 0:
        problems.append(Requirement("amount", "amount cannot be negative"))
    elif amount > MAX_INVOICE_AMOUNT:
        problems.append(Requirement("amount", f"amount cannot exceed {format_amount(MAX_INVOICE_AMOUNT)}"))

    parsed_dates = {}
    for field_name in ("invoice_date", "due_date"):
        raw = invoice.get(field_name)
        if not _present(raw):
            continue
        try:
            parsed_dates[field_name] = date.fromisoformat(str(raw)[:10])
        except ValueError:
            problems.append(Requirement(field_name, f"{field_name} must be a valid date"))
    if (
        "invoice_date" in parsed_dates
        and "due_date" in parsed_dates
        and parsed_dates["due_date"] < parsed_dates["invoice_date"]
    ):
        problems.append(Requirement("due_date", "Due date cannot be before invoice date"))
    return problems


def check_allocations_within_amount(invoice: Dict[str, Any], allocations: Iterable[Any]) -> List[Requirement]:
    allocated = total(_line_amount(a) for a in allocations)
    amount = _amount(invoice.get("amount")) or ZERO
    if exceeds(allocated, amount):
        return [Requirement(
            "allocations_within_amount",
            f"Allocation total ({format_amount(allocated)}) cannot exceed invoice amount ({format_amount(amount)})",
        )]
    return []


def _line_amount(line: Any) -> Any:
    if isinstance(line, dict):
        return line.get("amount")
    return getattr(line, "amount", None)


def _line_cost_code(line: Any) -> Any:
    if isinstance(line, dict):
        return line.get("cost_code_id")
    return getattr(line, "cost_code_id", None)


def check_requirements(
    invoice: Dict[str, Any],
    target: Any,
    allocations: Iterable[Any],
    needs_co_link: Iterable[int] = (),
    reason: Optional[str] = None,
) -> List[Requirement]:
    """
    Collect every unmet requirement for moving ``invoice`` to ``target``.

    ``needs_co_link`` holds allocation indexes whose cost code is CO-only but
    which carry no change order link. PO capacity is checked separately since
    it is overridable.
    """
    target = coerce_status(target)
    allocations = list(allocations)
    unmet: List[Requirement] = []

    if target in (S.READY_FOR_APPROVAL, S.APPROVED):
        if not _present(invoice.get("invoice_number")):
            unmet.append(Requirement("invoice_number", "Invoice number is required"))
        amount = _amount(invoice.get("amount"))
        if amount is None or amount <= 0:
            unmet.append(Requirement("amount", "Invoice amount must be greater than zero"))
        if not _present(invoice.get("invoice_date")):
            unmet.append(Requirement("invoice_date", "Invoice date is required"))
        if not _present(invoice.get("job_id")):
            unmet.append(Requirement("job_id", "Invoice must be assigned to a job"))
        if not any(_present(_line_cost_code(a)) for a in allocations):
            unmet.append(Requirement("allocations", "Invoice must have at least one cost code allocation"))

    if target == S.APPROVED:
        if not _present(invoice.get("vendor_id")):
            unmet.append(Requirement("vendor_id", "Invoice must be assigned to a vendor"))
        unmet.extend(check_allocations_within_amount(invoice, allocations))
        allocated = total(_line_amount(a) for a in allocations)
        amount = _amount(invoice.get("amount")) or ZERO
        if allocations and exceeds(amount, allocated) and not _present(invoice.get("partial_approval_note")):
            unmet.append(Requirement(
                "partial_approval_note",
                f"Partial approval of {format_amount(allocated)} of {format_amount(amount)} requires a note",
            ))
        for index in needs_co_link:
            unmet.append(Requirement(
                "needs_co_link",
                f"Allocation {index + 1} uses a change order cost code and must be linked to a change order",
            ))

    if target == S.DENIED and not _present(reason):
        unmet.append(Requirement("denial_reason", "A reason is required to deny an invoice"))

    return unmet


def raise_if_unmet(unmet: List[Requirement], message: str) -> None:
    if unmet:
        raise ValidationError([r.to_dict() for r in unmet], message=message)


def validate_close_out(invoice: Dict[str, Any], reason: Optional[str], notes: Optional[str]) -> Decimal:
    """Return the write-off amount or raise."""
    status = coerce_status(invoice.get("status"))
    if status not in CLOSE_OUT_STATUSES:
        raise StateViolationError(
            f"Only approved or in-draw invoices can be closed out (status is '{status.value}')",
            current_status=status.value,
        )
    if invoice.get("closed_out_at"):
        raise StateViolationError("Invoice is already closed out", current_status=status.value)
    write_off = to_decimal(invoice.get("amount")) - to_decimal(invoice.get("billed_amount"))
    unmet: List[Requirement] = []
    if not exceeds(write_off, ZERO):
        unmet.append(Requirement("remaining_balance", "Invoice has no remaining balance to close out"))
    if reason not in CLOSE_OUT_REASONS:
        unmet.append(Requirement("closed_out_reason", f"Reason must be one of: {', '.join(CLOSE_OUT_REASONS)}"))
    elif reason == "Other" and not _present(notes):
        unmet.append(Requirement("closed_out_notes", "Notes are required when the reason is 'Other'"))
    raise_if_unmet(unmet, "Invoice cannot be closed out")
    return write_off

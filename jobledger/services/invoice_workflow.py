"""
Invoice Workflow Service

Handles:
- Invoice intake (with optional AI field hints)
- Edit sessions: lock, edit, save with version check, cancel
- Status transitions with requirement checks and side effects
  (approval stamps, CO auto-link, PO overage soft-block, draw membership)
- Unlocking locked invoices for correction
- Close-out (write-off of an unbilled remainder)
- Undo of the latest save/transition within the undo window
- Append-only activity trail
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from jobledger.core.database import get_db
from jobledger.core.settings import get_settings
from jobledger.services.allocations import AllocationBalancer, AllocationLine, allocation_cap
from jobledger.services.draws import DrawService
from jobledger.services.edit_session import EDITABLE_FIELDS, EditSession, FieldHint
from jobledger.services.errors import (
    POOverageError,
    StateViolationError,
    ValidationError,
)
from jobledger.services.funding_sources import FundingSourceResolver
from jobledger.services.invoice_state import (
    InvoiceStatus,
    allocations_editable,
    assert_valid_transition,
    check_allocations_within_amount,
    check_requirements,
    coerce_status,
    fields_editable,
    is_locked,
    raise_if_unmet,
    validate_close_out,
    validate_fields,
)
from jobledger.services.locking import INVOICE, LockManager
from jobledger.services.money import ZERO, parse_amount, serialize
from jobledger.services.notifications import get_notification_bus, notify_failures
from jobledger.services.undo import UndoService, UndoToken, snapshot

logger = logging.getLogger(__name__)

S = InvoiceStatus

INTAKE_STATUSES = {S.INTAKE, S.RECEIVED, S.NEEDS_REVIEW}

TRANSITION_MESSAGES = {
    S.NEEDS_REVIEW: "Invoice sent to review",
    S.READY_FOR_APPROVAL: "Invoice submitted for approval",
    S.APPROVED: "Invoice approved",
    S.DENIED: "Invoice denied",
    S.IN_DRAW: "Invoice added to draw",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class WorkflowResult:
    invoice: Dict[str, Any]
    allocations: List[Dict[str, Any]]
    changed: bool = True
    undo: Optional[UndoToken] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return serialize({
            "invoice": self.invoice,
            "allocations": self.allocations,
            "changed": self.changed,
            "undo": self.undo.to_dict() if self.undo else None,
            "warnings": self.warnings,
        })


class InvoiceWorkflowService:
    def __init__(
        self,
        db=None,
        locks: Optional[LockManager] = None,
        resolver: Optional[FundingSourceResolver] = None,
        draws: Optional[DrawService] = None,
        undo: Optional[UndoService] = None,
        notifier=None,
        settings=None,
    ):
        self.db = db or get_db()
        self.locks = locks or LockManager(self.db)
        self.resolver = resolver or FundingSourceResolver(self.db)
        self.draws = draws or DrawService(self.db)
        self.undo_service = undo or UndoService(self.db)
        self.notifier = notifier or get_notification_bus()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_invoice_detail(self, invoice_id: str) -> Dict[str, Any]:
        invoice = self.db.require_invoice(invoice_id)
        allocations = self.db.list_allocations(invoice_id)
        balancer = AllocationBalancer(
            cap=allocation_cap(invoice),
            lines=[AllocationLine.from_record(a) for a in allocations],
        )
        return {
            "invoice": invoice,
            "allocations": allocations,
            "summary": balancer.summary().to_dict(),
            "lock": self.locks.check(INVOICE, invoice_id),
            "links": [r.to_dict() for r in self.resolver.resolve_links(allocations, invoice.get("job_id"))],
        }

    def list_activity(self, invoice_id: str) -> List[Dict[str, Any]]:
        self.db.require_invoice(invoice_id)
        return self.db.list_activity(invoice_id)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def create_invoice(
        self,
        payload: Dict[str, Any],
        performed_by: Optional[str] = None,
        hints: Optional[Iterable[FieldHint]] = None,
    ) -> Dict[str, Any]:
        with notify_failures(self.notifier):
            status = coerce_status(payload.get("status") or S.INTAKE.value)
            if status not in INTAKE_STATUSES:
                raise StateViolationError(
                    f"New invoices cannot start as '{status.value}'",
                    target_status=status.value,
                )
            record: Dict[str, Any] = {
                name: payload.get(name) for name in EDITABLE_FIELDS if payload.get(name) not in (None, "")
            }
            record["amount"] = parse_amount(payload.get("amount"))
            applied: List[str] = []
            for hint in hints or []:
                if hint.field_name in EDITABLE_FIELDS and record.get(hint.field_name) in (None, ZERO):
                    try:
                        value = parse_amount(hint.suggested_value) if hint.field_name == "amount" else hint.suggested_value
                    except ValidationError:
                        continue
                    record[hint.field_name] = value
                    applied.append(hint.field_name)

            allocations = []
            for entry in payload.get("allocations") or []:
                line = AllocationLine.from_record({**entry, "amount": parse_amount(entry.get("amount"))})
                allocations.append(line.to_record())

            record["status"] = status.value
            raise_if_unmet(
                validate_fields(record) + check_allocations_within_amount(record, allocations),
                "Invoice has invalid fields",
            )

            with self.db.transaction() as cur:
                invoice = self.db.create_invoice(record, cur=cur)
                if allocations:
                    self.db.replace_allocations(cur, invoice["id"], allocations)
                self.db.append_activity({
                    "invoice_id": invoice["id"],
                    "action": "created",
                    "performed_by": performed_by,
                    "details": {"status": status.value, "ai_fields": applied},
                }, cur=cur)

        logger.info("Invoice %s created (%s)", invoice["id"], status.value)
        self.notifier.success("Invoice created", details={"invoice_id": invoice["id"]})
        return self.get_invoice_detail(invoice["id"])

    # ------------------------------------------------------------------
    # Edit sessions
    # ------------------------------------------------------------------

    def open_session(
        self,
        invoice_id: str,
        holder: str,
        hints: Optional[Iterable[FieldHint]] = None,
        lock: bool = True,
    ) -> EditSession:
        with notify_failures(self.notifier):
            invoice = self.db.require_invoice(invoice_id)
            if lock:
                self.locks.acquire(INVOICE, invoice_id, holder)
            session = EditSession(invoice, self.db.list_allocations(invoice_id), holder)
        if hints:
            session.apply_hints(hints)
        return session

    def close_session(self, session: EditSession) -> bool:
        """Discard in-memory edits and release the session's lock."""
        existing = self.locks.check(INVOICE, session.invoice_id)
        if not existing or existing["locked_by"] != session.holder:
            return False
        return self.locks.release(INVOICE, session.invoice_id, session.holder)

    def unlock(self, session: EditSession, user: str) -> EditSession:
        with notify_failures(self.notifier):
            return self._unlock(session, user)

    def _unlock(self, session: EditSession, user: str) -> EditSession:
        if not is_locked(session.status):
            raise StateViolationError(
                f"Invoice is {session.status}; only locked invoices need unlocking",
                current_status=session.status,
            )
        if not self.settings.can_unlock(user):
            raise StateViolationError(f"{user} is not allowed to unlock invoices", current_status=session.status)
        session.mark_unlocked()
        self.db.append_activity({
            "invoice_id": session.invoice_id,
            "action": "unlocked",
            "performed_by": user,
            "details": {"status": session.status, "allocations_frozen": session.balancer.frozen},
        })
        logger.info("Invoice %s unlocked by %s", session.invoice_id, user)
        return session

    def save(
        self,
        session: EditSession,
        performed_by: Optional[str] = None,
        target_status: Optional[str] = None,
        reason: Optional[str] = None,
        override_po_overage: bool = False,
    ) -> WorkflowResult:
        """Persist the session's edits (and optionally a status change) in one write."""
        with notify_failures(self.notifier):
            self.locks.require_lock(INVOICE, session.invoice_id, session.holder)
            result = self._commit(
                stored=session.invoice,
                stored_allocations=session.stored_allocations,
                fields=session.changed_fields(),
                allocations=session.balancer.to_records() if session.allocations_changed() else None,
                expected_version=session.expected_version,
                performed_by=performed_by or session.holder,
                target=target_status,
                reason=reason,
                override_po_overage=override_po_overage,
                ai_overrides=session.ai_overrides(),
                unlocked=session.unlocked,
            )
        keep_unlocked = session.unlocked and result.invoice["status"] == session.status
        session.reload(result.invoice, result.allocations, unlocked=keep_unlocked)
        return result

    def save_changes(
        self,
        invoice_id: str,
        performed_by: str,
        expected_version: int,
        fields: Optional[Dict[str, Any]] = None,
        allocations: Optional[List[Dict[str, Any]]] = None,
        target_status: Optional[str] = None,
        reason: Optional[str] = None,
        override_po_overage: bool = False,
        unlock: bool = False,
    ) -> WorkflowResult:
        """Stateless edit: build a session from the stored record, apply the changes, save."""
        with notify_failures(self.notifier):
            invoice = self.db.require_invoice(invoice_id)
            session = EditSession(invoice, self.db.list_allocations(invoice_id), performed_by)
            session.expected_version = int(expected_version)
            if unlock:
                self._unlock(session, performed_by)
            for name, value in (fields or {}).items():
                session.set_field(name, value)
            if allocations is not None:
                session.replace_allocations(allocations)
        return self.save(
            session,
            performed_by=performed_by,
            target_status=target_status,
            reason=reason,
            override_po_overage=override_po_overage,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        invoice_id: str,
        target_status: str,
        performed_by: str,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
        override_po_overage: bool = False,
        partial_approval_note: Optional[str] = None,
    ) -> WorkflowResult:
        with notify_failures(self.notifier):
            invoice = self.db.require_invoice(invoice_id)
            self.locks.require_lock(INVOICE, invoice_id, performed_by)
            fields: Dict[str, Any] = {}
            if partial_approval_note is not None:
                fields["partial_approval_note"] = partial_approval_note.strip() or None
            return self._commit(
                stored=invoice,
                stored_allocations=self.db.list_allocations(invoice_id),
                fields=fields,
                allocations=None,
                expected_version=expected_version if expected_version is not None else invoice["version"],
                performed_by=performed_by,
                target=target_status,
                reason=reason,
                override_po_overage=override_po_overage,
            )

    def approve(self, invoice_id: str, performed_by: str, **kwargs: Any) -> WorkflowResult:
        return self.transition(invoice_id, S.APPROVED.value, performed_by, **kwargs)

    def deny(self, invoice_id: str, performed_by: str, reason: str, **kwargs: Any) -> WorkflowResult:
        return self.transition(invoice_id, S.DENIED.value, performed_by, reason=reason, **kwargs)

    def add_to_draw(self, invoice_id: str, performed_by: str, **kwargs: Any) -> WorkflowResult:
        return self.transition(invoice_id, S.IN_DRAW.value, performed_by, **kwargs)

    def remove_from_draw(self, invoice_id: str, performed_by: str, **kwargs: Any) -> WorkflowResult:
        return self.transition(invoice_id, S.APPROVED.value, performed_by, **kwargs)

    def _commit(
        self,
        stored: Dict[str, Any],
        stored_allocations: List[Dict[str, Any]],
        fields: Dict[str, Any],
        allocations: Optional[List[Dict[str, Any]]],
        expected_version: int,
        performed_by: Optional[str],
        target: Optional[str] = None,
        reason: Optional[str] = None,
        override_po_overage: bool = False,
        ai_overrides: Iterable[Dict[str, Any]] = (),
        unlocked: bool = False,
    ) -> WorkflowResult:
        invoice_id = stored["id"]
        current = coerce_status(stored["status"])
        candidate = {**stored, **fields}
        candidate_allocations = allocations if allocations is not None else [dict(a) for a in stored_allocations]

        edited = set(fields) - {"partial_approval_note"}
        if edited and not fields_editable(current, unlocked):
            raise StateViolationError(
                f"Invoice is {current.value}; unlock it before editing",
                current_status=current.value,
            )
        if allocations is not None and not allocations_editable(current, unlocked):
            raise StateViolationError(
                f"Allocations cannot be changed while the invoice is {current.value}",
                current_status=current.value,
            )
        raise_if_unmet(
            validate_fields(candidate) + check_allocations_within_amount(candidate, candidate_allocations),
            "Invoice has invalid fields",
        )

        now = _now()
        updates = dict(fields)
        events: List[tuple] = []
        warnings: List[Dict[str, Any]] = []
        target_status: Optional[InvoiceStatus] = None

        if target is not None:
            target_status = coerce_status(target)
            if target_status == S.PAID:
                raise StateViolationError(
                    "Invoices are marked paid when their draw is finalized",
                    current_status=current.value, target_status=target_status.value,
                )
            if target_status == S.SPLIT:
                raise StateViolationError(
                    "Use split to divide an invoice",
                    current_status=current.value, target_status=target_status.value,
                )
            if current == S.SPLIT:
                raise StateViolationError(
                    "Use unsplit to restore a split invoice",
                    current_status=current.value, target_status=target_status.value,
                )
            assert_valid_transition(current, target_status)

            needs_co_link: List[int] = []
            auto_links = []
            if target_status == S.APPROVED:
                for resolution in self.resolver.resolve_links(candidate_allocations, candidate.get("job_id")):
                    if resolution.suggested_change_order_id:
                        auto_links.append(resolution)
                    elif resolution.needs_co_link:
                        needs_co_link.append(resolution.index)

            raise_if_unmet(
                check_requirements(candidate, target_status, candidate_allocations, needs_co_link, reason),
                f"Invoice cannot move to {target_status.value}",
            )

            if target_status == S.APPROVED:
                overages = [
                    c for c in self.resolver.check_po_capacity(candidate.get("job_id"), invoice_id, candidate_allocations)
                    if c.is_over
                ]
                if overages and not override_po_overage:
                    first = overages[0]
                    raise POOverageError(first.po_id, first.remaining, first.allocated, first.overage_amount)
                for capacity in overages:
                    logger.warning(
                        "PO %s overage of %s approved with override on invoice %s by %s",
                        capacity.po_id, capacity.overage_amount, invoice_id, performed_by,
                    )
                    details = capacity.to_dict()
                    events.append(("po_overage_override", details))
                    warnings.append({"type": "po_overage_override", **details})
                if auto_links:
                    candidate_allocations = [dict(a) for a in candidate_allocations]
                    for resolution in auto_links:
                        candidate_allocations[resolution.index]["change_order_id"] = resolution.suggested_change_order_id
                        events.append(("co_auto_linked", {
                            "allocation_index": resolution.index,
                            "cost_code_id": candidate_allocations[resolution.index].get("cost_code_id"),
                            "change_order_id": resolution.suggested_change_order_id,
                        }))
                    allocations = candidate_allocations
                updates.update(approved_at=now, approved_by=performed_by)
            elif target_status == S.DENIED:
                updates.update(denied_at=now, denied_by=performed_by, denial_reason=reason.strip())

            if current == S.APPROVED and target_status in (S.NEEDS_REVIEW, S.READY_FOR_APPROVAL):
                updates.update(approved_at=None, approved_by=None)

            updates["status"] = target_status.value
            transition_details: Dict[str, Any] = {"from": current.value, "to": target_status.value}
            if reason:
                transition_details["reason"] = reason
            if target_status == S.APPROVED and candidate.get("partial_approval_note"):
                transition_details["partial_approval_note"] = candidate["partial_approval_note"]
            events.insert(0, (f"status_{target_status.value}", transition_details))
        else:
            if not updates and allocations is None:
                return WorkflowResult(invoice=stored, allocations=stored_allocations, changed=False)
            events.append(("edited", {
                "fields": sorted(fields),
                "allocations_changed": allocations is not None,
            }))

        for override in ai_overrides:
            if override["field"] in fields:
                events.append(("ai_override", override))

        previous = snapshot(stored, stored_allocations)
        with self.db.transaction() as cur:
            if allocations is not None:
                self.db.replace_allocations(cur, invoice_id, allocations)
            if target_status == S.IN_DRAW:
                draw = self.draws.add_invoice(cur, candidate, performed_by)
                updates["draw_id"] = draw["id"]
                updates["billed_amount"] = self.draws.billed_amount(cur, invoice_id)
                events[0][1]["draw_id"] = draw["id"]
                events[0][1]["draw_number"] = draw["draw_number"]
            elif current == S.IN_DRAW and target_status == S.APPROVED:
                self.draws.remove_invoice(cur, stored)
                updates["draw_id"] = None
                updates["billed_amount"] = self.draws.billed_amount(cur, invoice_id)
            invoice = self.db.update_invoice(invoice_id, expected_version, cur=cur, **updates)
            if invoice.get("draw_id") and "amount" in updates:
                self.draws.recompute_total(cur, invoice["draw_id"])
            for action, details in events:
                self.db.append_activity({
                    "invoice_id": invoice_id,
                    "action": action,
                    "performed_by": performed_by,
                    "details": details,
                }, cur=cur)
            saved_allocations = self.db.list_allocations(invoice_id, cur=cur)

        action = events[0][0]
        token = self.undo_service.record(invoice_id, action, previous, invoice["version"], performed_by)
        message = TRANSITION_MESSAGES.get(target_status, "Invoice saved") if target_status else "Invoice saved"
        logger.info("Invoice %s %s by %s (v%s)", invoice_id, action, performed_by, invoice["version"])
        self.notifier.success(
            message,
            details={"invoice_id": invoice_id, "status": invoice["status"], "version": invoice["version"]},
            undo=token.to_dict(),
        )
        return WorkflowResult(
            invoice=invoice,
            allocations=saved_allocations,
            changed=True,
            undo=token,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Close-out
    # ------------------------------------------------------------------

    def close_out(
        self,
        invoice_id: str,
        reason: str,
        performed_by: str,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> WorkflowResult:
        with notify_failures(self.notifier):
            invoice = self.db.require_invoice(invoice_id)
            self.locks.require_lock(INVOICE, invoice_id, performed_by)
            write_off = validate_close_out(invoice, reason, notes)
            allocations = self.db.list_allocations(invoice_id)
            previous = snapshot(invoice, allocations)
            with self.db.transaction() as cur:
                updated = self.db.update_invoice(
                    invoice_id,
                    expected_version if expected_version is not None else invoice["version"],
                    cur=cur,
                    closed_out_at=_now(),
                    closed_out_by=performed_by,
                    closed_out_reason=reason,
                    closed_out_notes=(notes or "").strip() or None,
                    write_off_amount=write_off,
                )
                self.db.append_activity({
                    "invoice_id": invoice_id,
                    "action": "closed_out",
                    "performed_by": performed_by,
                    "details": {"reason": reason, "notes": notes, "write_off_amount": write_off},
                }, cur=cur)

        token = self.undo_service.record(invoice_id, "closed_out", previous, updated["version"], performed_by)
        logger.info("Invoice %s closed out by %s, wrote off %s", invoice_id, performed_by, write_off)
        self.notifier.success(
            "Invoice closed out",
            details={"invoice_id": invoice_id, "write_off_amount": f"{write_off:.2f}"},
            undo=token.to_dict(),
        )
        return WorkflowResult(invoice=updated, allocations=allocations, undo=token)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, undo_id: str, performed_by: Optional[str] = None) -> Dict[str, Any]:
        def restore_draw(cur, before: Dict[str, Any], current: Dict[str, Any]) -> None:
            if current.get("draw_id") and current.get("draw_id") != before.get("draw_id"):
                self.draws.remove_invoice(cur, current)
            if before.get("draw_id") and before.get("draw_id") != current.get("draw_id"):
                draw = self.draws.add_invoice(cur, current, performed_by)
                before["draw_id"] = draw["id"]
                before["billed_amount"] = self.draws.billed_amount(cur, current["id"])

        def refresh_draw(cur, restored: Dict[str, Any]) -> None:
            if restored.get("draw_id"):
                self.draws.recompute_total(cur, restored["draw_id"])

        with notify_failures(self.notifier):
            invoice = self.undo_service.undo(undo_id, performed_by, restore_draw=restore_draw, refresh_draw=refresh_draw)
        self.notifier.success("Change undone", details={"invoice_id": invoice["id"], "status": invoice["status"]})
        return invoice


def get_invoice_workflow_service() -> InvoiceWorkflowService:
    return InvoiceWorkflowService()

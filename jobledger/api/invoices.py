"""Invoice lifecycle APIs: intake, edit/save, transitions, split, close-out."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query

from jobledger.core.database import get_db
from jobledger.models.requests import (
    BalanceRequest,
    CloseOutRequest,
    CreateInvoiceRequest,
    SaveInvoiceRequest,
    SplitRequest,
    TransitionRequest,
    UnsplitRequest,
)
from jobledger.services.allocations import AllocationBalancer, AllocationLine, allocation_cap
from jobledger.services.edit_session import FieldHint
from jobledger.services.invoice_split import get_invoice_split_service
from jobledger.services.invoice_state import CLOSE_OUT_REASONS, allocations_editable
from jobledger.services.invoice_workflow import get_invoice_workflow_service
from jobledger.services.money import parse_amount, serialize


router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.get("/close-out-reasons")
def list_close_out_reasons() -> Dict[str, Any]:
    return {"reasons": list(CLOSE_OUT_REASONS)}


@router.post("")
def create_invoice(request: CreateInvoiceRequest) -> Dict[str, Any]:
    workflow = get_invoice_workflow_service()
    payload = request.model_dump(exclude={"hints", "performed_by"})
    hints = [FieldHint(h.field_name, h.suggested_value, h.confidence) for h in request.hints]
    detail = workflow.create_invoice(payload, performed_by=request.performed_by, hints=hints)
    return serialize(detail)


@router.get("")
def list_invoices(
    job_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
) -> Dict[str, Any]:
    invoices = get_db().list_invoices(job_id=job_id, status=status)
    return serialize({"invoices": invoices, "count": len(invoices)})


@router.get("/{invoice_id}")
def get_invoice(invoice_id: str) -> Dict[str, Any]:
    return serialize(get_invoice_workflow_service().get_invoice_detail(invoice_id))


@router.put("/{invoice_id}")
def save_invoice(invoice_id: str, request: SaveInvoiceRequest) -> Dict[str, Any]:
    result = get_invoice_workflow_service().save_changes(
        invoice_id,
        performed_by=request.performed_by,
        expected_version=request.expected_version,
        fields=request.fields,
        allocations=[a.model_dump() for a in request.allocations] if request.allocations is not None else None,
        target_status=request.target_status,
        reason=request.reason,
        override_po_overage=request.override_po_overage,
        unlock=request.unlock,
    )
    return result.to_dict()


@router.post("/{invoice_id}/transition")
def transition_invoice(invoice_id: str, request: TransitionRequest) -> Dict[str, Any]:
    result = get_invoice_workflow_service().transition(
        invoice_id,
        request.target_status,
        request.performed_by,
        expected_version=request.expected_version,
        reason=request.reason,
        override_po_overage=request.override_po_overage,
        partial_approval_note=request.partial_approval_note,
    )
    return result.to_dict()


@router.post("/{invoice_id}/close-out")
def close_out_invoice(invoice_id: str, request: CloseOutRequest) -> Dict[str, Any]:
    result = get_invoice_workflow_service().close_out(
        invoice_id,
        reason=request.reason,
        performed_by=request.performed_by,
        notes=request.notes,
        expected_version=request.expected_version,
    )
    return result.to_dict()


@router.post("/{invoice_id}/split")
def split_invoice(invoice_id: str, request: SplitRequest) -> Dict[str, Any]:
    result = get_invoice_split_service().split(
        invoice_id,
        [entry.model_dump() for entry in request.splits],
        request.performed_by,
        expected_version=request.expected_version,
    )
    return result.to_dict()


@router.post("/{invoice_id}/unsplit")
def unsplit_invoice(invoice_id: str, request: UnsplitRequest) -> Dict[str, Any]:
    parent = get_invoice_split_service().unsplit(
        invoice_id, request.performed_by, expected_version=request.expected_version
    )
    return serialize({"invoice": parent})


@router.get("/{invoice_id}/family")
def get_invoice_family(invoice_id: str) -> Dict[str, Any]:
    return serialize(get_invoice_split_service().family(invoice_id))


@router.get("/{invoice_id}/activity")
def get_invoice_activity(invoice_id: str) -> Dict[str, Any]:
    events = get_invoice_workflow_service().list_activity(invoice_id)
    return serialize({"events": events})


@router.post("/{invoice_id}/allocations/balance")
def balance_allocations(invoice_id: str, request: BalanceRequest) -> Dict[str, Any]:
    """Preview a balancer operation on a proposed allocation list. Nothing is saved."""
    invoice = get_db().require_invoice(invoice_id)
    balancer = AllocationBalancer(
        cap=allocation_cap(invoice),
        lines=[
            AllocationLine.from_record({**a.model_dump(), "amount": parse_amount(a.amount)})
            for a in request.allocations
        ],
        frozen=not allocations_editable(invoice["status"]),
    )
    rebalance = None
    if request.operation == "fill_remaining":
        balancer.fill_remaining(request.index)
    elif request.operation == "split_evenly":
        balancer.split_evenly()
    elif request.operation == "set_amount":
        rebalance = balancer.set_amount(request.index, request.value)
    elif request.operation == "percentage_of":
        rebalance = balancer.percentage_of(request.index, request.value)
    elif request.operation == "remove":
        balancer.remove(request.index)
    return {
        "allocations": [line.to_dict() for line in balancer.lines],
        "summary": balancer.summary().to_dict(),
        "rebalance": rebalance.to_dict() if rebalance else None,
    }

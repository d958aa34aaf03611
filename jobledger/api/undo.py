"""Undo API."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from jobledger.models.requests import UndoRequest
from jobledger.services.invoice_workflow import get_invoice_workflow_service
from jobledger.services.money import serialize


router = APIRouter(prefix="/api/undo", tags=["undo"])


@router.post("/{undo_id}")
def undo_change(undo_id: str, request: UndoRequest) -> Dict[str, Any]:
    invoice = get_invoice_workflow_service().undo(undo_id, performed_by=request.performed_by)
    return serialize({"invoice": invoice})

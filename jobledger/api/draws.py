"""Draw APIs: listing, detail, change-order billings, finalize."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Query

from jobledger.models.requests import ChangeOrderBillingRequest, FinalizeDrawRequest
from jobledger.services.draws import get_draw_service
from jobledger.services.money import serialize


router = APIRouter(prefix="/api/draws", tags=["draws"])


@router.get("")
def list_draws(job_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    draws = get_draw_service().list_draws(job_id)
    return serialize({"draws": draws, "count": len(draws)})


@router.get("/{draw_id}")
def get_draw(draw_id: str) -> Dict[str, Any]:
    return serialize(get_draw_service().get_draw_detail(draw_id))


@router.post("/{draw_id}/change-order-billings")
def add_change_order_billing(draw_id: str, request: ChangeOrderBillingRequest) -> Dict[str, Any]:
    service = get_draw_service()
    billing = service.add_change_order_billing(draw_id, request.change_order_id, request.amount)
    return serialize({"billing": billing, "draw": service.get_draw_detail(draw_id)})


@router.post("/{draw_id}/finalize")
def finalize_draw(draw_id: str, request: FinalizeDrawRequest) -> Dict[str, Any]:
    return serialize(get_draw_service().finalize_draw(draw_id, request.performed_by))

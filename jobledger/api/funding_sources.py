"""Funding source lookup (POs and COs with remaining capacity) for a job."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query

from jobledger.models.requests import FundingSourcesRequest
from jobledger.services.funding_sources import get_funding_source_resolver
from jobledger.services.money import parse_amount


router = APIRouter(prefix="/api/jobs", tags=["funding-sources"])


@router.get("/{job_id}/funding-sources")
def list_funding_sources(job_id: str, editing_invoice_id: Optional[str] = Query(default=None)) -> Dict[str, Any]:
    sources = get_funding_source_resolver().list_funding_sources(job_id, editing_invoice_id=editing_invoice_id)
    return {"job_id": job_id, **sources.to_dict()}


@router.post("/{job_id}/funding-sources/preview")
def preview_funding_sources(job_id: str, request: FundingSourcesRequest) -> Dict[str, Any]:
    """Remaining capacity after the unsaved allocations in ``request`` are applied."""
    session_allocations = [
        {**a.model_dump(), "amount": parse_amount(a.amount)} for a in request.allocations
    ]
    sources = get_funding_source_resolver().list_funding_sources(
        job_id,
        editing_invoice_id=request.editing_invoice_id,
        session_allocations=session_allocations,
    )
    return {"job_id": job_id, **sources.to_dict()}

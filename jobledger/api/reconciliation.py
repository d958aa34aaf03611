"""Reconciliation APIs. Dry run by default; ``write=true`` applies corrections."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Query

from jobledger.services.reconciliation import get_reconciliation_engine


router = APIRouter(prefix="/api/reconciliation", tags=["reconciliation"])


@router.post("/jobs/{job_id}")
def reconcile_job(job_id: str, write: bool = Query(default=False)) -> Dict[str, Any]:
    return get_reconciliation_engine().reconcile_job(job_id, write=write).to_dict()


@router.post("/jobs")
def reconcile_all_jobs(write: bool = Query(default=False)) -> Dict[str, Any]:
    reports = get_reconciliation_engine().reconcile_all(write=write)
    return {
        "write": write,
        "jobs": len(reports),
        "discrepancies": sum(len(r.discrepancies) for r in reports),
        "reports": [r.to_dict() for r in reports],
    }

"""Edit lock APIs."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Query

from jobledger.models.requests import ForceReleaseRequest, LockRequest
from jobledger.services.locking import get_lock_manager


router = APIRouter(prefix="/api/locks", tags=["locks"])


@router.get("")
def list_locks() -> Dict[str, Any]:
    locks = get_lock_manager().list_locks()
    return {"locks": locks, "count": len(locks)}


@router.get("/{entity_type}/{entity_id}")
def check_lock(entity_type: str, entity_id: str) -> Dict[str, Any]:
    lock = get_lock_manager().check(entity_type, entity_id)
    return {"locked": lock is not None, "lock": lock}


@router.post("/{entity_type}/{entity_id}")
def acquire_lock(entity_type: str, entity_id: str, request: LockRequest) -> Dict[str, Any]:
    return {"lock": get_lock_manager().acquire(entity_type, entity_id, request.holder)}


@router.delete("/{entity_type}/{entity_id}")
def release_lock(entity_type: str, entity_id: str, holder: str = Query(..., min_length=1)) -> Dict[str, Any]:
    return {"released": get_lock_manager().release(entity_type, entity_id, holder)}


@router.post("/{entity_type}/{entity_id}/force-release")
def force_release_lock(entity_type: str, entity_id: str, request: ForceReleaseRequest) -> Dict[str, Any]:
    return {"released": get_lock_manager().force_release(entity_type, entity_id, request.admin)}

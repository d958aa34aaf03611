"""
Edit locks.

Advisory, time-limited, one holder per (entity_type, entity_id). Uniqueness is
enforced by the store, so two concurrent acquires cannot both win. Expired
locks are purged lazily on the next acquire/check.

Locks are a courtesy to other editors; lost-update protection comes from the
version check on save.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from jobledger.core.database import get_db
from jobledger.core.settings import get_settings
from jobledger.services.errors import LockedError

logger = logging.getLogger(__name__)

INVOICE = "invoice"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class LockManager:
    def __init__(self, db=None, ttl_seconds: Optional[int] = None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db or get_db()
        self.ttl = timedelta(seconds=ttl_seconds or get_settings().lock_ttl_seconds)
        self.clock = clock or _utcnow

    def cleanup_expired(self) -> int:
        removed = self.db.delete_expired_locks(iso(self.clock()))
        if removed:
            logger.info("Purged %s expired edit lock(s)", removed)
        return removed

    def acquire(self, entity_type: str, entity_id: str, holder: str) -> Dict[str, Any]:
        """Take or refresh the lock. Raises LockedError if someone else holds it."""
        self.cleanup_expired()
        for _ in range(2):
            now = self.clock()
            lock = {
                "id": f"LCK-{uuid.uuid4().hex[:12]}",
                "entity_type": entity_type,
                "entity_id": entity_id,
                "locked_by": holder,
                "locked_at": iso(now),
                "expires_at": iso(now + self.ttl),
            }
            if self.db.insert_lock(lock):
                logger.info("Lock acquired on %s %s by %s", entity_type, entity_id, holder)
                return lock

            existing = self.db.get_lock(entity_type, entity_id)
            if existing is None:
                # Released between insert and read
                continue
            if existing["locked_by"] == holder:
                self.db.refresh_lock(existing["id"], holder, lock["locked_at"], lock["expires_at"])
                existing.update(locked_at=lock["locked_at"], expires_at=lock["expires_at"])
                return existing
            if existing["expires_at"] < iso(now):
                self.db.delete_lock(entity_type, entity_id, locked_by=existing["locked_by"])
                continue
            raise LockedError(entity_type, entity_id, existing["locked_by"], existing["expires_at"])

        existing = self.db.get_lock(entity_type, entity_id) or {}
        raise LockedError(entity_type, entity_id, existing.get("locked_by", "another user"), existing.get("expires_at"))

    def release(self, entity_type: str, entity_id: str, holder: str) -> bool:
        existing = self.check(entity_type, entity_id)
        if existing is None:
            return False
        if existing["locked_by"] != holder:
            raise LockedError(entity_type, entity_id, existing["locked_by"], existing["expires_at"])
        released = self.db.delete_lock(entity_type, entity_id, locked_by=holder)
        if released:
            logger.info("Lock released on %s %s by %s", entity_type, entity_id, holder)
        return released

    def force_release(self, entity_type: str, entity_id: str, admin: str) -> bool:
        existing = self.db.get_lock(entity_type, entity_id)
        released = self.db.delete_lock(entity_type, entity_id)
        if released:
            logger.warning(
                "Lock on %s %s held by %s force-released by %s",
                entity_type, entity_id, (existing or {}).get("locked_by"), admin,
            )
        return released

    def check(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        existing = self.db.get_lock(entity_type, entity_id)
        if existing and existing["expires_at"] < iso(self.clock()):
            self.cleanup_expired()
            return None
        return existing

    def require_lock(self, entity_type: str, entity_id: str, holder: str) -> None:
        """Fail when a live lock belongs to someone other than ``holder``."""
        existing = self.check(entity_type, entity_id)
        if existing and existing["locked_by"] != holder:
            raise LockedError(entity_type, entity_id, existing["locked_by"], existing["expires_at"])

    def list_locks(self) -> List[Dict[str, Any]]:
        self.cleanup_expired()
        return self.db.list_locks()


def get_lock_manager() -> LockManager:
    return LockManager()

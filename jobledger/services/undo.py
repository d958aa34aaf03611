"""
Short undo window for invoice saves and transitions.

Before a write the caller snapshots the invoice and its allocations; the
snapshot is kept for ``undo_window_seconds`` (default 30). Only the most
recent undo per invoice stays valid. Restoring is itself a version-checked
write against the version the undone action produced, so an undo never
clobbers a later edit by someone else.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from jobledger.core.database import INVOICE_COLUMNS, get_db
from jobledger.core.settings import get_settings
from jobledger.services.errors import NotFoundError, UndoExpiredError
from jobledger.services.locking import INVOICE, iso

logger = logging.getLogger(__name__)

_SNAPSHOT_EXCLUDE = {"id", "version", "created_at", "updated_at", "deleted_at"}
SNAPSHOT_FIELDS = tuple(c for c in INVOICE_COLUMNS if c not in _SNAPSHOT_EXCLUDE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UndoToken:
    id: str
    expires_at: str
    remaining_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "expires_at": self.expires_at, "remaining_ms": self.remaining_ms}


def snapshot(invoice: Dict[str, Any], allocations: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "invoice": {name: invoice.get(name) for name in SNAPSHOT_FIELDS},
        "allocations": [
            {
                "cost_code_id": a.get("cost_code_id"),
                "amount": a.get("amount"),
                "po_id": a.get("po_id"),
                "change_order_id": a.get("change_order_id"),
                "notes": a.get("notes"),
                "provenance": a.get("provenance"),
            }
            for a in allocations
        ],
    }


class UndoService:
    def __init__(self, db=None, window_seconds: Optional[int] = None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db or get_db()
        self.window = timedelta(
            seconds=window_seconds if window_seconds is not None else get_settings().undo_window_seconds
        )
        self.clock = clock or _utcnow

    def record(
        self,
        invoice_id: str,
        action: str,
        previous: Dict[str, Any],
        resulting_version: int,
        performed_by: Optional[str] = None,
    ) -> UndoToken:
        expires_at = self.clock() + self.window
        entry = self.db.create_undo_entry({
            "entity_type": INVOICE,
            "entity_id": invoice_id,
            "action": action,
            "previous_state": {**previous, "resulting_version": resulting_version},
            "performed_by": performed_by,
            "expires_at": iso(expires_at),
        })
        return UndoToken(
            id=entry["id"],
            expires_at=entry["expires_at"],
            remaining_ms=int(self.window.total_seconds() * 1000),
        )

    def remaining_ms(self, entry: Dict[str, Any]) -> int:
        expires_at = datetime.fromisoformat(entry["expires_at"])
        return max(0, int((expires_at - self.clock()).total_seconds() * 1000))

    def get_entry(self, undo_id: str) -> Dict[str, Any]:
        entry = self.db.get_undo_entry(undo_id)
        if not entry:
            raise NotFoundError("undo_entry", undo_id)
        return entry

    def undo(
        self,
        undo_id: str,
        performed_by: Optional[str] = None,
        restore_draw: Optional[Callable] = None,
        refresh_draw: Optional[Callable] = None,
    ) -> Dict[str, Any]:
        """
        Restore the snapshot behind ``undo_id``.

        ``restore_draw(cur, invoice_before, invoice_now)`` lets the caller
        reverse draw membership inside the same transaction.
        ``refresh_draw(cur, invoice_restored)`` runs after the invoice row is
        written back, for totals derived from it.
        """
        entry = self.get_entry(undo_id)
        if entry["undone"]:
            raise UndoExpiredError(undo_id, "Undo is no longer available")
        if self.remaining_ms(entry) <= 0:
            raise UndoExpiredError(undo_id)

        state = entry["previous_state"]
        invoice_id = entry["entity_id"]
        before = dict(state.get("invoice") or {})

        with self.db.transaction() as cur:
            if not self.db.mark_undone(cur, undo_id):
                raise UndoExpiredError(undo_id, "Undo is no longer available")
            current = self.db.fetch_invoice(cur, invoice_id)
            if not current:
                raise NotFoundError("invoice", invoice_id)
            if restore_draw is not None:
                restore_draw(cur, before, current)
            restored = self.db.update_invoice(
                invoice_id,
                expected_version=state.get("resulting_version"),
                cur=cur,
                **before,
            )
            if refresh_draw is not None:
                refresh_draw(cur, restored)
            self.db.replace_allocations(cur, invoice_id, state.get("allocations") or [])
            self.db.append_activity({
                "invoice_id": invoice_id,
                "action": "undone",
                "performed_by": performed_by,
                "details": {"undone_action": entry["action"], "undo_id": undo_id},
            }, cur=cur)

        logger.info("Undid %s on invoice %s", entry["action"], invoice_id)
        return self.db.get_invoice(invoice_id, include_deleted=True)

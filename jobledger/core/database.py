"""
JobLedger Database

Transactional record store for invoices, allocations, funding sources
(POs / change orders), budget lines, draws, entity locks, activity events and
undo snapshots.

Invoice writes carry an optimistic version token: every update bumps
``version`` and a conditional update (``expected_version``) that loses the
race raises VersionConflictError instead of merging.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from jobledger.core.settings import get_settings
from jobledger.services.errors import DatabaseError, NotFoundError, VersionConflictError

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False

logger = logging.getLogger(__name__)

MONEY_FIELDS = {
    "amount",
    "billed_amount",
    "paid_amount",
    "total_amount",
    "budgeted_amount",
    "committed_amount",
    "write_off_amount",
}
BOOL_FIELDS = {"is_split_parent", "undone"}
JSON_FIELDS = {"details", "previous_state"}

INVOICE_COLUMNS = (
    "id", "job_id", "vendor_id", "amount", "invoice_number", "invoice_date", "due_date",
    "status", "billed_amount", "paid_amount", "version", "parent_invoice_id", "split_index",
    "is_split_parent", "closed_out_at", "closed_out_by", "closed_out_reason",
    "closed_out_notes", "write_off_amount", "draw_id", "partial_approval_note",
    "approved_at", "approved_by", "denied_at", "denied_by", "denial_reason", "notes",
    "deleted_at", "created_at", "updated_at",
)

ALLOCATION_COLUMNS = (
    "id", "invoice_id", "cost_code_id", "amount", "po_id", "change_order_id",
    "notes", "provenance", "position", "created_at",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _from_db(row: Any) -> Dict[str, Any]:
    data = dict(row)
    for key, value in data.items():
        if key in MONEY_FIELDS:
            data[key] = Decimal(str(value)).quantize(Decimal("0.01")) if value not in (None, "") else Decimal("0.00")
        elif key in BOOL_FIELDS:
            data[key] = bool(value)
        elif key in JSON_FIELDS and isinstance(value, str):
            try:
                data[key] = json.loads(value)
            except json.JSONDecodeError:
                data[key] = {}
    return data


class JobLedgerDB:
    def __init__(self, db_path: str = "jobledger.db", database_url: Optional[str] = None):
        self.dsn = database_url if database_url is not None else os.getenv("DATABASE_URL")
        self.db_path = db_path
        dsn = (self.dsn or "").strip().lower()
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn
            and (dsn.startswith("postgres://") or dsn.startswith("postgresql://"))
        )
        self._initialized = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            conn = psycopg.connect(self.dsn, row_factory=dict_row)
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """
        All-or-nothing unit of work. Yields a cursor; commits on exit and
        rolls back on any exception. Driver failures surface as DatabaseError.
        """
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            if not self.use_postgres:
                cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
                conn.commit()
            except self.integrity_errors():
                # Callers treat constraint violations as "someone got there first"
                conn.rollback()
                raise
            except self.driver_errors() as exc:
                conn.rollback()
                logger.exception("Transaction rolled back after driver error")
                raise DatabaseError("transaction", str(exc)) from exc
            except Exception:
                conn.rollback()
                raise

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def integrity_errors(self) -> tuple:
        errors: List[type] = [sqlite3.IntegrityError]
        if HAS_POSTGRES:
            errors.append(psycopg.IntegrityError)
        return tuple(errors)

    def driver_errors(self) -> tuple:
        errors: List[type] = [sqlite3.Error]
        if HAS_POSTGRES:
            errors.append(psycopg.Error)
        return tuple(errors)

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    job_id TEXT,
                    vendor_id TEXT,
                    amount TEXT NOT NULL DEFAULT '0.00',
                    invoice_number TEXT,
                    invoice_date TEXT,
                    due_date TEXT,
                    status TEXT NOT NULL,
                    billed_amount TEXT NOT NULL DEFAULT '0.00',
                    paid_amount TEXT NOT NULL DEFAULT '0.00',
                    version INTEGER NOT NULL DEFAULT 1,
                    parent_invoice_id TEXT,
                    split_index INTEGER,
                    is_split_parent INTEGER NOT NULL DEFAULT 0,
                    closed_out_at TEXT,
                    closed_out_by TEXT,
                    closed_out_reason TEXT,
                    closed_out_notes TEXT,
                    write_off_amount TEXT,
                    draw_id TEXT,
                    partial_approval_note TEXT,
                    approved_at TEXT,
                    approved_by TEXT,
                    denied_at TEXT,
                    denied_by TEXT,
                    denial_reason TEXT,
                    notes TEXT,
                    deleted_at TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS allocations (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    cost_code_id TEXT,
                    amount TEXT NOT NULL DEFAULT '0.00',
                    po_id TEXT,
                    change_order_id TEXT,
                    notes TEXT,
                    provenance TEXT DEFAULT 'manual',
                    position INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS cost_codes (
                    id TEXT PRIMARY KEY,
                    code TEXT NOT NULL UNIQUE,
                    name TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS purchase_orders (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    vendor_id TEXT,
                    po_number TEXT,
                    total_amount TEXT NOT NULL DEFAULT '0.00',
                    status TEXT DEFAULT 'open',
                    deleted_at TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS po_line_items (
                    id TEXT PRIMARY KEY,
                    po_id TEXT NOT NULL,
                    cost_code_id TEXT,
                    description TEXT,
                    amount TEXT NOT NULL DEFAULT '0.00',
                    change_order_id TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS change_orders (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    change_order_number TEXT,
                    title TEXT,
                    amount TEXT NOT NULL DEFAULT '0.00',
                    status TEXT NOT NULL DEFAULT 'draft',
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS budget_lines (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    cost_code_id TEXT NOT NULL,
                    budgeted_amount TEXT NOT NULL DEFAULT '0.00',
                    committed_amount TEXT NOT NULL DEFAULT '0.00',
                    billed_amount TEXT NOT NULL DEFAULT '0.00',
                    paid_amount TEXT NOT NULL DEFAULT '0.00',
                    updated_at TEXT,
                    UNIQUE(job_id, cost_code_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS draws (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    draw_number INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'draft',
                    total_amount TEXT NOT NULL DEFAULT '0.00',
                    finalized_at TEXT,
                    finalized_by TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE(job_id, draw_number)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS draw_invoices (
                    draw_id TEXT NOT NULL,
                    invoice_id TEXT NOT NULL,
                    added_at TEXT,
                    added_by TEXT,
                    PRIMARY KEY (draw_id, invoice_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS draw_allocations (
                    id TEXT PRIMARY KEY,
                    draw_id TEXT NOT NULL,
                    invoice_id TEXT NOT NULL,
                    cost_code_id TEXT,
                    amount TEXT NOT NULL DEFAULT '0.00',
                    created_at TEXT,
                    UNIQUE(draw_id, invoice_id, cost_code_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS draw_co_billings (
                    id TEXT PRIMARY KEY,
                    draw_id TEXT NOT NULL,
                    change_order_id TEXT NOT NULL,
                    amount TEXT NOT NULL DEFAULT '0.00',
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS entity_locks (
                    id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    locked_by TEXT NOT NULL,
                    locked_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    UNIQUE(entity_type, entity_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS activity_events (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    performed_by TEXT,
                    details TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS undo_entries (
                    id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    previous_state TEXT NOT NULL,
                    performed_by TEXT,
                    expires_at TEXT NOT NULL,
                    undone INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_invoices_job ON invoices(job_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_invoices_parent ON invoices(parent_invoice_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_allocations_invoice ON allocations(invoice_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_allocations_po ON allocations(po_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_allocations_co ON allocations(change_order_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_draw_allocations_invoice ON draw_allocations(invoice_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_activity_invoice ON activity_events(invoice_id)")
            conn.commit()
        self._initialized = True

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _insert(self, cur, table: str, row: Dict[str, Any]) -> None:
        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        sql = self._prepare_sql(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        )
        cur.execute(sql, tuple(_to_db(row[c]) for c in columns))

    def _update(self, cur, table: str, row_id: str, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        set_clause = ", ".join(f"{k} = ?" for k in fields.keys())
        sql = self._prepare_sql(f"UPDATE {table} SET {set_clause} WHERE id = ?")
        cur.execute(sql, (*(_to_db(v) for v in fields.values()), row_id))
        return cur.rowcount

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            row = cur.fetchone()
        return _from_db(row) if row else None

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            rows = cur.fetchall()
        return [_from_db(row) for row in rows]

    def _cur_fetchone(self, cur, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        cur.execute(self._prepare_sql(sql), tuple(params))
        row = cur.fetchone()
        return _from_db(row) if row else None

    def _cur_fetchall(self, cur, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        cur.execute(self._prepare_sql(sql), tuple(params))
        return [_from_db(row) for row in cur.fetchall()]

    @staticmethod
    def _in_clause(values: Sequence[Any]) -> str:
        return ", ".join("?" for _ in values)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def create_invoice(self, payload: Dict[str, Any], cur=None) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        row = {column: payload.get(column) for column in INVOICE_COLUMNS if column in payload}
        row["id"] = payload.get("id") or f"INV-{uuid.uuid4().hex}"
        row["status"] = payload.get("status") or "intake"
        row["amount"] = payload.get("amount") if payload.get("amount") is not None else Decimal("0.00")
        row.setdefault("billed_amount", Decimal("0.00"))
        row.setdefault("paid_amount", Decimal("0.00"))
        row["version"] = 1
        row["is_split_parent"] = bool(payload.get("is_split_parent"))
        row["created_at"] = now
        row["updated_at"] = now
        if cur is not None:
            self._insert(cur, "invoices", row)
            return self._cur_fetchone(cur, "SELECT * FROM invoices WHERE id = ?", (row["id"],))
        with self.transaction() as tx:
            self._insert(tx, "invoices", row)
        return self.get_invoice(row["id"])

    def get_invoice(self, invoice_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM invoices WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        return self._fetchone(sql, (invoice_id,))

    def fetch_invoice(self, cur, invoice_id: str) -> Optional[Dict[str, Any]]:
        """Read inside an open transaction (sees its uncommitted writes)."""
        return self._cur_fetchone(cur, "SELECT * FROM invoices WHERE id = ?", (invoice_id,))

    def require_invoice(self, invoice_id: str) -> Dict[str, Any]:
        invoice = self.get_invoice(invoice_id)
        if not invoice:
            raise NotFoundError("invoice", invoice_id)
        return invoice

    def list_invoices(
        self,
        job_id: Optional[str] = None,
        status: Optional[str] = None,
        parent_invoice_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if parent_invoice_id is not None:
            clauses.append("parent_invoice_id = ?")
            params.append(parent_invoice_id)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._fetchall(f"SELECT * FROM invoices{where} ORDER BY created_at ASC, id ASC", params)

    def list_job_ids(self) -> List[str]:
        rows = self._fetchall(
            "SELECT DISTINCT job_id FROM invoices WHERE job_id IS NOT NULL AND deleted_at IS NULL ORDER BY job_id"
        )
        return [row["job_id"] for row in rows]

    def update_invoice(
        self,
        invoice_id: str,
        expected_version: Optional[int] = None,
        cur=None,
        **fields: Any,
    ) -> Dict[str, Any]:
        """
        Update an invoice and bump its version.

        With expected_version the write only lands if the stored version still
        matches; otherwise VersionConflictError (or NotFoundError).
        """
        if cur is None:
            with self.transaction() as tx:
                self.update_invoice(invoice_id, expected_version, cur=tx, **fields)
            return self.get_invoice(invoice_id, include_deleted=True)

        fields.pop("id", None)
        fields.pop("version", None)
        fields["updated_at"] = _now()
        set_clause = ", ".join(f"{k} = ?" for k in fields.keys())
        sql = f"UPDATE invoices SET {set_clause}, version = version + 1 WHERE id = ?"
        params: List[Any] = [*(_to_db(v) for v in fields.values()), invoice_id]
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(int(expected_version))
        cur.execute(self._prepare_sql(sql), tuple(params))
        if cur.rowcount == 0:
            current = self._cur_fetchone(cur, "SELECT id, version FROM invoices WHERE id = ?", (invoice_id,))
            if not current:
                raise NotFoundError("invoice", invoice_id)
            raise VersionConflictError(invoice_id, int(expected_version), current.get("version"))
        return self._cur_fetchone(cur, "SELECT * FROM invoices WHERE id = ?", (invoice_id,))

    def soft_delete_invoices(self, cur, invoice_ids: Iterable[str]) -> int:
        ids = list(invoice_ids)
        if not ids:
            return 0
        now = _now()
        sql = self._prepare_sql(
            f"UPDATE invoices SET deleted_at = ?, updated_at = ?, version = version + 1 "
            f"WHERE id IN ({self._in_clause(ids)}) AND deleted_at IS NULL"
        )
        cur.execute(sql, (now, now, *ids))
        deleted = cur.rowcount
        sql = self._prepare_sql(f"DELETE FROM allocations WHERE invoice_id IN ({self._in_clause(ids)})")
        cur.execute(sql, tuple(ids))
        return deleted

    # ------------------------------------------------------------------
    # Allocations
    # ------------------------------------------------------------------

    def list_allocations(self, invoice_id: str, cur=None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM allocations WHERE invoice_id = ? ORDER BY position ASC, created_at ASC"
        if cur is not None:
            return self._cur_fetchall(cur, sql, (invoice_id,))
        return self._fetchall(sql, (invoice_id,))

    def replace_allocations(self, cur, invoice_id: str, allocations: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        cur.execute(self._prepare_sql("DELETE FROM allocations WHERE invoice_id = ?"), (invoice_id,))
        now = _now()
        for position, allocation in enumerate(allocations):
            self._insert(cur, "allocations", {
                "id": allocation.get("id") or f"ALC-{uuid.uuid4().hex}",
                "invoice_id": invoice_id,
                "cost_code_id": allocation.get("cost_code_id"),
                "amount": allocation.get("amount") if allocation.get("amount") is not None else Decimal("0.00"),
                "po_id": allocation.get("po_id"),
                "change_order_id": allocation.get("change_order_id"),
                "notes": allocation.get("notes"),
                "provenance": allocation.get("provenance") or "manual",
                "position": position,
                "created_at": allocation.get("created_at") or now,
            })
        return self.list_allocations(invoice_id, cur=cur)

    def save_invoice(
        self,
        invoice_id: str,
        expected_version: Optional[int],
        fields: Optional[Dict[str, Any]] = None,
        allocations: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Write invoice fields and (optionally) its allocation list atomically."""
        self.initialize()
        with self.transaction() as cur:
            self.update_invoice(invoice_id, expected_version, cur=cur, **(fields or {}))
            if allocations is not None:
                self.replace_allocations(cur, invoice_id, allocations)
        return self.get_invoice(invoice_id, include_deleted=True)

    def list_job_allocations(self, job_id: str, cur=None) -> List[Dict[str, Any]]:
        """Allocations of live invoices on a job, with the owning invoice's status."""
        sql = """
            SELECT a.*, i.status AS invoice_status, i.job_id AS job_id
            FROM allocations a
            JOIN invoices i ON i.id = a.invoice_id
            WHERE i.job_id = ? AND i.deleted_at IS NULL
            ORDER BY a.invoice_id, a.position
        """
        if cur is not None:
            return self._cur_fetchall(cur, sql, (job_id,))
        return self._fetchall(sql, (job_id,))

    def list_funding_allocations(self, column: str, source_id: str) -> List[Dict[str, Any]]:
        if column not in {"po_id", "change_order_id"}:
            raise ValueError(f"Unsupported funding column: {column}")
        return self._fetchall(
            f"""
            SELECT a.*, i.status AS invoice_status
            FROM allocations a
            JOIN invoices i ON i.id = a.invoice_id
            WHERE a.{column} = ? AND i.deleted_at IS NULL
            """,
            (source_id,),
        )

    # ------------------------------------------------------------------
    # Cost codes
    # ------------------------------------------------------------------

    def create_cost_code(self, code: str, name: Optional[str] = None, cost_code_id: Optional[str] = None) -> Dict[str, Any]:
        self.initialize()
        row = {"id": cost_code_id or f"CC-{uuid.uuid4().hex[:12]}", "code": code, "name": name}
        with self.transaction() as cur:
            self._insert(cur, "cost_codes", row)
        return self.get_cost_code(row["id"])

    def get_cost_code(self, cost_code_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM cost_codes WHERE id = ?", (cost_code_id,))

    def get_cost_codes(self, cost_code_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = [cid for cid in set(cost_code_ids) if cid]
        if not ids:
            return {}
        rows = self._fetchall(f"SELECT * FROM cost_codes WHERE id IN ({self._in_clause(ids)})", ids)
        return {row["id"]: row for row in rows}

    # ------------------------------------------------------------------
    # Purchase orders & change orders
    # ------------------------------------------------------------------

    def create_purchase_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        po_id = payload.get("id") or f"PO-{uuid.uuid4().hex[:12]}"
        with self.transaction() as cur:
            self._insert(cur, "purchase_orders", {
                "id": po_id,
                "job_id": payload["job_id"],
                "vendor_id": payload.get("vendor_id"),
                "po_number": payload.get("po_number"),
                "total_amount": payload.get("total_amount") or Decimal("0.00"),
                "status": payload.get("status") or "open",
                "created_at": _now(),
            })
            for line in payload.get("line_items") or []:
                self._insert(cur, "po_line_items", {
                    "id": line.get("id") or f"POL-{uuid.uuid4().hex[:12]}",
                    "po_id": po_id,
                    "cost_code_id": line.get("cost_code_id"),
                    "description": line.get("description"),
                    "amount": line.get("amount") or Decimal("0.00"),
                    "change_order_id": line.get("change_order_id"),
                })
        return self.get_purchase_order(po_id)

    def get_purchase_order(self, po_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM purchase_orders WHERE id = ? AND deleted_at IS NULL", (po_id,))

    def list_purchase_orders(self, job_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM purchase_orders WHERE job_id = ? AND deleted_at IS NULL ORDER BY po_number, id",
            (job_id,),
        )

    def list_po_line_items(self, po_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ids = list(po_ids)
        if not ids:
            return []
        return self._fetchall(
            f"SELECT * FROM po_line_items WHERE po_id IN ({self._in_clause(ids)}) ORDER BY po_id, id",
            ids,
        )

    def create_change_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        co_id = payload.get("id") or f"CO-{uuid.uuid4().hex[:12]}"
        with self.transaction() as cur:
            self._insert(cur, "change_orders", {
                "id": co_id,
                "job_id": payload["job_id"],
                "change_order_number": payload.get("change_order_number"),
                "title": payload.get("title"),
                "amount": payload.get("amount") or Decimal("0.00"),
                "status": payload.get("status") or "draft",
                "created_at": _now(),
            })
        return self.get_change_order(co_id)

    def get_change_order(self, co_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM change_orders WHERE id = ?", (co_id,))

    def list_change_orders(self, job_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM change_orders WHERE job_id = ? ORDER BY change_order_number, id",
            (job_id,),
        )

    # ------------------------------------------------------------------
    # Budget lines
    # ------------------------------------------------------------------

    def create_budget_line(self, payload: Dict[str, Any], cur=None) -> Dict[str, Any]:
        self.initialize()
        row = {
            "id": payload.get("id") or f"BL-{uuid.uuid4().hex[:12]}",
            "job_id": payload["job_id"],
            "cost_code_id": payload["cost_code_id"],
            "budgeted_amount": payload.get("budgeted_amount") or Decimal("0.00"),
            "committed_amount": payload.get("committed_amount") or Decimal("0.00"),
            "billed_amount": payload.get("billed_amount") or Decimal("0.00"),
            "paid_amount": payload.get("paid_amount") or Decimal("0.00"),
            "updated_at": _now(),
        }
        if cur is not None:
            self._insert(cur, "budget_lines", row)
            return row
        with self.transaction() as tx:
            self._insert(tx, "budget_lines", row)
        return self.get_budget_line(row["id"])

    def get_budget_line(self, budget_line_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM budget_lines WHERE id = ?", (budget_line_id,))

    def list_budget_lines(self, job_id: str, cur=None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM budget_lines WHERE job_id = ? ORDER BY cost_code_id"
        if cur is not None:
            return self._cur_fetchall(cur, sql, (job_id,))
        return self._fetchall(sql, (job_id,))

    def update_budget_line(self, budget_line_id: str, cur=None, **fields: Any) -> None:
        fields["updated_at"] = _now()
        if cur is not None:
            self._update(cur, "budget_lines", budget_line_id, fields)
            return
        with self.transaction() as tx:
            self._update(tx, "budget_lines", budget_line_id, fields)

    # ------------------------------------------------------------------
    # Draws
    # ------------------------------------------------------------------

    def get_draw(self, draw_id: str, cur=None) -> Optional[Dict[str, Any]]:
        if cur is not None:
            return self._cur_fetchone(cur, "SELECT * FROM draws WHERE id = ?", (draw_id,))
        return self._fetchone("SELECT * FROM draws WHERE id = ?", (draw_id,))

    def list_draws(self, job_id: str) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM draws WHERE job_id = ? ORDER BY draw_number", (job_id,))

    def get_draft_draw(self, cur, job_id: str) -> Optional[Dict[str, Any]]:
        return self._cur_fetchone(
            cur,
            "SELECT * FROM draws WHERE job_id = ? AND status = 'draft' ORDER BY draw_number DESC",
            (job_id,),
        )

    def create_draw(self, cur, job_id: str) -> Dict[str, Any]:
        latest = self._cur_fetchone(
            cur, "SELECT MAX(draw_number) AS max_number FROM draws WHERE job_id = ?", (job_id,)
        )
        next_number = int((latest or {}).get("max_number") or 0) + 1
        now = _now()
        row = {
            "id": f"DRW-{uuid.uuid4().hex[:12]}",
            "job_id": job_id,
            "draw_number": next_number,
            "status": "draft",
            "total_amount": Decimal("0.00"),
            "created_at": now,
            "updated_at": now,
        }
        self._insert(cur, "draws", row)
        return self.get_draw(row["id"], cur=cur)

    def update_draw(self, draw_id: str, cur=None, **fields: Any) -> None:
        fields["updated_at"] = _now()
        if cur is not None:
            self._update(cur, "draws", draw_id, fields)
            return
        with self.transaction() as tx:
            self._update(tx, "draws", draw_id, fields)

    def add_draw_invoice(self, cur, draw_id: str, invoice_id: str, added_by: Optional[str]) -> None:
        self._insert(cur, "draw_invoices", {
            "draw_id": draw_id,
            "invoice_id": invoice_id,
            "added_at": _now(),
            "added_by": added_by,
        })

    def remove_draw_invoice(self, cur, draw_id: str, invoice_id: str) -> None:
        cur.execute(
            self._prepare_sql("DELETE FROM draw_invoices WHERE draw_id = ? AND invoice_id = ?"),
            (draw_id, invoice_id),
        )
        cur.execute(
            self._prepare_sql("DELETE FROM draw_allocations WHERE draw_id = ? AND invoice_id = ?"),
            (draw_id, invoice_id),
        )

    def list_draw_invoices(self, draw_id: str, cur=None) -> List[Dict[str, Any]]:
        sql = """
            SELECT i.* FROM draw_invoices di
            JOIN invoices i ON i.id = di.invoice_id
            WHERE di.draw_id = ? AND i.deleted_at IS NULL
            ORDER BY di.added_at, i.id
        """
        if cur is not None:
            return self._cur_fetchall(cur, sql, (draw_id,))
        return self._fetchall(sql, (draw_id,))

    def add_draw_allocation(self, cur, draw_id: str, invoice_id: str, cost_code_id: Optional[str], amount: Decimal) -> None:
        self._insert(cur, "draw_allocations", {
            "id": f"DA-{uuid.uuid4().hex[:12]}",
            "draw_id": draw_id,
            "invoice_id": invoice_id,
            "cost_code_id": cost_code_id,
            "amount": amount,
            "created_at": _now(),
        })

    def list_draw_allocations(
        self,
        draw_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        cur=None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if draw_id is not None:
            clauses.append("da.draw_id = ?")
            params.append(draw_id)
        if invoice_id is not None:
            clauses.append("da.invoice_id = ?")
            params.append(invoice_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = (
            "SELECT da.*, d.status AS draw_status FROM draw_allocations da "
            f"JOIN draws d ON d.id = da.draw_id{where} ORDER BY da.created_at, da.id"
        )
        if cur is not None:
            return self._cur_fetchall(cur, sql, params)
        return self._fetchall(sql, params)

    def add_draw_co_billing(self, cur, draw_id: str, change_order_id: str, amount: Decimal) -> Dict[str, Any]:
        row = {
            "id": f"DCB-{uuid.uuid4().hex[:12]}",
            "draw_id": draw_id,
            "change_order_id": change_order_id,
            "amount": amount,
            "created_at": _now(),
        }
        self._insert(cur, "draw_co_billings", row)
        return row

    def list_draw_co_billings(self, draw_id: str, cur=None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM draw_co_billings WHERE draw_id = ? ORDER BY created_at"
        if cur is not None:
            return self._cur_fetchall(cur, sql, (draw_id,))
        return self._fetchall(sql, (draw_id,))

    # ------------------------------------------------------------------
    # Entity locks
    # ------------------------------------------------------------------

    def insert_lock(self, payload: Dict[str, Any]) -> bool:
        """Insert a lock row; False when another row already holds the entity."""
        self.initialize()
        try:
            with self.transaction() as cur:
                self._insert(cur, "entity_locks", payload)
        except self.integrity_errors():
            return False
        return True

    def get_lock(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM entity_locks WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )

    def refresh_lock(self, lock_id: str, locked_by: str, locked_at: str, expires_at: str) -> bool:
        with self.transaction() as cur:
            cur.execute(
                self._prepare_sql(
                    "UPDATE entity_locks SET locked_at = ?, expires_at = ? WHERE id = ? AND locked_by = ?"
                ),
                (locked_at, expires_at, lock_id, locked_by),
            )
            return cur.rowcount > 0

    def delete_lock(self, entity_type: str, entity_id: str, locked_by: Optional[str] = None) -> bool:
        sql = "DELETE FROM entity_locks WHERE entity_type = ? AND entity_id = ?"
        params: List[Any] = [entity_type, entity_id]
        if locked_by is not None:
            sql += " AND locked_by = ?"
            params.append(locked_by)
        self.initialize()
        with self.transaction() as cur:
            cur.execute(self._prepare_sql(sql), tuple(params))
            return cur.rowcount > 0

    def delete_expired_locks(self, now_iso: str) -> int:
        self.initialize()
        with self.transaction() as cur:
            cur.execute(self._prepare_sql("DELETE FROM entity_locks WHERE expires_at < ?"), (now_iso,))
            return cur.rowcount

    def list_locks(self) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM entity_locks ORDER BY locked_at DESC")

    # ------------------------------------------------------------------
    # Activity events
    # ------------------------------------------------------------------

    def append_activity(self, payload: Dict[str, Any], cur=None) -> Dict[str, Any]:
        self.initialize()
        row = {
            "id": payload.get("id") or f"EVT-{uuid.uuid4().hex}",
            "invoice_id": payload["invoice_id"],
            "action": payload["action"],
            "performed_by": payload.get("performed_by"),
            "details": payload.get("details") or {},
            "created_at": payload.get("created_at") or _now(),
        }
        if cur is not None:
            self._insert(cur, "activity_events", row)
        else:
            with self.transaction() as tx:
                self._insert(tx, "activity_events", row)
        return row

    def list_activity(self, invoice_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM activity_events WHERE invoice_id = ? ORDER BY created_at ASC, id ASC",
            (invoice_id,),
        )

    # ------------------------------------------------------------------
    # Undo entries
    # ------------------------------------------------------------------

    def create_undo_entry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        row = {
            "id": f"UND-{uuid.uuid4().hex}",
            "entity_type": payload["entity_type"],
            "entity_id": payload["entity_id"],
            "action": payload["action"],
            "previous_state": payload["previous_state"],
            "performed_by": payload.get("performed_by"),
            "expires_at": payload["expires_at"],
            "undone": False,
            "created_at": _now(),
        }
        with self.transaction() as cur:
            # One pending undo per entity
            cur.execute(
                self._prepare_sql(
                    "UPDATE undo_entries SET undone = 1 WHERE entity_type = ? AND entity_id = ? AND undone = 0"
                ),
                (row["entity_type"], row["entity_id"]),
            )
            self._insert(cur, "undo_entries", row)
        return self.get_undo_entry(row["id"])

    def get_undo_entry(self, undo_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM undo_entries WHERE id = ?", (undo_id,))

    def mark_undone(self, cur, undo_id: str) -> bool:
        cur.execute(
            self._prepare_sql("UPDATE undo_entries SET undone = 1 WHERE id = ? AND undone = 0"),
            (undo_id,),
        )
        return cur.rowcount > 0


_DB_INSTANCE: Optional[JobLedgerDB] = None


def get_db() -> JobLedgerDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        settings = get_settings()
        _DB_INSTANCE = JobLedgerDB(
            db_path=os.getenv("JOBLEDGER_DB_PATH", settings.db_path),
            database_url=settings.database_url,
        )
    return _DB_INSTANCE

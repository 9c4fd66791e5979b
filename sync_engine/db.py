"""Sync Engine Database Operations.

This module handles all persisted state of the sync engine:
- connections: storefront integrations (read-mostly; last_synced_at is written)
- sales_ledger: one row per mirrored order, UNIQUE(connection_id, external_order_id)
- sales_ledger_lines: units sold per SKU of each mirrored order
- compensation_ledger: one row per reversed cancellation/refund
- compensation_lines: units returned per SKU by each reversal
- inventory_snapshots: last synced quantity per (connection_id, sku)
- sync_failures: classified failures and their recovery state

The unique constraints are the only concurrency control. Inserts that hit
them return None instead of raising, so callers treat a lost race exactly
like "already processed".
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import DEFAULT_DB_PATH
from core.observability.logging import get_logger
from sync_engine.models import (
    CompensationEntry,
    Connection,
    ErrorCategory,
    FailureFilter,
    FailureStatus,
    InventorySnapshot,
    RefundKind,
    SalesLedgerEntry,
    SyncFailure,
)

logger = get_logger(__name__)

RECOVERABLE_STATUSES = (FailureStatus.OPEN.value, FailureStatus.RETRYING.value)


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _now() -> str:
    return datetime.utcnow().isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def init_sync_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize sync engine database tables.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS connections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                platform TEXT NOT NULL,
                store_identifier TEXT NOT NULL,
                credentials TEXT NOT NULL DEFAULT '{}',
                enabled INTEGER NOT NULL DEFAULT 1,
                last_synced_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(platform, store_identifier)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sales_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL,
                external_order_id TEXT NOT NULL,
                order_number TEXT NOT NULL,
                total_amount TEXT NOT NULL,
                currency TEXT,
                status TEXT NOT NULL,
                order_date TEXT NOT NULL,
                customer_name TEXT,
                customer_email TEXT,
                ledger_transaction_id TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(connection_id, external_order_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS compensation_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL,
                external_order_id TEXT NOT NULL,
                compensation_key TEXT NOT NULL,
                kind TEXT NOT NULL,
                ledger_return_id TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(connection_id, external_order_id, compensation_key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sales_ledger_lines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL,
                external_order_id TEXT NOT NULL,
                sku TEXT NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity >= 0),
                UNIQUE(connection_id, external_order_id, sku)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS compensation_lines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL,
                external_order_id TEXT NOT NULL,
                compensation_key TEXT NOT NULL,
                sku TEXT NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity >= 0),
                UNIQUE(connection_id, external_order_id, compensation_key, sku)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS inventory_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL,
                sku TEXT NOT NULL,
                product_id TEXT,
                product_name TEXT,
                quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
                unit_price TEXT NOT NULL DEFAULT '0',
                last_synced_at TEXT NOT NULL,
                UNIQUE(connection_id, sku)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL,
                external_order_id TEXT,
                category TEXT NOT NULL,
                error_type TEXT NOT NULL,
                message TEXT NOT NULL,
                context TEXT NOT NULL DEFAULT '{}',
                recovery_attempts INTEGER NOT NULL DEFAULT 0,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at TEXT,
                auto_recovered INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'OPEN',
                requires_manual_intervention INTEGER NOT NULL DEFAULT 0,
                last_recovery_at TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_failures_open
            ON sync_failures(resolved, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_failures_connection
            ON sync_failures(connection_id)
        """)

        conn.commit()
        logger.info(f"Sync engine tables initialized at {db_path}")

    finally:
        conn.close()


# =============================================================================
# Connections
# =============================================================================

def _row_to_connection(row: sqlite3.Row) -> Connection:
    return Connection(
        id=row["id"],
        platform=row["platform"],
        store_identifier=row["store_identifier"],
        credentials=json.loads(row["credentials"] or "{}"),
        enabled=bool(row["enabled"]),
        last_synced_at=_dt(row["last_synced_at"]),
        created_at=_dt(row["created_at"]),
    )


def create_connection(
    platform: str,
    store_identifier: str,
    credentials: Optional[Dict[str, Any]] = None,
    enabled: bool = True,
    db_path: Path = DEFAULT_DB_PATH,
) -> Connection:
    """Register a storefront connection.

    Connections are normally created by the external setup flow; this exists
    for that flow, the CLI and tests.
    """
    now = _now()
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO connections (platform, store_identifier, credentials, enabled, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (platform, store_identifier, json.dumps(credentials or {}), int(enabled), now))
        conn.commit()
        return Connection(
            id=cursor.lastrowid,
            platform=platform,
            store_identifier=store_identifier,
            credentials=credentials or {},
            enabled=enabled,
            created_at=datetime.fromisoformat(now),
        )
    finally:
        conn.close()


def get_connection(connection_id: int, db_path: Path = DEFAULT_DB_PATH) -> Optional[Connection]:
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM connections WHERE id = ?", (connection_id,)).fetchone()
        return _row_to_connection(row) if row else None
    finally:
        conn.close()


def list_connections(enabled_only: bool = False, db_path: Path = DEFAULT_DB_PATH) -> List[Connection]:
    """List connections in id order."""
    conn = _connect(db_path)
    try:
        query = "SELECT * FROM connections"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY id"
        return [_row_to_connection(row) for row in conn.execute(query).fetchall()]
    finally:
        conn.close()


def _normalize_store(identifier: str) -> str:
    value = identifier.strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.rstrip("/")


def find_connection_by_store(
    platform: str,
    store_identifier: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[Connection]:
    """Find a connection by platform and shop domain / store URL.

    Scheme and trailing slash are ignored.
    """
    wanted = _normalize_store(store_identifier)
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM connections WHERE platform = ? ORDER BY id", (platform,)
        ).fetchall()
    finally:
        conn.close()
    for row in rows:
        if _normalize_store(row["store_identifier"]) == wanted:
            return _row_to_connection(row)
    return None


def set_connection_enabled(connection_id: int, enabled: bool, db_path: Path = DEFAULT_DB_PATH) -> bool:
    conn = _connect(db_path)
    try:
        cursor = conn.execute(
            "UPDATE connections SET enabled = ? WHERE id = ?", (int(enabled), connection_id)
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def update_last_synced(
    connection_id: int,
    synced_at: Optional[datetime] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> None:
    """Set Connection.last_synced_at (the engine's only write to connections)."""
    conn = _connect(db_path)
    try:
        conn.execute(
            "UPDATE connections SET last_synced_at = ? WHERE id = ?",
            ((synced_at or datetime.utcnow()).isoformat(), connection_id),
        )
        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Sales Ledger
# =============================================================================

def _row_to_sales_entry(row: sqlite3.Row) -> SalesLedgerEntry:
    return SalesLedgerEntry(
        id=row["id"],
        connection_id=row["connection_id"],
        external_order_id=row["external_order_id"],
        order_number=row["order_number"],
        total_amount=Decimal(row["total_amount"]),
        currency=row["currency"],
        status=row["status"],
        order_date=datetime.fromisoformat(row["order_date"]),
        customer_name=row["customer_name"],
        customer_email=row["customer_email"],
        ledger_transaction_id=row["ledger_transaction_id"],
        created_at=_dt(row["created_at"]),
    )


def get_sales_entry(
    connection_id: int,
    external_order_id: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[SalesLedgerEntry]:
    """Look up the idempotency record for an order."""
    conn = _connect(db_path)
    try:
        row = conn.execute("""
            SELECT * FROM sales_ledger
            WHERE connection_id = ? AND external_order_id = ?
        """, (connection_id, external_order_id)).fetchone()
        return _row_to_sales_entry(row) if row else None
    finally:
        conn.close()


def insert_sales_entry(
    entry: SalesLedgerEntry,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[SalesLedgerEntry]:
    """Insert the idempotency record for a mirrored order.

    Returns:
        The stored entry, or None if one already exists for
        (connection_id, external_order_id)
    """
    now = _now()
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO sales_ledger
            (connection_id, external_order_id, order_number, total_amount, currency,
             status, order_date, customer_name, customer_email, ledger_transaction_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.connection_id,
            entry.external_order_id,
            entry.order_number,
            str(entry.total_amount),
            entry.currency,
            entry.status,
            entry.order_date.isoformat(),
            entry.customer_name,
            entry.customer_email,
            entry.ledger_transaction_id,
            now,
        ))
        sales_id = cursor.lastrowid
        conn.executemany("""
            INSERT INTO sales_ledger_lines (connection_id, external_order_id, sku, quantity)
            VALUES (?, ?, ?, ?)
        """, [
            (entry.connection_id, entry.external_order_id, sku, quantity)
            for sku, quantity in entry.quantities.items()
        ])
        conn.commit()
    except sqlite3.IntegrityError:
        return None
    finally:
        conn.close()

    return entry.model_copy(update={"id": sales_id, "created_at": datetime.fromisoformat(now)})


def attach_ledger_transaction_id(
    connection_id: int,
    external_order_id: str,
    ledger_transaction_id: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> bool:
    """Attach the ledger sale id to an entry that has none (the only permitted mutation)."""
    conn = _connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE sales_ledger SET ledger_transaction_id = ?
            WHERE connection_id = ? AND external_order_id = ? AND ledger_transaction_id IS NULL
        """, (ledger_transaction_id, connection_id, external_order_id))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def list_sales_entries(
    connection_id: Optional[int] = None,
    limit: int = 100,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[SalesLedgerEntry]:
    conn = _connect(db_path)
    try:
        if connection_id is None:
            rows = conn.execute(
                "SELECT * FROM sales_ledger ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM sales_ledger WHERE connection_id = ? ORDER BY id DESC LIMIT ?",
                (connection_id, limit),
            ).fetchall()
        return [_row_to_sales_entry(row) for row in rows]
    finally:
        conn.close()



def sold_quantities(
    connection_id: int,
    external_order_id: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Dict[str, int]:
    """Units sold per SKU for a mirrored order (empty if none were recorded)."""
    conn = _connect(db_path)
    try:
        rows = conn.execute("""
            SELECT sku, quantity FROM sales_ledger_lines
            WHERE connection_id = ? AND external_order_id = ?
        """, (connection_id, external_order_id)).fetchall()
        return {row["sku"]: row["quantity"] for row in rows}
    finally:
        conn.close()


# =============================================================================
# Compensation Ledger
# =============================================================================

def get_compensation_entry(
    connection_id: int,
    external_order_id: str,
    compensation_key: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[CompensationEntry]:
    conn = _connect(db_path)
    try:
        row = conn.execute("""
            SELECT * FROM compensation_ledger
            WHERE connection_id = ? AND external_order_id = ? AND compensation_key = ?
        """, (connection_id, external_order_id, compensation_key)).fetchone()
        if not row:
            return None
        return CompensationEntry(
            id=row["id"],
            connection_id=row["connection_id"],
            external_order_id=row["external_order_id"],
            compensation_key=row["compensation_key"],
            kind=RefundKind(row["kind"]),
            ledger_return_id=row["ledger_return_id"],
            created_at=_dt(row["created_at"]),
        )
    finally:
        conn.close()


def insert_compensation_entry(
    entry: CompensationEntry,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[CompensationEntry]:
    """Record a completed reversal; returns None if it was already recorded.

    The entry and its per-SKU quantities are written in one transaction.
    """
    now = _now()
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO compensation_ledger
            (connection_id, external_order_id, compensation_key, kind, ledger_return_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            entry.connection_id,
            entry.external_order_id,
            entry.compensation_key,
            entry.kind.value,
            entry.ledger_return_id,
            now,
        ))
        compensation_id = cursor.lastrowid
        conn.executemany("""
            INSERT INTO compensation_lines
            (connection_id, external_order_id, compensation_key, sku, quantity)
            VALUES (?, ?, ?, ?, ?)
        """, [
            (entry.connection_id, entry.external_order_id, entry.compensation_key, sku, quantity)
            for sku, quantity in entry.quantities.items()
        ])
        conn.commit()
    except sqlite3.IntegrityError:
        return None
    finally:
        conn.close()

    return entry.model_copy(update={"id": compensation_id, "created_at": datetime.fromisoformat(now)})


def returned_quantities(
    connection_id: int,
    external_order_id: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Dict[str, int]:
    """Units already returned per SKU for an order, across every reversal."""
    conn = _connect(db_path)
    try:
        rows = conn.execute("""
            SELECT sku, SUM(quantity) AS quantity FROM compensation_lines
            WHERE connection_id = ? AND external_order_id = ?
            GROUP BY sku
        """, (connection_id, external_order_id)).fetchall()
        return {row["sku"]: row["quantity"] for row in rows}
    finally:
        conn.close()


# =============================================================================
# Inventory Snapshots
# =============================================================================

def _row_to_snapshot(row: sqlite3.Row) -> InventorySnapshot:
    return InventorySnapshot(
        id=row["id"],
        connection_id=row["connection_id"],
        sku=row["sku"],
        product_id=row["product_id"],
        product_name=row["product_name"],
        quantity=row["quantity"],
        unit_price=Decimal(row["unit_price"]),
        last_synced_at=_dt(row["last_synced_at"]),
    )


def get_snapshot(
    connection_id: int,
    sku: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[InventorySnapshot]:
    conn = _connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM inventory_snapshots WHERE connection_id = ? AND sku = ?",
            (connection_id, sku),
        ).fetchone()
        return _row_to_snapshot(row) if row else None
    finally:
        conn.close()


def list_snapshots(connection_id: int, db_path: Path = DEFAULT_DB_PATH) -> List[InventorySnapshot]:
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM inventory_snapshots WHERE connection_id = ? ORDER BY sku",
            (connection_id,),
        ).fetchall()
        return [_row_to_snapshot(row) for row in rows]
    finally:
        conn.close()


def upsert_snapshot(
    connection_id: int,
    sku: str,
    quantity: int,
    product_id: Optional[str] = None,
    product_name: Optional[str] = None,
    unit_price: Optional[Decimal] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> InventorySnapshot:
    """Create or update a snapshot; quantity is clamped to >= 0 and last_synced_at set."""
    now = _now()
    quantity = max(0, int(quantity))
    conn = _connect(db_path)
    try:
        conn.execute("""
            INSERT INTO inventory_snapshots
            (connection_id, sku, product_id, product_name, quantity, unit_price, last_synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(connection_id, sku) DO UPDATE SET
                quantity = excluded.quantity,
                product_id = COALESCE(excluded.product_id, inventory_snapshots.product_id),
                product_name = COALESCE(excluded.product_name, inventory_snapshots.product_name),
                unit_price = CASE WHEN ? IS NULL THEN inventory_snapshots.unit_price
                                  ELSE excluded.unit_price END,
                last_synced_at = excluded.last_synced_at
        """, (
            connection_id,
            sku,
            product_id,
            product_name,
            quantity,
            str(unit_price if unit_price is not None else Decimal("0")),
            now,
            None if unit_price is None else str(unit_price),
        ))
        conn.commit()
        row = conn.execute(
            "SELECT * FROM inventory_snapshots WHERE connection_id = ? AND sku = ?",
            (connection_id, sku),
        ).fetchone()
        return _row_to_snapshot(row)
    finally:
        conn.close()


def adjust_snapshot(
    connection_id: int,
    sku: str,
    delta: int,
    db_path: Path = DEFAULT_DB_PATH,
) -> Optional[InventorySnapshot]:
    """Add delta to a snapshot's quantity (clamped at zero).

    Returns:
        The updated snapshot, or None if no snapshot exists for the SKU
    """
    conn = _connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE inventory_snapshots
            SET quantity = MAX(0, quantity + ?), last_synced_at = ?
            WHERE connection_id = ? AND sku = ?
        """, (int(delta), _now(), connection_id, sku))
        conn.commit()
        if cursor.rowcount == 0:
            return None
        row = conn.execute(
            "SELECT * FROM inventory_snapshots WHERE connection_id = ? AND sku = ?",
            (connection_id, sku),
        ).fetchone()
        return _row_to_snapshot(row)
    finally:
        conn.close()


# =============================================================================
# Sync Failures
# =============================================================================

def _row_to_failure(row: sqlite3.Row) -> SyncFailure:
    return SyncFailure(
        id=row["id"],
        connection_id=row["connection_id"],
        external_order_id=row["external_order_id"],
        category=ErrorCategory(row["category"]),
        error_type=row["error_type"],
        message=row["message"],
        context=json.loads(row["context"] or "{}"),
        recovery_attempts=row["recovery_attempts"],
        resolved=bool(row["resolved"]),
        resolved_at=_dt(row["resolved_at"]),
        auto_recovered=bool(row["auto_recovered"]),
        status=FailureStatus(row["status"]),
        requires_manual_intervention=bool(row["requires_manual_intervention"]),
        last_recovery_at=_dt(row["last_recovery_at"]),
        created_at=_dt(row["created_at"]),
    )


def insert_failure(failure: SyncFailure, db_path: Path = DEFAULT_DB_PATH) -> SyncFailure:
    """Persist a new failure record."""
    now = _now()
    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO sync_failures
            (connection_id, external_order_id, category, error_type, message, context,
             recovery_attempts, resolved, auto_recovered, status,
             requires_manual_intervention, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, 0, 0, ?, ?, ?)
        """, (
            failure.connection_id,
            failure.external_order_id,
            failure.category.value,
            failure.error_type,
            failure.message,
            json.dumps(failure.context, default=str),
            failure.status.value,
            int(failure.requires_manual_intervention),
            now,
        ))
        conn.commit()
        return failure.model_copy(update={
            "id": cursor.lastrowid,
            "created_at": datetime.fromisoformat(now),
            "recovery_attempts": 0,
            "resolved": False,
        })
    finally:
        conn.close()


def get_failure(failure_id: int, db_path: Path = DEFAULT_DB_PATH) -> Optional[SyncFailure]:
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM sync_failures WHERE id = ?", (failure_id,)).fetchone()
        return _row_to_failure(row) if row else None
    finally:
        conn.close()


def list_failures(
    failure_filter: Optional[FailureFilter] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[SyncFailure]:
    """List failures, newest first."""
    failure_filter = failure_filter or FailureFilter()
    clauses = []
    params: List[Any] = []
    if failure_filter.connection_id is not None:
        clauses.append("connection_id = ?")
        params.append(failure_filter.connection_id)
    if failure_filter.resolved is not None:
        clauses.append("resolved = ?")
        params.append(int(failure_filter.resolved))
    if failure_filter.category is not None:
        clauses.append("category = ?")
        params.append(failure_filter.category.value)
    if failure_filter.status is not None:
        clauses.append("status = ?")
        params.append(failure_filter.status.value)

    query = "SELECT * FROM sync_failures"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(failure_filter.limit)

    conn = _connect(db_path)
    try:
        return [_row_to_failure(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def list_recoverable_failures(
    connection_id: Optional[int] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[SyncFailure]:
    """Unresolved failures still eligible for automatic recovery, oldest first."""
    query = (
        "SELECT * FROM sync_failures WHERE resolved = 0 AND status IN (?, ?)"
    )
    params: List[Any] = list(RECOVERABLE_STATUSES)
    if connection_id is not None:
        query += " AND connection_id = ?"
        params.append(connection_id)
    query += " ORDER BY id"

    conn = _connect(db_path)
    try:
        return [_row_to_failure(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def begin_recovery(failure_id: int, db_path: Path = DEFAULT_DB_PATH) -> Optional[SyncFailure]:
    """Increment recovery_attempts and mark RETRYING before any retry runs.

    Returns:
        The updated failure, or None if it is resolved or escalated
    """
    conn = _connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE sync_failures
            SET recovery_attempts = recovery_attempts + 1,
                status = ?,
                last_recovery_at = ?
            WHERE id = ? AND resolved = 0 AND status IN (?, ?)
        """, (FailureStatus.RETRYING.value, _now(), failure_id, *RECOVERABLE_STATUSES))
        conn.commit()
        if cursor.rowcount == 0:
            return None
        row = conn.execute("SELECT * FROM sync_failures WHERE id = ?", (failure_id,)).fetchone()
        return _row_to_failure(row)
    finally:
        conn.close()


def record_recovery_attempt(failure_id: int, db_path: Path = DEFAULT_DB_PATH) -> bool:
    """Count one more attempt of a pass already started by begin_recovery()."""
    conn = _connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE sync_failures
            SET recovery_attempts = recovery_attempts + 1, last_recovery_at = ?
            WHERE id = ? AND resolved = 0 AND status = ?
        """, (_now(), failure_id, FailureStatus.RETRYING.value))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def mark_failure_resolved(
    failure_id: int,
    auto_recovered: bool,
    context: Optional[Dict[str, Any]] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> bool:
    """Resolve a failure. Resolved records are never touched again.

    Returns:
        True if this call resolved it, False if it was already resolved or missing
    """
    conn = _connect(db_path)
    try:
        if context is None:
            cursor = conn.execute("""
                UPDATE sync_failures
                SET resolved = 1, resolved_at = ?, auto_recovered = ?, status = ?
                WHERE id = ? AND resolved = 0
            """, (_now(), int(auto_recovered), FailureStatus.RESOLVED.value, failure_id))
        else:
            cursor = conn.execute("""
                UPDATE sync_failures
                SET resolved = 1, resolved_at = ?, auto_recovered = ?, status = ?, context = ?
                WHERE id = ? AND resolved = 0
            """, (
                _now(),
                int(auto_recovered),
                FailureStatus.RESOLVED.value,
                json.dumps(context, default=str),
                failure_id,
            ))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def mark_failure_unresolved(
    failure_id: int,
    status: FailureStatus,
    requires_manual_intervention: bool,
    context: Dict[str, Any],
    db_path: Path = DEFAULT_DB_PATH,
) -> bool:
    """Record the end of an unsuccessful recovery pass (OPEN or ESCALATED)."""
    conn = _connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE sync_failures
            SET status = ?, requires_manual_intervention = ?, context = ?
            WHERE id = ? AND resolved = 0
        """, (
            status.value,
            int(requires_manual_intervention),
            json.dumps(context, default=str),
            failure_id,
        ))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def failure_counts(
    connection_id: Optional[int] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> Dict[str, Any]:
    """Aggregate failure counts (total, resolved, escalated, per category)."""
    where = ""
    params: List[Any] = []
    if connection_id is not None:
        where = " WHERE connection_id = ?"
        params.append(connection_id)

    conn = _connect(db_path)
    try:
        row = conn.execute(f"""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(resolved), 0) AS resolved,
                   COALESCE(SUM(auto_recovered), 0) AS auto_recovered,
                   COALESCE(SUM(CASE WHEN status = 'ESCALATED' THEN 1 ELSE 0 END), 0) AS escalated
            FROM sync_failures{where}
        """, params).fetchone()
        by_category = {
            r["category"]: r["n"]
            for r in conn.execute(
                f"SELECT category, COUNT(*) AS n FROM sync_failures{where} GROUP BY category",
                params,
            ).fetchall()
        }
        return {
            "total": row["total"],
            "resolved": row["resolved"],
            "auto_recovered": row["auto_recovered"],
            "escalated": row["escalated"],
            "by_category": by_category,
        }
    finally:
        conn.close()

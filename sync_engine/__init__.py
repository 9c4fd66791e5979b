"""Sync Engine - keeps storefront orders and stock consistent with the ledger.

This package provides:
- Order mirroring: paid storefront orders become ledger sales exactly once
- Compensation: cancellations and refunds become ledger returns, stock restored
- Reconciliation: ledger stock pushed to storefronts on a schedule
- Recovery: classified failures retried per category, escalated when hopeless

Key Features:
- Idempotency from the persisted sales ledger (UNIQUE per connection and order)
- Change-only stock pushes using per-SKU snapshots
- Durable failure records with attempt counters and manual-intervention flags

Usage:
    from sync_engine import SyncEngine

    engine = SyncEngine.from_settings()
    result = await engine.process_order_event(connection_id, order)
    if not result.processed:
        print(result.reason)
"""

from sync_engine.models import (
    ErrorCategory,
    FailureStatus,
    Operation,
    SalesLedgerEntry,
    InventorySnapshot,
    CompensationEntry,
    SyncFailure,
    FailureFilter,
    OrderSyncResult,
    OrderBatchResult,
    CompensationResult,
    SkuQuantity,
    ConnectionReconcileResult,
    ReconciliationRunResult,
    CatalogPushResult,
    RecoveryResult,
    RecoveryRunResult,
    RecoveryStats,
)
from sync_engine.errors import (
    SyncError,
    MappingFailed,
    ConnectionNotFound,
    RecoveryActionError,
    classify_failure,
)
from sync_engine.engine import SyncEngine, get_engine, set_engine
from sync_engine.recovery import STRATEGIES, RetryStrategy
from sync_engine.db import init_sync_db

__all__ = [
    # Engine
    "SyncEngine",
    "get_engine",
    "set_engine",
    "init_sync_db",
    # Models
    "ErrorCategory",
    "FailureStatus",
    "Operation",
    "SalesLedgerEntry",
    "InventorySnapshot",
    "CompensationEntry",
    "SyncFailure",
    "FailureFilter",
    "OrderSyncResult",
    "OrderBatchResult",
    "CompensationResult",
    "SkuQuantity",
    "ConnectionReconcileResult",
    "ReconciliationRunResult",
    "CatalogPushResult",
    "RecoveryResult",
    "RecoveryRunResult",
    "RecoveryStats",
    # Errors
    "SyncError",
    "MappingFailed",
    "ConnectionNotFound",
    "RecoveryActionError",
    "classify_failure",
    # Recovery
    "STRATEGIES",
    "RetryStrategy",
]

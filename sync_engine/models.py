"""Sync Engine Data Models.

This module defines the persisted records and operation results:
- SalesLedgerEntry: proof that an order was mirrored into the ledger
- InventorySnapshot: last synced quantity per (connection, SKU)
- CompensationEntry: proof that a cancellation/refund was reversed
- SyncFailure: a classified, possibly-recovering error

Storefront-side shapes (Connection, NormalizedOrder, RefundEvent) live at the
adapter boundary in connectors/platform_base.py and are re-exported here.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.platform_base import (
    Connection,
    NormalizedOrder,
    OrderLine,
    PaymentState,
    RefundEvent,
    RefundKind,
    RefundLine,
)


# =============================================================================
# Enums
# =============================================================================

class ErrorCategory(str, Enum):
    """Failure taxonomy; every category has exactly one recovery policy."""
    NETWORK_TIMEOUT = "NetworkTimeout"
    RATE_LIMIT = "RateLimit"
    AUTH_ERROR = "AuthError"
    PRODUCT_NOT_FOUND = "ProductNotFound"
    MAPPING_FAILED = "MappingFailed"
    INVENTORY_SYNC_ERROR = "InventorySyncError"
    ORDER_PROCESSING_ERROR = "OrderProcessingError"
    REFUND_FAILED = "RefundFailed"
    CANCELLATION_FAILED = "CancellationFailed"
    UNKNOWN = "Unknown"


class FailureStatus(str, Enum):
    """SyncFailure state machine.

    OPEN -> RETRYING -> RESOLVED | ESCALATED | OPEN
    RESOLVED and ESCALATED are absorbing.
    """
    OPEN = "OPEN"
    RETRYING = "RETRYING"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class Operation(str, Enum):
    """Which engine operation produced a failure; selects the replay path."""
    ORDER_SYNC = "order_sync"
    INVENTORY_PUSH = "inventory_push"
    REFUND = "refund"
    CANCELLATION = "cancellation"
    PRODUCT_PUSH = "product_push"


# =============================================================================
# Persisted Records
# =============================================================================

class SalesLedgerEntry(BaseModel):
    """Proof that order X of connection C was mirrored into the ledger.

    Attributes:
        external_order_id: Storefront order id (unique per connection)
        order_number: Human order number ("#1001", "500")
        total_amount: Order total as reported by the storefront
        ledger_transaction_id: Ledger sale id; the only field ever updated
        quantities: Units sold per ledger SKU (written with the entry)
    """
    id: Optional[int] = None
    connection_id: int
    external_order_id: str
    order_number: str
    total_amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    status: str = "mirrored"
    order_date: datetime
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    ledger_transaction_id: Optional[str] = None
    quantities: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InventorySnapshot(BaseModel):
    """Last quantity synced for one SKU on one connection."""
    id: Optional[int] = None
    connection_id: int
    sku: str
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: int = Field(default=0, ge=0)
    unit_price: Decimal = Decimal("0")
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CompensationEntry(BaseModel):
    """Proof that a cancellation or refund was reversed in the ledger.

    Attributes:
        quantities: Units returned per ledger SKU by this reversal
    """
    id: Optional[int] = None
    connection_id: int
    external_order_id: str
    compensation_key: str
    kind: RefundKind
    ledger_return_id: Optional[str] = None
    quantities: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class SyncFailure(BaseModel):
    """A persisted, classified error.

    Attributes:
        category: Classified once, when the failure is recorded
        error_type: Tag set by the processor that recorded it
        context: Everything needed to replay the operation (operation name,
            serialized event, SKU/quantity, status code)
        recovery_attempts: Only ever increases
        resolved: Once true, never reset
    """
    id: Optional[int] = None
    connection_id: int
    external_order_id: Optional[str] = None
    category: ErrorCategory
    error_type: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    recovery_attempts: int = 0
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    auto_recovered: bool = False
    status: FailureStatus = FailureStatus.OPEN
    requires_manual_intervention: bool = False
    last_recovery_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def operation(self) -> Optional[str]:
        return self.context.get("operation")


class FailureFilter(BaseModel):
    """Filter for listing failures."""
    connection_id: Optional[int] = None
    resolved: Optional[bool] = None
    category: Optional[ErrorCategory] = None
    status: Optional[FailureStatus] = None
    limit: int = 100


# =============================================================================
# Operation Results
# =============================================================================

class OrderSyncResult(BaseModel):
    """Outcome of one order event.

    processed is False for every no-op (not paid, already processed) and for
    failures; reason says which.
    """
    external_order_id: str
    processed: bool
    reason: Optional[str] = None
    ledger_transaction_id: Optional[str] = None
    unmapped_skus: List[str] = Field(default_factory=list)
    failure_id: Optional[int] = None


class OrderBatchResult(BaseModel):
    """Outcome of pulling and mirroring a connection's recent orders."""
    connection_id: int
    fetched: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    results: List[OrderSyncResult] = Field(default_factory=list)
    error: Optional[str] = None


class SkuQuantity(BaseModel):
    sku: str
    quantity: int


class CompensationResult(BaseModel):
    """Outcome of a cancellation or refund.

    restored lists the quantity added back per SKU (only after the ledger
    return succeeded).
    """
    external_order_id: str
    kind: RefundKind
    processed: bool = False
    reason: Optional[str] = None
    restored: List[SkuQuantity] = Field(default_factory=list)
    failure_id: Optional[int] = None


class ConnectionReconcileResult(BaseModel):
    """Per-connection counts for one reconciliation pass."""
    connection_id: int
    platform: Optional[str] = None
    checked: int = 0
    created: int = 0
    pushed: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped_no_stock: int = 0
    skipped: bool = False
    error: Optional[str] = None


class ReconciliationRunResult(BaseModel):
    """Outcome of a reconciliation run across connections."""
    per_connection: List[ConnectionReconcileResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def total_pushed(self) -> int:
        return sum(r.pushed for r in self.per_connection)

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.per_connection)


class CatalogPushResult(BaseModel):
    """Outcome of pushing the ledger catalog to one storefront."""
    connection_id: int
    total: int = 0
    pushed: int = 0
    failed: int = 0
    error: Optional[str] = None


class RecoveryResult(BaseModel):
    """Outcome of one recovery pass over one failure."""
    failure_id: int
    category: ErrorCategory
    status: FailureStatus
    attempts: int = 0
    requires_manual_intervention: bool = False
    next_step: Optional[str] = None
    last_error: Optional[str] = None


class RecoveryRunResult(BaseModel):
    """Outcome of a recovery sweep."""
    processed: int = 0
    resolved: int = 0
    escalated: int = 0
    still_open: int = 0
    results: List[RecoveryResult] = Field(default_factory=list)

    def add(self, result: RecoveryResult) -> None:
        self.processed += 1
        self.results.append(result)
        if result.status == FailureStatus.RESOLVED:
            self.resolved += 1
        elif result.status == FailureStatus.ESCALATED:
            self.escalated += 1
        else:
            self.still_open += 1


class RecoveryStats(BaseModel):
    """Failure counts for the failures dashboard."""
    total: int = 0
    resolved: int = 0
    unresolved: int = 0
    escalated: int = 0
    auto_recovered: int = 0
    recovery_rate: float = 0.0
    by_category: Dict[str, int] = Field(default_factory=dict)
    recent: List[SyncFailure] = Field(default_factory=list)


__all__ = [
    # Boundary shapes
    "Connection",
    "NormalizedOrder",
    "OrderLine",
    "PaymentState",
    "RefundEvent",
    "RefundKind",
    "RefundLine",
    # Enums
    "ErrorCategory",
    "FailureStatus",
    "Operation",
    # Records
    "SalesLedgerEntry",
    "InventorySnapshot",
    "CompensationEntry",
    "SyncFailure",
    "FailureFilter",
    # Results
    "OrderSyncResult",
    "OrderBatchResult",
    "SkuQuantity",
    "CompensationResult",
    "ConnectionReconcileResult",
    "ReconciliationRunResult",
    "CatalogPushResult",
    "RecoveryResult",
    "RecoveryRunResult",
    "RecoveryStats",
]

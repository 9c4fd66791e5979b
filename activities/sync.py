"""Sync activities for the storefront/ledger pipeline.

Temporal activities wrapping the SyncEngine operations. Inputs and outputs
are plain dataclasses and dicts so they serialize with the default data
converter. Engine processors record their own failures, so these
activities only raise for errors that are not per-item (unknown
connection, bad payload).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from temporalio import activity

from core.observability.logging import with_correlation
from sync_engine import get_engine
from sync_engine.models import NormalizedOrder, RefundEvent, RefundKind


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class OrderEventInput:
    """Input for mirror_order activity.

    Attributes:
        connection_id: Connection the order belongs to
        order: Serialized NormalizedOrder
    """
    connection_id: int
    order: Dict[str, Any]


@dataclass
class CompensationInput:
    """Input for compensate_order activity.

    Attributes:
        connection_id: Connection the order belongs to
        event: Serialized RefundEvent (cancellation or refund)
    """
    connection_id: int
    event: Dict[str, Any]


@dataclass
class ReconcileInput:
    """Input for reconcile_inventory activity (all enabled connections if None)."""
    connection_id: Optional[int] = None


@dataclass
class RecoverInput:
    """Input for recover_failures activity."""
    connection_id: Optional[int] = None
    failure_id: Optional[int] = None


@dataclass
class SyncOrdersInput:
    connection_id: int


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def mirror_order(input: OrderEventInput) -> Dict[str, Any]:
    """Mirror one storefront order into the ledger.

    Returns:
        Serialized OrderSyncResult
    """
    order = NormalizedOrder.model_validate(input.order)
    activity.logger.info(f"Mirroring order {order.external_order_id} for connection {input.connection_id}")
    with with_correlation(activity_name="mirror_order", workflow_id=activity.info().workflow_id):
        result = await get_engine().process_order_event(input.connection_id, order)
    return result.model_dump(mode="json")


@activity.defn
async def compensate_order(input: CompensationInput) -> Dict[str, Any]:
    """Reverse a cancelled or refunded order in the ledger.

    Returns:
        Serialized CompensationResult
    """
    event = RefundEvent.model_validate(input.event)
    activity.logger.info(
        f"Compensating order {event.external_order_id} ({event.kind.value}) "
        f"for connection {input.connection_id}"
    )
    engine = get_engine()
    with with_correlation(activity_name="compensate_order", workflow_id=activity.info().workflow_id):
        if event.kind == RefundKind.CANCELLATION:
            result = await engine.process_cancellation(input.connection_id, event)
        else:
            result = await engine.process_refund(input.connection_id, event)
    return result.model_dump(mode="json")


@activity.defn
async def reconcile_inventory(input: ReconcileInput) -> Dict[str, Any]:
    """Push ledger stock levels to storefronts.

    Returns:
        Serialized ReconciliationRunResult
    """
    activity.logger.info(f"Reconciling inventory (connection: {input.connection_id or 'all'})")
    with with_correlation(activity_name="reconcile_inventory", workflow_id=activity.info().workflow_id):
        run = await get_engine().run_reconciliation(input.connection_id)
    return run.model_dump(mode="json")


@activity.defn
async def recover_failures(input: RecoverInput) -> Dict[str, Any]:
    """Run a recovery pass over recoverable failures.

    Returns:
        Serialized RecoveryRunResult
    """
    def heartbeat(failure) -> None:
        activity.heartbeat(f"Recovering failure #{failure.id}")

    with with_correlation(activity_name="recover_failures", workflow_id=activity.info().workflow_id):
        run = await get_engine().recover_failures(
            failure_id=input.failure_id,
            connection_id=input.connection_id,
            on_progress=heartbeat,
        )
    activity.logger.info(f"Recovery pass: {run.resolved} resolved, {run.escalated} escalated")
    return run.model_dump(mode="json")


@activity.defn
async def sync_recent_orders(input: SyncOrdersInput) -> Dict[str, Any]:
    """Pull recent orders from one storefront and mirror them.

    Returns:
        Serialized OrderBatchResult
    """
    with with_correlation(activity_name="sync_recent_orders", workflow_id=activity.info().workflow_id):
        batch = await get_engine().sync_orders(input.connection_id)
    activity.logger.info(
        f"Order sync for connection {input.connection_id}: "
        f"{batch.processed} mirrored, {batch.failed} failed"
    )
    return batch.model_dump(mode="json")

"""Compensation Processor.

Reverses the ledger effect of a mirrored order when the storefront cancels
it (all lines) or refunds part of it (the refunded lines only).

Order of effects:
1. The ledger return is recorded against the original sale
2. A CompensationEntry row makes any replay of the same event a no-op
3. Only then is each SKU's snapshot increased and pushed to the storefront

Each SKU is returned at most up to the units sold less the units earlier
reversals of the same order already returned, so a cancellation after a
partial refund only returns the remainder.

An order that was never mirrored has nothing to reverse and is a no-op.
"""

import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Optional

from connectors.ledger_base import LedgerConnector
from connectors.platform_base import PlatformAdapter
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from sync_engine import db
from sync_engine.errors import SyncError
from sync_engine.failures import FailureRecorder
from sync_engine.mapping import (
    MappingOutcome,
    ResolvedLine,
    build_return_request,
    external_reference,
    resolve_products,
)
from sync_engine.models import (
    CompensationEntry,
    CompensationResult,
    Connection,
    ErrorCategory,
    Operation,
    RefundEvent,
    RefundKind,
    SalesLedgerEntry,
    SkuQuantity,
)

logger = get_logger(__name__)

REASON_NOT_MIRRORED = "not_mirrored"
REASON_ALREADY_COMPENSATED = "already_compensated"
REASON_NOTHING_TO_RETURN = "nothing_to_return"
REASON_ALREADY_RETURNED = "already_returned"
REASON_FAILED = "failed"


def _operation_for(kind: RefundKind) -> Operation:
    return Operation.CANCELLATION if kind == RefundKind.CANCELLATION else Operation.REFUND


def _category_for(kind: RefundKind) -> ErrorCategory:
    if kind == RefundKind.CANCELLATION:
        return ErrorCategory.CANCELLATION_FAILED
    return ErrorCategory.REFUND_FAILED


class CompensationProcessor:
    """Applies cancellations and refunds to the ledger and restores stock."""

    def __init__(
        self,
        ledger: LedgerConnector,
        recorder: FailureRecorder,
        db_path: Path,
    ):
        self.ledger = ledger
        self.recorder = recorder
        self.db_path = db_path

    async def _transaction_id(self, connection: Connection, entry: SalesLedgerEntry) -> str:
        if entry.ledger_transaction_id:
            return entry.ledger_transaction_id

        reference = external_reference(connection.platform, entry.external_order_id)
        sale = await self.ledger.find_sale_by_reference(reference)
        if sale is None or not sale.transaction_id:
            raise SyncError(
                f"Ledger sale for order {entry.external_order_id} not found (reference {reference})"
            )
        db.attach_ledger_transaction_id(
            connection.id, entry.external_order_id, sale.transaction_id, db_path=self.db_path
        )
        logger.info(f"Attached ledger sale {sale.transaction_id} to order {entry.external_order_id}")
        return sale.transaction_id

    def _cap_to_remaining(
        self,
        connection: Connection,
        event: RefundEvent,
        outcome: MappingOutcome,
    ) -> MappingOutcome:
        """Limit each SKU to what was sold minus what earlier events returned.

        Entries written without per-SKU quantities are not capped.
        """
        sold = db.sold_quantities(connection.id, event.external_order_id, db_path=self.db_path)
        if not sold:
            return outcome

        returned = db.returned_quantities(connection.id, event.external_order_id, db_path=self.db_path)
        remaining = {sku: max(0, qty - returned.get(sku, 0)) for sku, qty in sold.items()}

        capped = MappingOutcome(
            unmapped_skus=list(outcome.unmapped_skus),
            skipped_without_sku=outcome.skipped_without_sku,
        )
        for resolved in outcome.resolved:
            sku = resolved.product.sku
            take = min(resolved.line.quantity, remaining.get(sku, 0))
            if take <= 0:
                continue
            remaining[sku] -= take
            line = resolved.line
            if take != line.quantity:
                logger.info(f"Capping return of SKU {sku} at {take} (requested {line.quantity})")
                line = line.model_copy(update={"quantity": take})
            capped.resolved.append(ResolvedLine(line=line, product=resolved.product))
        return capped

    async def compensate(
        self,
        connection: Connection,
        event: RefundEvent,
        adapter: PlatformAdapter,
    ) -> CompensationResult:
        """Reverse the event in the ledger and restore inventory. Raises on failure.

        A failed storefront push after a successful return does not raise; it
        is recorded as an InventorySyncError so only the push is retried.

        Args:
            connection: Connection the order belongs to
            event: Normalized cancellation or refund
            adapter: Storefront adapter used to push restored quantities
        """
        result = CompensationResult(external_order_id=event.external_order_id, kind=event.kind)

        entry = db.get_sales_entry(connection.id, event.external_order_id, db_path=self.db_path)
        if entry is None:
            logger.info(f"Order {event.external_order_id} was never mirrored, nothing to reverse")
            result.reason = REASON_NOT_MIRRORED
            return result

        key = event.compensation_key
        if db.get_compensation_entry(connection.id, event.external_order_id, key, db_path=self.db_path):
            logger.info(f"Order {event.external_order_id} {key} already compensated, skipping")
            result.reason = REASON_ALREADY_COMPENSATED
            return result

        outcome = await resolve_products(self.ledger, event.lines)
        if not outcome.resolved:
            logger.warning(f"No returnable lines on {key} for order {event.external_order_id}")
            result.reason = REASON_NOTHING_TO_RETURN
            return result

        outcome = self._cap_to_remaining(connection, event, outcome)
        if not outcome.resolved:
            logger.info(f"Order {event.external_order_id} has no units left to return for {key}")
            result.reason = REASON_ALREADY_RETURNED
            return result

        transaction_id = await self._transaction_id(connection, entry)

        request = build_return_request(transaction_id, event, outcome)
        returned = await self.ledger.record_return(request)

        quantities: "OrderedDict[str, int]" = OrderedDict()
        for line in request.lines:
            quantities[line.sku] = quantities.get(line.sku, 0) + line.quantity

        stored = db.insert_compensation_entry(
            CompensationEntry(
                connection_id=connection.id,
                external_order_id=event.external_order_id,
                compensation_key=key,
                kind=event.kind,
                ledger_return_id=returned.return_id,
                quantities=dict(quantities),
            ),
            db_path=self.db_path,
        )
        if stored is None:
            logger.warning(f"Order {event.external_order_id} {key} was compensated concurrently")
            result.reason = REASON_ALREADY_COMPENSATED
            return result

        for sku, quantity in quantities.items():
            await self._restore(connection, adapter, sku, quantity)
            result.restored.append(SkuQuantity(sku=sku, quantity=quantity))

        result.processed = True
        logger.info(
            f"Compensated order {event.external_order_id} ({key}) with ledger return {returned.return_id}",
            extra_fields={"skus": len(quantities)},
        )
        return result

    async def _restore(
        self,
        connection: Connection,
        adapter: PlatformAdapter,
        sku: str,
        quantity: int,
    ) -> None:
        snapshot = db.adjust_snapshot(connection.id, sku, quantity, db_path=self.db_path)
        if snapshot is None:
            logger.info(f"No snapshot for SKU {sku}; next reconciliation will set it")
            return

        metrics = get_metrics()
        try:
            await adapter.set_stock_level(connection, sku, snapshot.quantity)
        except Exception as e:
            metrics.record_stock_push_failed()
            self.recorder.record(
                connection.id,
                e,
                ErrorCategory.INVENTORY_SYNC_ERROR,
                {
                    "operation": Operation.INVENTORY_PUSH.value,
                    "sku": sku,
                    "quantity": snapshot.quantity,
                    "product_id": snapshot.product_id,
                    "name": snapshot.product_name,
                    "price": str(snapshot.unit_price),
                },
            )
            return
        metrics.record_stock_restored()

    async def process(
        self,
        connection: Connection,
        event: RefundEvent,
        adapter: PlatformAdapter,
    ) -> CompensationResult:
        """Compensate one event; failures are recorded, never raised."""
        start = time.time()
        context: Dict[str, Any] = {
            "operation": _operation_for(event.kind).value,
            "event": event.model_dump(mode="json"),
        }

        with with_correlation(
            connection_id=connection.id,
            platform=connection.platform,
            external_order_id=event.external_order_id,
        ):
            try:
                return await self.compensate(connection, event, adapter)
            except Exception as e:
                failure = self.recorder.record(
                    connection.id,
                    e,
                    _category_for(event.kind),
                    context,
                    external_order_id=event.external_order_id,
                )
                return CompensationResult(
                    external_order_id=event.external_order_id,
                    kind=event.kind,
                    processed=False,
                    reason=REASON_FAILED,
                    failure_id=failure.id,
                )
            finally:
                get_metrics().record_processing_time("compensation", (time.time() - start) * 1000)


def event_from_context(context: Dict[str, Any]) -> Optional[RefundEvent]:
    """Rebuild the RefundEvent stored in a failure's context."""
    payload = context.get("event")
    if not payload:
        return None
    return RefundEvent.model_validate(payload)

"""Order Sync Processor.

Turns one normalized storefront order into exactly one ledger sale.

Gates, in order:
1. Payment gate - only PAID orders are mirrored; anything else is a no-op
2. Idempotency gate - an existing SalesLedgerEntry means already processed
3. Mapping - SKUs resolved through the ledger; zero resolved lines raise MappingFailed

Then the sale is submitted under the deterministic reference
"<platform>-<external_order_id>" and the SalesLedgerEntry row is written.
The storage layer's UNIQUE(connection_id, external_order_id) is the only
lock: losing that race is reported as "already_processed".
"""

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from connectors.ledger_base import LedgerConnector
from connectors.platform_base import PlatformAdapter
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from sync_engine import db
from sync_engine.errors import MappingFailed
from sync_engine.failures import FailureRecorder
from sync_engine.mapping import build_sale_request, resolve_products
from sync_engine.models import (
    Connection,
    ErrorCategory,
    NormalizedOrder,
    Operation,
    OrderBatchResult,
    OrderSyncResult,
    PaymentState,
    SalesLedgerEntry,
)

logger = get_logger(__name__)

REASON_NOT_PAID = "not_paid"
REASON_ALREADY_PROCESSED = "already_processed"
REASON_CONNECTION_DISABLED = "connection_disabled"
REASON_FAILED = "failed"


class OrderSyncProcessor:
    """Mirrors paid storefront orders into the ledger exactly once."""

    def __init__(
        self,
        ledger: LedgerConnector,
        recorder: FailureRecorder,
        db_path: Path,
        location_id: Optional[str] = None,
        contact_id: Optional[int] = None,
        payment_method: str = "cash",
    ):
        self.ledger = ledger
        self.recorder = recorder
        self.db_path = db_path
        self.location_id = location_id
        self.contact_id = contact_id
        self.payment_method = payment_method

    async def mirror(
        self,
        connection: Connection,
        order: NormalizedOrder,
        context: Optional[Dict[str, Any]] = None,
    ) -> OrderSyncResult:
        """Run the gates and submit the sale. Raises on failure.

        Used directly by the recovery engine so that replays never record
        new failures.

        Args:
            connection: Connection the order belongs to
            order: Normalized order
            context: If given, receives the built sale request

        Raises:
            MappingFailed: No line item resolved to a ledger product
            ConnectorError: The ledger lookup or sale call failed
        """
        if order.payment_state != PaymentState.PAID:
            logger.info(f"Order {order.external_order_id} not paid ({order.raw_status}), skipping")
            return OrderSyncResult(
                external_order_id=order.external_order_id,
                processed=False,
                reason=REASON_NOT_PAID,
            )

        if db.get_sales_entry(connection.id, order.external_order_id, db_path=self.db_path):
            logger.info(f"Order {order.external_order_id} already processed, skipping")
            return OrderSyncResult(
                external_order_id=order.external_order_id,
                processed=False,
                reason=REASON_ALREADY_PROCESSED,
            )

        outcome = await resolve_products(self.ledger, order.line_items)
        if not outcome.resolved:
            raise MappingFailed(order.external_order_id, outcome.unmapped_skus)

        request = build_sale_request(
            order,
            outcome,
            location_id=self.location_id,
            contact_id=self.contact_id,
            payment_method=self.payment_method,
        )
        if context is not None:
            context["request"] = request.model_dump(mode="json")

        sale = await self.ledger.record_sale(request)

        quantities: Dict[str, int] = {}
        for line in request.lines:
            quantities[line.sku] = quantities.get(line.sku, 0) + line.quantity

        customer = order.customer or {}
        stored = db.insert_sales_entry(
            SalesLedgerEntry(
                connection_id=connection.id,
                external_order_id=order.external_order_id,
                order_number=order.order_number,
                total_amount=order.total,
                currency=order.currency,
                order_date=order.created_at,
                customer_name=customer.get("name"),
                customer_email=customer.get("email"),
                ledger_transaction_id=sale.transaction_id,
                quantities=quantities,
            ),
            db_path=self.db_path,
        )
        if stored is None:
            # A concurrent delivery won the insert
            logger.warning(
                f"Order {order.external_order_id} was mirrored concurrently; "
                f"ledger sale {sale.transaction_id} shares reference {request.external_reference}"
            )
            return OrderSyncResult(
                external_order_id=order.external_order_id,
                processed=False,
                reason=REASON_ALREADY_PROCESSED,
                ledger_transaction_id=sale.transaction_id,
            )

        logger.info(
            f"Mirrored order {order.external_order_id} as ledger sale {sale.transaction_id}",
            extra_fields={"lines": len(request.lines), "unmapped": len(outcome.unmapped_skus)},
        )
        return OrderSyncResult(
            external_order_id=order.external_order_id,
            processed=True,
            ledger_transaction_id=sale.transaction_id,
            unmapped_skus=outcome.unmapped_skus,
        )

    async def process(self, connection: Connection, order: NormalizedOrder) -> OrderSyncResult:
        """Mirror one order; failures are recorded, never raised."""
        metrics = get_metrics()
        start = time.time()
        context: Dict[str, Any] = {
            "operation": Operation.ORDER_SYNC.value,
            "event": order.model_dump(mode="json"),
        }

        with with_correlation(
            connection_id=connection.id,
            platform=connection.platform,
            external_order_id=order.external_order_id,
        ):
            try:
                result = await self.mirror(connection, order, context)
            except Exception as e:
                tag = (
                    ErrorCategory.MAPPING_FAILED
                    if isinstance(e, MappingFailed)
                    else ErrorCategory.ORDER_PROCESSING_ERROR
                )
                failure = self.recorder.record(
                    connection.id,
                    e,
                    tag,
                    context,
                    external_order_id=order.external_order_id,
                )
                metrics.record_order_failed()
                return OrderSyncResult(
                    external_order_id=order.external_order_id,
                    processed=False,
                    reason=REASON_FAILED,
                    failure_id=failure.id,
                    unmapped_skus=getattr(e, "unmapped_skus", []),
                )
            finally:
                metrics.record_processing_time("order_sync", (time.time() - start) * 1000)

        if result.processed:
            metrics.record_order_mirrored()
        else:
            metrics.record_order_skipped(result.reason or "unknown")
        return result

    async def process_batch(
        self,
        connection: Connection,
        orders: Iterable[NormalizedOrder],
        synced_at: Optional[datetime] = None,
    ) -> OrderBatchResult:
        """Process orders sequentially, then stamp Connection.last_synced_at.

        The timestamp is written whatever the per-order outcomes were.
        """
        batch = OrderBatchResult(connection_id=connection.id)
        try:
            for order in orders:
                batch.fetched += 1
                result = await self.process(connection, order)
                batch.results.append(result)
                if result.processed:
                    batch.processed += 1
                elif result.reason == REASON_FAILED:
                    batch.failed += 1
                else:
                    batch.skipped += 1
        finally:
            db.update_last_synced(connection.id, synced_at, db_path=self.db_path)
        return batch

    async def sync_orders(self, connection: Connection, adapter: PlatformAdapter) -> OrderBatchResult:
        """Pull orders changed since the last sync and mirror them.

        The poll-and-push path; shares every gate with the webhook path.
        A failure to fetch aborts this connection's batch.
        """
        fetch_started = datetime.utcnow()
        with with_correlation(connection_id=connection.id, platform=connection.platform):
            try:
                orders = await adapter.fetch_orders(connection, since=connection.last_synced_at)
            except Exception as e:
                logger.error(f"Fetching orders failed for connection {connection.id}: {e}")
                return OrderBatchResult(connection_id=connection.id, error=str(e))

            logger.info(f"Fetched {len(orders)} orders for connection {connection.id}")
            return await self.process_batch(connection, orders, synced_at=fetch_started)

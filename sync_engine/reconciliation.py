"""Inventory Reconciliation Poller.

Makes each enabled storefront's stock converge on the ledger's quantities.

One run:
1. Ledger stock and catalog are fetched once, shared by every connection
2. Per connection (enabled re-checked first), per ledger product with a stock row:
   - no snapshot: create it, then push (first sync)
   - quantity differs: push, then update the snapshot
   - quantity equal: nothing, no storefront call
3. A failed push is recorded as InventorySyncError; the snapshot is still
   updated so the recovery engine owns the retry

The ledger is the source of truth here; snapshots only tell us what we last
wrote. Products without a stock row have an unknown quantity and are never
pushed as zero.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from connectors.http_client import ConfigurationError
from connectors.ledger_base import LedgerConnector, LedgerProduct, StockRow
from connectors.platform_base import PlatformAdapter
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from sync_engine import db
from sync_engine.errors import ConnectionNotFound
from sync_engine.failures import FailureRecorder
from sync_engine.models import (
    CatalogPushResult,
    Connection,
    ConnectionReconcileResult,
    ErrorCategory,
    Operation,
    ReconciliationRunResult,
)

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]
AdapterFactory = Callable[[str], PlatformAdapter]


class ReconciliationPoller:
    """Pushes ledger stock levels to storefronts, one connection at a time."""

    def __init__(
        self,
        ledger: LedgerConnector,
        adapter_for: AdapterFactory,
        recorder: FailureRecorder,
        db_path: Path,
        location_id: Optional[str] = None,
        write_delay_seconds: float = 0.5,
        sleep: Sleep = asyncio.sleep,
    ):
        self.ledger = ledger
        self.adapter_for = adapter_for
        self.recorder = recorder
        self.db_path = db_path
        self.location_id = location_id
        self.write_delay_seconds = write_delay_seconds
        self.sleep = sleep

    async def _pause(self) -> None:
        if self.write_delay_seconds > 0:
            await self.sleep(self.write_delay_seconds)

    def _target_connections(self, connection_id: Optional[int]) -> List[Connection]:
        if connection_id is None:
            return db.list_connections(enabled_only=True, db_path=self.db_path)
        connection = db.get_connection(connection_id, db_path=self.db_path)
        if connection is None:
            raise ConnectionNotFound(connection_id)
        return [connection]

    async def run(self, connection_id: Optional[int] = None) -> ReconciliationRunResult:
        """Reconcile one connection, or every enabled connection.

        A failure to read the ledger aborts the whole run; each connection
        reports the error.

        Raises:
            ConnectionNotFound: connection_id was given and does not exist
        """
        run = ReconciliationRunResult()
        connections = self._target_connections(connection_id)
        logger.info(f"Reconciliation run started for {len(connections)} connection(s)")

        try:
            stock = await self.ledger.list_stock(self.location_id)
            products = await self.ledger.list_products(self.location_id)
        except Exception as e:
            logger.error(f"Ledger unavailable, aborting reconciliation run: {e}")
            run.error = str(e)
            run.per_connection = [
                ConnectionReconcileResult(connection_id=c.id, platform=c.platform, error=str(e))
                for c in connections
            ]
            run.finished_at = datetime.utcnow()
            return run

        stock_by_sku: Dict[str, StockRow] = {row.sku: row for row in stock}

        for connection in connections:
            # Connections can be disabled while a run is in progress
            current = db.get_connection(connection.id, db_path=self.db_path)
            if current is None or not current.enabled:
                logger.info(f"Connection {connection.id} disabled, skipping")
                run.per_connection.append(
                    ConnectionReconcileResult(
                        connection_id=connection.id, platform=connection.platform, skipped=True
                    )
                )
                continue
            run.per_connection.append(
                await self.reconcile_connection(current, products, stock_by_sku)
            )

        run.finished_at = datetime.utcnow()
        logger.info(
            f"Reconciliation run finished: {run.total_pushed} pushed, {run.total_failed} failed"
        )
        return run

    async def reconcile_connection(
        self,
        connection: Connection,
        products: List[LedgerProduct],
        stock_by_sku: Dict[str, StockRow],
    ) -> ConnectionReconcileResult:
        """Apply ledger quantities to one storefront."""
        result = ConnectionReconcileResult(connection_id=connection.id, platform=connection.platform)
        metrics = get_metrics()

        with with_correlation(connection_id=connection.id, platform=connection.platform):
            try:
                adapter = self.adapter_for(connection.platform)
            except ValueError as e:
                result.error = str(e)
                return result

            wrote = False
            for product in products:
                row = stock_by_sku.get(product.sku)
                if row is None:
                    result.skipped_no_stock += 1
                    continue

                result.checked += 1
                target = max(0, row.quantity)
                snapshot = db.get_snapshot(connection.id, product.sku, db_path=self.db_path)
                if snapshot is not None and snapshot.quantity == target:
                    result.unchanged += 1
                    metrics.record_stock_unchanged()
                    continue

                if wrote:
                    await self._pause()
                wrote = True

                if snapshot is None:
                    db.upsert_snapshot(
                        connection.id,
                        product.sku,
                        target,
                        product_id=product.product_id,
                        product_name=product.name,
                        unit_price=product.price,
                        db_path=self.db_path,
                    )
                    result.created += 1

                try:
                    await adapter.set_stock_level(connection, product.sku, target)
                except ConfigurationError as e:
                    logger.error(f"Connection {connection.id} misconfigured: {e}")
                    result.failed += 1
                    result.error = str(e)
                    self._record_push_failure(connection, product, target, e)
                    break
                except Exception as e:
                    result.failed += 1
                    metrics.record_stock_push_failed()
                    self._record_push_failure(connection, product, target, e)
                else:
                    result.pushed += 1
                    metrics.record_stock_pushed()
                    logger.debug(f"Pushed {product.sku} = {target}")

                if snapshot is not None:
                    db.upsert_snapshot(
                        connection.id,
                        product.sku,
                        target,
                        product_id=product.product_id,
                        product_name=product.name,
                        unit_price=product.price,
                        db_path=self.db_path,
                    )

        logger.info(
            f"Connection {connection.id}: {result.pushed} pushed, {result.unchanged} unchanged, "
            f"{result.failed} failed",
            extra_fields={"created": result.created, "skipped_no_stock": result.skipped_no_stock},
        )
        return result

    def _record_push_failure(
        self,
        connection: Connection,
        product: LedgerProduct,
        quantity: int,
        error: Exception,
    ) -> None:
        with with_correlation(sku=product.sku):
            self.recorder.record(
                connection.id,
                error,
                ErrorCategory.INVENTORY_SYNC_ERROR,
                {
                    "operation": Operation.INVENTORY_PUSH.value,
                    "sku": product.sku,
                    "quantity": quantity,
                    "product_id": product.product_id,
                    "name": product.name,
                    "price": str(product.price),
                },
            )

    async def push_sku(self, connection: Connection, sku: str, quantity: int) -> None:
        """Push one quantity and record it in the snapshot. Raises on failure."""
        adapter = self.adapter_for(connection.platform)
        await adapter.set_stock_level(connection, sku, quantity)
        db.upsert_snapshot(connection.id, sku, quantity, db_path=self.db_path)

    async def push_catalog(self, connection: Connection) -> CatalogPushResult:
        """Create or update every ledger product on one storefront.

        Quantities come from the ledger stock report where there is a row.
        """
        result = CatalogPushResult(connection_id=connection.id)

        with with_correlation(connection_id=connection.id, platform=connection.platform):
            try:
                adapter = self.adapter_for(connection.platform)
                products = await self.ledger.list_products(self.location_id)
                stock = {row.sku: row for row in await self.ledger.list_stock(self.location_id)}
            except Exception as e:
                logger.error(f"Catalog push aborted for connection {connection.id}: {e}")
                result.error = str(e)
                return result

            result.total = len(products)
            for index, product in enumerate(products):
                if index:
                    await self._pause()
                row = stock.get(product.sku)
                quantity = max(0, row.quantity) if row else None
                try:
                    await adapter.create_or_update_product(connection, product, quantity=quantity)
                except Exception as e:
                    result.failed += 1
                    self.recorder.record(
                        connection.id,
                        e,
                        ErrorCategory.INVENTORY_SYNC_ERROR,
                        {
                            "operation": Operation.PRODUCT_PUSH.value,
                            "sku": product.sku,
                            "quantity": quantity,
                            "product_id": product.product_id,
                            "name": product.name,
                            "price": str(product.price),
                        },
                    )
                    continue
                result.pushed += 1
                if quantity is not None:
                    db.upsert_snapshot(
                        connection.id,
                        product.sku,
                        quantity,
                        product_id=product.product_id,
                        product_name=product.name,
                        unit_price=product.price,
                        db_path=self.db_path,
                    )

        logger.info(f"Catalog push for connection {connection.id}: {result.pushed}/{result.total}")
        return result

"""Sync Engine facade.

Wires the processors to one ledger connector, one SQLite database and the
registered storefront adapters, and exposes the operations used by the
Temporal activities, the HTTP API and the CLI.

Usage:
    from sync_engine import SyncEngine

    engine = SyncEngine.from_settings()
    result = await engine.process_order_event(connection_id, order)
    run = await engine.run_reconciliation()
    await engine.close()
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from connectors import ProkipConnector, get_platform_adapter
from connectors.ledger_base import LedgerConnector
from connectors.platform_base import PlatformAdapter
from core.config import DEFAULT_DB_PATH, SyncSettings, get_settings
from core.observability.logging import get_logger
from sync_engine import db
from sync_engine.compensation import CompensationProcessor
from sync_engine.errors import ConnectionNotFound
from sync_engine.failures import FailureRecorder
from sync_engine.models import (
    CatalogPushResult,
    CompensationResult,
    Connection,
    FailureFilter,
    NormalizedOrder,
    OrderBatchResult,
    OrderSyncResult,
    ReconciliationRunResult,
    RecoveryRunResult,
    RecoveryStats,
    RefundEvent,
    RefundKind,
    SyncFailure,
)
from sync_engine.order_sync import REASON_CONNECTION_DISABLED, OrderSyncProcessor
from sync_engine.reconciliation import ReconciliationPoller
from sync_engine.recovery import ProgressCallback, RecoveryEngine

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class SyncEngine:
    """Storefront to ledger synchronization engine."""

    def __init__(
        self,
        ledger: LedgerConnector,
        db_path: Path = DEFAULT_DB_PATH,
        adapters: Optional[Dict[str, PlatformAdapter]] = None,
        http_timeout_seconds: int = 30,
        write_delay_seconds: float = 0.5,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Args:
            ledger: Ledger connector (the inventory of record)
            db_path: SQLite database path
            adapters: Storefront adapters by platform; unlisted platforms are
                created from the adapter registry on first use
            http_timeout_seconds: Timeout for registry-created adapters
            write_delay_seconds: Pause between storefront writes in bulk runs
            sleep: Awaitable sleep (replaced in tests)
        """
        self.ledger = ledger
        self.db_path = db_path
        self.http_timeout_seconds = http_timeout_seconds
        self._adapters: Dict[str, PlatformAdapter] = dict(adapters or {})

        config = ledger.config
        self.recorder = FailureRecorder(db_path)
        self.order_sync = OrderSyncProcessor(
            ledger,
            self.recorder,
            db_path,
            location_id=config.location_id,
            contact_id=config.contact_id,
            payment_method=config.payment_method,
        )
        self.compensation = CompensationProcessor(ledger, self.recorder, db_path)
        self.reconciliation = ReconciliationPoller(
            ledger,
            self.adapter_for,
            self.recorder,
            db_path,
            location_id=config.location_id,
            write_delay_seconds=write_delay_seconds,
            sleep=sleep,
        )
        self.recovery = RecoveryEngine(
            ledger,
            self.adapter_for,
            self.order_sync,
            self.compensation,
            self.reconciliation,
            db_path,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Optional[SyncSettings] = None) -> "SyncEngine":
        """Build an engine backed by the Prokip connector and process settings."""
        settings = settings or get_settings()
        db.init_sync_db(settings.db_path)
        return cls(
            ProkipConnector.from_settings(settings),
            db_path=settings.db_path,
            http_timeout_seconds=settings.http_timeout_seconds,
            write_delay_seconds=settings.write_delay_seconds,
        )

    def adapter_for(self, platform: str) -> PlatformAdapter:
        """Storefront adapter for a platform (created once, then reused).

        Raises:
            ValueError: If no adapter is registered for the platform
        """
        key = platform.lower()
        if key not in self._adapters:
            self._adapters[key] = get_platform_adapter(key, timeout_seconds=self.http_timeout_seconds)
        return self._adapters[key]

    def get_connection(self, connection_id: int) -> Connection:
        """
        Raises:
            ConnectionNotFound: If the connection does not exist
        """
        connection = db.get_connection(connection_id, db_path=self.db_path)
        if connection is None:
            raise ConnectionNotFound(connection_id)
        return connection

    async def close(self) -> None:
        await self.ledger.disconnect()

    # =========================================================================
    # Orders
    # =========================================================================

    async def process_order_event(self, connection_id: int, order: NormalizedOrder) -> OrderSyncResult:
        """Mirror one storefront order into the ledger (exactly once)."""
        connection = self.get_connection(connection_id)
        if not connection.enabled:
            logger.info(f"Connection {connection_id} disabled, ignoring order {order.external_order_id}")
            return OrderSyncResult(
                external_order_id=order.external_order_id,
                processed=False,
                reason=REASON_CONNECTION_DISABLED,
            )
        return await self.order_sync.process(connection, order)

    async def sync_orders(self, connection_id: int) -> OrderBatchResult:
        """Pull recent orders from the storefront and mirror them."""
        connection = self.get_connection(connection_id)
        if not connection.enabled:
            return OrderBatchResult(connection_id=connection_id, error=REASON_CONNECTION_DISABLED)
        return await self.order_sync.sync_orders(connection, self.adapter_for(connection.platform))

    # =========================================================================
    # Compensation
    # =========================================================================

    async def _compensate(self, connection_id: int, event: RefundEvent) -> CompensationResult:
        connection = self.get_connection(connection_id)
        if not connection.enabled:
            return CompensationResult(
                external_order_id=event.external_order_id,
                kind=event.kind,
                reason=REASON_CONNECTION_DISABLED,
            )
        return await self.compensation.process(
            connection, event, self.adapter_for(connection.platform)
        )

    async def process_cancellation(self, connection_id: int, event: RefundEvent) -> CompensationResult:
        """Reverse a whole order in the ledger and restore its stock."""
        if event.kind != RefundKind.CANCELLATION:
            event = event.model_copy(update={"kind": RefundKind.CANCELLATION, "refund_id": None})
        return await self._compensate(connection_id, event)

    async def process_refund(self, connection_id: int, event: RefundEvent) -> CompensationResult:
        """Reverse the refunded lines of an order and restore their stock."""
        if event.kind != RefundKind.REFUND:
            event = event.model_copy(update={"kind": RefundKind.REFUND})
        return await self._compensate(connection_id, event)

    # =========================================================================
    # Inventory
    # =========================================================================

    async def run_reconciliation(self, connection_id: Optional[int] = None) -> ReconciliationRunResult:
        """Push ledger stock to one connection or every enabled connection."""
        return await self.reconciliation.run(connection_id)

    async def push_catalog(self, connection_id: int) -> CatalogPushResult:
        """Create or update every ledger product on one storefront."""
        connection = self.get_connection(connection_id)
        if not connection.enabled:
            return CatalogPushResult(connection_id=connection_id, error=REASON_CONNECTION_DISABLED)
        return await self.reconciliation.push_catalog(connection)

    # =========================================================================
    # Failures
    # =========================================================================

    def list_failures(self, failure_filter: Optional[FailureFilter] = None) -> List[SyncFailure]:
        return db.list_failures(failure_filter, db_path=self.db_path)

    def get_failure(self, failure_id: int) -> Optional[SyncFailure]:
        return db.get_failure(failure_id, db_path=self.db_path)

    def resolve_failure(self, failure_id: int) -> bool:
        """Manual override: mark a failure resolved. Returns False if it already was."""
        return self.recovery.resolve(failure_id)

    async def recover_failures(
        self,
        failure_id: Optional[int] = None,
        connection_id: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RecoveryRunResult:
        """Run a recovery pass over one failure or every recoverable one."""
        if failure_id is None:
            return await self.recovery.recover_all(connection_id, on_progress=on_progress)

        run = RecoveryRunResult()
        result = await self.recovery.recover(failure_id)
        if result is not None:
            run.add(result)
        return run

    def recovery_stats(self, connection_id: Optional[int] = None) -> RecoveryStats:
        return self.recovery.stats(connection_id)


# =============================================================================
# Process-wide Engine
# =============================================================================

_engine: Optional[SyncEngine] = None


def get_engine() -> SyncEngine:
    """Process-wide engine, built from settings on first use."""
    global _engine
    if _engine is None:
        _engine = SyncEngine.from_settings()
    return _engine


def set_engine(engine: Optional[SyncEngine]) -> None:
    """Replace the process-wide engine (tests, embedding)."""
    global _engine
    _engine = engine

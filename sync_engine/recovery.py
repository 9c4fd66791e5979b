"""Error Recovery Engine.

Replays failed operations with a per-category retry strategy and escalates
what retries cannot fix.

One recovery pass over a failure:
1. Non-retryable categories (MappingFailed, Unknown) escalate at once
2. The durable attempt counter is incremented and the record marked RETRYING
3. For each attempt: sleep the attempt's backoff, run the bound action
4. Success: RESOLVED with auto_recovered set
5. Exhaustion: ESCALATED when a manual-intervention marker matches the
   original or the last error, otherwise back to OPEN for the next sweep

Each further attempt bumps the counter before it runs, so a crash mid-retry
still leaves an accurate count.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from connectors.http_client import AuthenticationError
from connectors.ledger_base import LedgerConnector, LedgerProduct
from connectors.platform_base import PlatformAdapter
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from sync_engine import db
from sync_engine.compensation import CompensationProcessor, event_from_context
from sync_engine.errors import (
    NON_RETRYABLE_CATEGORIES,
    RecoveryActionError,
    SyncError,
    describe_error,
    next_step_for,
    requires_manual_intervention,
)
from sync_engine.models import (
    Connection,
    ErrorCategory,
    FailureFilter,
    FailureStatus,
    NormalizedOrder,
    Operation,
    RecoveryResult,
    RecoveryRunResult,
    RecoveryStats,
    SyncFailure,
)
from sync_engine.order_sync import OrderSyncProcessor
from sync_engine.reconciliation import ReconciliationPoller

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]
AdapterFactory = Callable[[str], PlatformAdapter]
ProgressCallback = Callable[[SyncFailure], None]

AUTO_RETRY_NEXT_STEP = "Will retry automatically"


@dataclass(frozen=True)
class RetryStrategy:
    """Attempt budget and backoff (ms) slept before each attempt."""
    max_attempts: int
    backoff_ms: Tuple[int, ...]

    def delay_seconds(self, attempt: int) -> float:
        if not self.backoff_ms:
            return 0.0
        return self.backoff_ms[min(attempt, len(self.backoff_ms) - 1)] / 1000.0


STRATEGIES: Dict[ErrorCategory, RetryStrategy] = {
    ErrorCategory.NETWORK_TIMEOUT: RetryStrategy(3, (1000, 2000, 4000)),
    ErrorCategory.RATE_LIMIT: RetryStrategy(5, (5000, 10000, 20000, 40000, 60000)),
    ErrorCategory.AUTH_ERROR: RetryStrategy(2, (1000, 5000)),
    ErrorCategory.PRODUCT_NOT_FOUND: RetryStrategy(1, (2000,)),
    ErrorCategory.INVENTORY_SYNC_ERROR: RetryStrategy(3, (2000, 5000, 10000)),
    ErrorCategory.ORDER_PROCESSING_ERROR: RetryStrategy(2, (5000, 15000)),
    ErrorCategory.REFUND_FAILED: RetryStrategy(2, (5000, 15000)),
    ErrorCategory.CANCELLATION_FAILED: RetryStrategy(2, (5000, 15000)),
}


class RecoveryEngine:
    """Drives SyncFailure records through OPEN -> RETRYING -> RESOLVED | ESCALATED | OPEN."""

    def __init__(
        self,
        ledger: LedgerConnector,
        adapter_for: AdapterFactory,
        order_sync: OrderSyncProcessor,
        compensation: CompensationProcessor,
        reconciliation: ReconciliationPoller,
        db_path: Path,
        sleep: Sleep = asyncio.sleep,
        strategies: Optional[Dict[ErrorCategory, RetryStrategy]] = None,
    ):
        self.ledger = ledger
        self.adapter_for = adapter_for
        self.order_sync = order_sync
        self.compensation = compensation
        self.reconciliation = reconciliation
        self.db_path = db_path
        self.sleep = sleep
        self.strategies = strategies or STRATEGIES

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def recover_all(
        self,
        connection_id: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RecoveryRunResult:
        """One recovery pass over every recoverable failure, oldest first.

        on_progress is called before each failure is attempted.
        """
        run = RecoveryRunResult()
        failures = db.list_recoverable_failures(connection_id, db_path=self.db_path)
        logger.info(f"Recovery sweep over {len(failures)} failure(s)")

        for failure in failures:
            if on_progress is not None:
                on_progress(failure)
            result = await self.recover(failure.id)
            if result is not None:
                run.add(result)

        logger.info(
            f"Recovery sweep finished: {run.resolved} resolved, {run.escalated} escalated, "
            f"{run.still_open} still open"
        )
        return run

    async def recover(self, failure_id: int) -> Optional[RecoveryResult]:
        """Run one recovery pass over one failure.

        Returns:
            RecoveryResult, or None if the failure does not exist
        """
        failure = db.get_failure(failure_id, db_path=self.db_path)
        if failure is None:
            return None

        with with_correlation(connection_id=failure.connection_id, failure_id=failure.id):
            if failure.resolved or failure.status == FailureStatus.ESCALATED:
                return self._result(failure)

            if failure.category in NON_RETRYABLE_CATEGORIES or failure.category not in self.strategies:
                return self._escalate(failure, failure.message, manual=True)

            connection = db.get_connection(failure.connection_id, db_path=self.db_path)
            if connection is None:
                return self._escalate(
                    failure,
                    f"Connection {failure.connection_id} not found (store not found)",
                    manual=True,
                )
            if not connection.enabled:
                logger.info(f"Connection {connection.id} disabled, leaving failure #{failure.id}")
                return self._result(failure)

            return await self._retry(failure, connection)

    async def _retry(self, failure: SyncFailure, connection: Connection) -> RecoveryResult:
        strategy = self.strategies[failure.category]
        metrics = get_metrics()

        started = db.begin_recovery(failure.id, db_path=self.db_path)
        if started is None:
            # Resolved or escalated between the read and the update
            return self._result(db.get_failure(failure.id, db_path=self.db_path) or failure)

        last_error: Optional[BaseException] = None
        for attempt in range(strategy.max_attempts):
            if attempt > 0:
                db.record_recovery_attempt(failure.id, db_path=self.db_path)
            await self.sleep(strategy.delay_seconds(attempt))
            metrics.record_recovery_retry()
            try:
                await self._run_action(failure, connection)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Recovery attempt {attempt + 1}/{strategy.max_attempts} for failure "
                    f"#{failure.id} failed: {e}"
                )
                continue

            context = dict(failure.context)
            context["recovery"] = {
                "attempts": attempt + 1,
                "strategy": failure.category.value,
                "recovered_at": datetime.utcnow().isoformat(),
            }
            db.mark_failure_resolved(failure.id, auto_recovered=True, context=context, db_path=self.db_path)
            metrics.record_recovery_resolved(failure.category.value)
            logger.info(f"Failure #{failure.id} recovered after {attempt + 1} attempt(s)")
            return self._result(db.get_failure(failure.id, db_path=self.db_path))

        last_message = describe_error(last_error) if last_error else failure.message
        manual = (
            requires_manual_intervention(failure.category, failure.message)
            or requires_manual_intervention(failure.category, last_message)
        )
        if manual:
            return self._escalate(failure, last_message, manual=True)

        context = dict(failure.context)
        context["last_error"] = last_message
        context["next_step"] = AUTO_RETRY_NEXT_STEP
        db.mark_failure_unresolved(
            failure.id, FailureStatus.OPEN, False, context, db_path=self.db_path
        )
        logger.info(f"Failure #{failure.id} still open after {strategy.max_attempts} attempt(s)")
        return self._result(db.get_failure(failure.id, db_path=self.db_path), last_error=last_message)

    def _escalate(self, failure: SyncFailure, reason: str, manual: bool) -> RecoveryResult:
        context = dict(failure.context)
        context["last_error"] = reason
        context["next_step"] = next_step_for(failure.category)
        context["escalated_at"] = datetime.utcnow().isoformat()
        db.mark_failure_unresolved(
            failure.id, FailureStatus.ESCALATED, manual, context, db_path=self.db_path
        )
        get_metrics().record_recovery_escalated(failure.category.value)
        logger.warning(f"Failure #{failure.id} escalated: {reason}")
        return self._result(db.get_failure(failure.id, db_path=self.db_path), last_error=reason)

    @staticmethod
    def _result(failure: SyncFailure, last_error: Optional[str] = None) -> RecoveryResult:
        next_step = failure.context.get("next_step")
        if next_step is None and failure.status == FailureStatus.ESCALATED:
            next_step = next_step_for(failure.category)
        return RecoveryResult(
            failure_id=failure.id,
            category=failure.category,
            status=failure.status,
            attempts=failure.recovery_attempts,
            requires_manual_intervention=failure.requires_manual_intervention,
            next_step=next_step,
            last_error=last_error or failure.context.get("last_error"),
        )

    # =========================================================================
    # Bound actions
    # =========================================================================

    async def _run_action(self, failure: SyncFailure, connection: Connection) -> None:
        if failure.category == ErrorCategory.AUTH_ERROR:
            if not await self.ledger.refresh_auth():
                raise AuthenticationError("Ledger token refresh failed (invalid credentials)")
        elif (
            failure.category == ErrorCategory.PRODUCT_NOT_FOUND
            and failure.operation == Operation.INVENTORY_PUSH.value
        ):
            await self._create_missing_product(failure, connection)
        await self._replay(failure, connection)

    async def _create_missing_product(self, failure: SyncFailure, connection: Connection) -> None:
        sku = failure.context.get("sku")
        if not sku:
            raise RecoveryActionError(f"Failure #{failure.id} carries no SKU")
        product = await self.ledger.find_product_by_sku(sku)
        if product is None:
            raise SyncError(f"SKU {sku} not found in ledger (product not found)")
        adapter = self.adapter_for(connection.platform)
        await adapter.create_or_update_product(connection, product)
        logger.info(f"Created product {sku} on connection {connection.id}")

    async def _replay(self, failure: SyncFailure, connection: Connection) -> None:
        operation = failure.operation
        context = failure.context

        if operation == Operation.ORDER_SYNC.value:
            payload = context.get("event")
            if not payload:
                raise RecoveryActionError(f"Failure #{failure.id} carries no order event")
            await self.order_sync.mirror(connection, NormalizedOrder.model_validate(payload))

        elif operation in (Operation.REFUND.value, Operation.CANCELLATION.value):
            event = event_from_context(context)
            if event is None:
                raise RecoveryActionError(f"Failure #{failure.id} carries no refund event")
            await self.compensation.compensate(connection, event, self.adapter_for(connection.platform))

        elif operation == Operation.INVENTORY_PUSH.value:
            sku = context.get("sku")
            if not sku:
                raise RecoveryActionError(f"Failure #{failure.id} carries no SKU")
            # The snapshot holds the latest ledger quantity; it may be newer than the failure
            snapshot = db.get_snapshot(connection.id, sku, db_path=self.db_path)
            quantity = snapshot.quantity if snapshot else int(context.get("quantity") or 0)
            await self.reconciliation.push_sku(connection, sku, quantity)

        elif operation == Operation.PRODUCT_PUSH.value:
            sku = context.get("sku")
            if not sku:
                raise RecoveryActionError(f"Failure #{failure.id} carries no SKU")
            product = await self.ledger.find_product_by_sku(sku)
            if product is None:
                product = LedgerProduct(
                    product_id=str(context.get("product_id") or sku),
                    variation_id=str(context.get("product_id") or sku),
                    sku=sku,
                    name=context.get("name") or sku,
                    price=context.get("price") or "0",
                )
            quantity = context.get("quantity")
            adapter = self.adapter_for(connection.platform)
            await adapter.create_or_update_product(
                connection, product, quantity=int(quantity) if quantity is not None else None
            )

        else:
            raise RecoveryActionError(
                f"Failure #{failure.id} has no replayable operation ({operation!r})"
            )

    # =========================================================================
    # Manual operations
    # =========================================================================

    def resolve(self, failure_id: int) -> bool:
        """Mark a failure resolved by hand. Returns False if already resolved or missing."""
        failure = db.get_failure(failure_id, db_path=self.db_path)
        if failure is None or failure.resolved:
            return False
        context = dict(failure.context)
        context["resolved_manually_at"] = datetime.utcnow().isoformat()
        resolved = db.mark_failure_resolved(
            failure_id, auto_recovered=False, context=context, db_path=self.db_path
        )
        if resolved:
            logger.info(f"Failure #{failure_id} resolved manually")
        return resolved

    def stats(self, connection_id: Optional[int] = None, recent: int = 10) -> RecoveryStats:
        """Failure counts and recovery rate (percent of failures auto-recovered)."""
        counts = db.failure_counts(connection_id, db_path=self.db_path)
        total = counts["total"]
        recent_failures: List[SyncFailure] = db.list_failures(
            FailureFilter(connection_id=connection_id, limit=recent), db_path=self.db_path
        )
        return RecoveryStats(
            total=total,
            resolved=counts["resolved"],
            unresolved=total - counts["resolved"],
            escalated=counts["escalated"],
            auto_recovered=counts["auto_recovered"],
            recovery_rate=round(counts["auto_recovered"] / total * 100, 2) if total else 0.0,
            by_category=counts["by_category"],
            recent=recent_failures,
        )

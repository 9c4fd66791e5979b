"""Reconciliation workflow.

Long-running poller: reconcile inventory, run a recovery pass, sleep for the
interval, repeat. A failed step is logged and the loop carries on with the
next one. The run continues as new after a fixed number of cycles to keep
its history bounded.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from activities.sync import (
        reconcile_inventory,
        recover_failures,
        ReconcileInput,
        RecoverInput,
    )


CYCLES_PER_RUN = 50
DEFAULT_INTERVAL_SECONDS = 300

RECONCILE_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=30),
    "retry_policy": RetryPolicy(maximum_attempts=1),
}

# Recovery sleeps its own backoffs, up to ~2 min per failure, and heartbeats
# before each failure
RECOVERY_OPTIONS = {
    "start_to_close_timeout": timedelta(hours=1),
    "heartbeat_timeout": timedelta(minutes=5),
    "retry_policy": RetryPolicy(maximum_attempts=1),
}


@dataclass
class ReconciliationWorkflowInput:
    """Input for ReconciliationWorkflow.

    Attributes:
        interval_seconds: Pause between cycles
        connection_id: Restrict to one connection (all enabled if None)
        max_cycles: Stop after this many cycles instead of looping forever
    """
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    connection_id: Optional[int] = None
    max_cycles: Optional[int] = None


@workflow.defn
class ReconciliationWorkflow:
    """Scheduled reconcile -> recover loop."""

    def __init__(self):
        self.cycles = 0
        self.last_pushed = 0
        self.last_failed = 0
        self.failed_steps = 0

    @workflow.query
    def status(self) -> dict:
        return {
            "cycles": self.cycles,
            "last_pushed": self.last_pushed,
            "last_failed": self.last_failed,
            "failed_steps": self.failed_steps,
        }

    @workflow.run
    async def run(self, input: ReconciliationWorkflowInput) -> dict:
        workflow.logger.info(f"Reconciliation poller started (interval {input.interval_seconds}s)")

        while True:
            try:
                run = await workflow.execute_activity(
                    reconcile_inventory,
                    ReconcileInput(connection_id=input.connection_id),
                    **RECONCILE_OPTIONS,
                )
            except ActivityError as e:
                self.failed_steps += 1
                workflow.logger.error(f"Reconciliation cycle {self.cycles + 1} failed: {e.cause or e}")
            else:
                per_connection = run.get("per_connection", [])
                self.last_pushed = sum(c.get("pushed", 0) for c in per_connection)
                self.last_failed = sum(c.get("failed", 0) for c in per_connection)

            try:
                await workflow.execute_activity(
                    recover_failures,
                    RecoverInput(connection_id=input.connection_id),
                    **RECOVERY_OPTIONS,
                )
            except ActivityError as e:
                self.failed_steps += 1
                workflow.logger.error(f"Recovery pass in cycle {self.cycles + 1} failed: {e.cause or e}")

            self.cycles += 1
            if input.max_cycles is not None and self.cycles >= input.max_cycles:
                return self.status()

            await workflow.sleep(timedelta(seconds=input.interval_seconds))

            if self.cycles >= CYCLES_PER_RUN:
                remaining = None if input.max_cycles is None else input.max_cycles - self.cycles
                workflow.continue_as_new(
                    ReconciliationWorkflowInput(
                        interval_seconds=input.interval_seconds,
                        connection_id=input.connection_id,
                        max_cycles=remaining,
                    )
                )

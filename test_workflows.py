"""Test Temporal workflows without a server.

Executes the workflow run methods directly with the temporalio.workflow
calls replaced, verifying which activities are scheduled, with which
inputs and options, and how the poller loops.
"""

import asyncio
import logging

import pytest
from temporalio import workflow
from temporalio.exceptions import ActivityError, RetryState

from activities.sync import (
    CompensationInput,
    OrderEventInput,
    ReconcileInput,
    RecoverInput,
)
from workflows import (
    CompensationWorkflow,
    CompensationWorkflowInput,
    OrderEventWorkflow,
    OrderEventWorkflowInput,
    ReconciliationWorkflow,
    ReconciliationWorkflowInput,
)
from workflows import reconciliation_workflow


def _activity_error(activity_type):
    return ActivityError(
        "activity task failed",
        scheduled_event_id=5,
        started_event_id=6,
        identity="worker-1",
        activity_type=activity_type,
        activity_id="1",
        retry_state=RetryState.MAXIMUM_ATTEMPTS_REACHED,
    )


class ContinuedAsNew(Exception):
    def __init__(self, arg):
        super().__init__("continue as new")
        self.arg = arg


class FakeWorkflowRuntime:
    """Stands in for the workflow calls the run methods make."""

    def __init__(self, results):
        self.results = results
        self.errors = {}
        self.activities = []
        self.sleeps = []

    async def execute_activity(self, fn, arg, **options):
        self.activities.append((fn.__name__, arg, options))
        queued = self.errors.get(fn.__name__)
        if queued:
            raise queued.pop(0)
        return self.results.get(fn.__name__, {})

    async def sleep(self, duration):
        self.sleeps.append(duration.total_seconds())

    def continue_as_new(self, arg):
        raise ContinuedAsNew(arg)


@pytest.fixture
def runtime(monkeypatch):
    fake = FakeWorkflowRuntime({
        "mirror_order": {"processed": True, "reason": None},
        "compensate_order": {"processed": True, "reason": None},
        "reconcile_inventory": {"per_connection": [{"pushed": 2, "failed": 1}, {"pushed": 3, "failed": 0}]},
        "recover_failures": {"resolved": 0},
    })
    monkeypatch.setattr(workflow, "execute_activity", fake.execute_activity)
    monkeypatch.setattr(workflow, "sleep", fake.sleep)
    monkeypatch.setattr(workflow, "continue_as_new", fake.continue_as_new)
    monkeypatch.setattr(workflow, "logger", logging.getLogger("workflows.test"))
    return fake


class TestOrderWorkflows:

    def test_order_event_runs_mirror_once(self, runtime):
        order = {"external_order_id": "500"}

        result = asyncio.run(OrderEventWorkflow().run(OrderEventWorkflowInput(connection_id=3, order=order)))

        assert result["processed"] is True
        name, arg, options = runtime.activities[0]
        assert name == "mirror_order"
        assert arg == OrderEventInput(connection_id=3, order=order)
        assert options["retry_policy"].maximum_attempts == 1

    def test_compensation_runs_compensate(self, runtime):
        event = {"external_order_id": "500", "kind": "CANCELLATION"}

        asyncio.run(CompensationWorkflow().run(CompensationWorkflowInput(connection_id=3, event=event)))

        assert [(name, arg) for name, arg, _ in runtime.activities] == [
            ("compensate_order", CompensationInput(connection_id=3, event=event)),
        ]


class TestReconciliationWorkflow:

    def test_cycles_reconcile_then_recover(self, runtime):
        poller = ReconciliationWorkflow()

        status = asyncio.run(poller.run(
            ReconciliationWorkflowInput(interval_seconds=60, connection_id=3, max_cycles=2)
        ))

        assert [name for name, _, _ in runtime.activities] == [
            "reconcile_inventory", "recover_failures",
            "reconcile_inventory", "recover_failures",
        ]
        assert runtime.activities[0][1] == ReconcileInput(connection_id=3)
        assert runtime.activities[1][1] == RecoverInput(connection_id=3)
        # No pause after the final cycle
        assert runtime.sleeps == [60.0]
        assert status == {"cycles": 2, "last_pushed": 5, "last_failed": 1, "failed_steps": 0}
        assert poller.status() == status

    def test_continues_as_new_after_cycle_limit(self, runtime, monkeypatch):
        monkeypatch.setattr(reconciliation_workflow, "CYCLES_PER_RUN", 2)

        with pytest.raises(ContinuedAsNew) as exc_info:
            asyncio.run(ReconciliationWorkflow().run(
                ReconciliationWorkflowInput(interval_seconds=30, max_cycles=5)
            ))

        carried = exc_info.value.arg
        assert carried.interval_seconds == 30
        assert carried.max_cycles == 3
        assert runtime.sleeps == [30.0, 30.0]

    def test_failed_steps_do_not_stop_the_loop(self, runtime):
        runtime.errors = {
            "reconcile_inventory": [_activity_error("reconcile_inventory")],
            "recover_failures": [_activity_error("recover_failures")],
        }
        poller = ReconciliationWorkflow()

        status = asyncio.run(poller.run(ReconciliationWorkflowInput(interval_seconds=10, max_cycles=2)))

        assert [name for name, _, _ in runtime.activities] == [
            "reconcile_inventory", "recover_failures",
            "reconcile_inventory", "recover_failures",
        ]
        assert runtime.sleeps == [10.0]
        assert status == {"cycles": 2, "last_pushed": 5, "last_failed": 1, "failed_steps": 2}

    def test_recovery_pass_heartbeats(self, runtime):
        asyncio.run(ReconciliationWorkflow().run(ReconciliationWorkflowInput(max_cycles=1)))

        _, _, options = runtime.activities[1]
        assert options["heartbeat_timeout"].total_seconds() == 300

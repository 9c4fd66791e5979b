"""Order event workflows.

One workflow run per accepted webhook delivery. The webhook answers 200 as
soon as the run is started; the engine work happens here, off the request
path.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.sync import (
        compensate_order,
        mirror_order,
        CompensationInput,
        OrderEventInput,
    )


# Engine activities run once; retries belong to the recovery engine
ENGINE_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=2),
    "retry_policy": RetryPolicy(maximum_attempts=1),
}


@dataclass
class OrderEventWorkflowInput:
    """Input for OrderEventWorkflow.

    Attributes:
        connection_id: Connection the webhook was delivered for
        order: Serialized NormalizedOrder
    """
    connection_id: int
    order: Dict[str, Any]


@dataclass
class CompensationWorkflowInput:
    """Input for CompensationWorkflow.

    Attributes:
        connection_id: Connection the webhook was delivered for
        event: Serialized RefundEvent
    """
    connection_id: int
    event: Dict[str, Any]


@workflow.defn
class OrderEventWorkflow:
    """Mirrors one storefront order event into the ledger."""

    @workflow.run
    async def run(self, input: OrderEventWorkflowInput) -> dict:
        external_order_id = input.order.get("external_order_id")
        workflow.logger.info(f"Order event {external_order_id} for connection {input.connection_id}")

        result = await workflow.execute_activity(
            mirror_order,
            OrderEventInput(connection_id=input.connection_id, order=input.order),
            **ENGINE_ACTIVITY_OPTIONS,
        )

        workflow.logger.info(
            f"Order {external_order_id}: processed={result.get('processed')} reason={result.get('reason')}"
        )
        return result


@workflow.defn
class CompensationWorkflow:
    """Reverses one cancellation or refund in the ledger."""

    @workflow.run
    async def run(self, input: CompensationWorkflowInput) -> dict:
        external_order_id = input.event.get("external_order_id")
        workflow.logger.info(
            f"{input.event.get('kind')} for order {external_order_id} on connection {input.connection_id}"
        )

        result = await workflow.execute_activity(
            compensate_order,
            CompensationInput(connection_id=input.connection_id, event=input.event),
            **ENGINE_ACTIVITY_OPTIONS,
        )

        workflow.logger.info(
            f"Order {external_order_id}: processed={result.get('processed')} reason={result.get('reason')}"
        )
        return result

"""Shared route dependencies.

Routes receive the engine, the workflow dispatcher and the settings through
FastAPI dependencies so tests can replace them with app.dependency_overrides.
"""

from typing import Optional
from uuid import uuid4

from temporalio.client import Client

from core.config import SyncSettings, get_settings
from core.observability.logging import get_logger
from sync_engine import SyncEngine, get_engine
from sync_engine.models import NormalizedOrder, RefundEvent
from temporal_client import get_temporal_client
from workflows.order_event_workflow import (
    CompensationWorkflow,
    CompensationWorkflowInput,
    OrderEventWorkflow,
    OrderEventWorkflowInput,
)

logger = get_logger(__name__)


class WorkflowDispatcher:
    """Starts one Temporal workflow per accepted webhook delivery.

    Every delivery gets its own workflow id; duplicates are absorbed by the
    engine's idempotency gates, not by Temporal.
    """

    def __init__(self, settings: SyncSettings):
        self.settings = settings
        self._client: Optional[Client] = None

    async def _get_client(self) -> Client:
        if self._client is None:
            self._client = await get_temporal_client(self.settings)
        return self._client

    async def start_order_event(self, connection_id: int, order: NormalizedOrder) -> str:
        workflow_id = f"order-{connection_id}-{order.external_order_id}-{uuid4().hex[:8]}"
        client = await self._get_client()
        await client.start_workflow(
            OrderEventWorkflow.run,
            OrderEventWorkflowInput(connection_id=connection_id, order=order.model_dump(mode="json")),
            id=workflow_id,
            task_queue=self.settings.task_queue,
        )
        logger.info(f"Started {workflow_id}")
        return workflow_id

    async def start_compensation(self, connection_id: int, event: RefundEvent) -> str:
        workflow_id = (
            f"{event.kind.value.lower()}-{connection_id}-{event.external_order_id}-{uuid4().hex[:8]}"
        )
        client = await self._get_client()
        await client.start_workflow(
            CompensationWorkflow.run,
            CompensationWorkflowInput(connection_id=connection_id, event=event.model_dump(mode="json")),
            id=workflow_id,
            task_queue=self.settings.task_queue,
        )
        logger.info(f"Started {workflow_id}")
        return workflow_id


_dispatcher: Optional[WorkflowDispatcher] = None


def get_app_settings() -> SyncSettings:
    return get_settings()


def get_sync_engine() -> SyncEngine:
    return get_engine()


def get_dispatcher() -> WorkflowDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WorkflowDispatcher(get_settings())
    return _dispatcher

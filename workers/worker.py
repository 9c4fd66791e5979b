"""Worker for the storefront sync pipeline.

Listens on the sync task queue and executes the order, compensation and
reconciliation workflows and their activities.

Run with --start-poller to also start the reconciliation poller workflow
(no-op if it is already running).
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from temporalio.client import Client
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from activities import ALL_ACTIVITIES
from core.config import get_settings
from core.observability.logging import configure_from_settings, get_logger
from sync_engine import init_sync_db
from temporal_client import get_temporal_client
from workflows import (
    CompensationWorkflow,
    OrderEventWorkflow,
    ReconciliationWorkflow,
    ReconciliationWorkflowInput,
)

logger = get_logger(__name__)

POLLER_WORKFLOW_ID = "inventory-reconciliation-poller"
ALL_WORKFLOWS = [OrderEventWorkflow, CompensationWorkflow, ReconciliationWorkflow]


async def start_poller(client: Client, task_queue: str, interval_seconds: int) -> None:
    """Start the reconciliation poller unless one is already running."""
    try:
        await client.start_workflow(
            ReconciliationWorkflow.run,
            ReconciliationWorkflowInput(interval_seconds=interval_seconds),
            id=POLLER_WORKFLOW_ID,
            task_queue=task_queue,
            id_reuse_policy=WorkflowIDReusePolicy.ALLOW_DUPLICATE,
        )
        logger.info(f"Started reconciliation poller ({interval_seconds}s interval)")
    except WorkflowAlreadyStartedError:
        logger.info("Reconciliation poller already running")


async def run_worker(task_queue: Optional[str] = None, with_poller: bool = False):
    """Start a worker listening on the sync task queue.

    Raises:
        Exception: If connection to Temporal fails
    """
    settings = get_settings()
    task_queue = task_queue or settings.task_queue
    init_sync_db(settings.db_path)

    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal: {client.namespace}")

    if with_poller:
        await start_poller(client, task_queue, settings.reconcile_interval_seconds)

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=ALL_WORKFLOWS,
        activities=ALL_ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{task_queue}':")
    logger.info(f"  - Workflows: {len(ALL_WORKFLOWS)}")
    logger.info(f"  - Activities: {len(ALL_ACTIVITIES)}")

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Storefront Sync Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=None,
        help="Task queue to poll (default: TEMPORAL_TASK_QUEUE or storefront-sync)"
    )
    parser.add_argument(
        "--start-poller",
        action="store_true",
        help="Start the inventory reconciliation poller workflow"
    )

    args = parser.parse_args()
    configure_from_settings()
    asyncio.run(run_worker(task_queue=args.queue, with_poller=args.start_poller))


if __name__ == "__main__":
    main()

"""Workflow definitions module."""

from workflows.order_event_workflow import (
    OrderEventWorkflow,
    CompensationWorkflow,
    OrderEventWorkflowInput,
    CompensationWorkflowInput,
)
from workflows.reconciliation_workflow import ReconciliationWorkflow, ReconciliationWorkflowInput

__all__ = [
    "OrderEventWorkflow",
    "CompensationWorkflow",
    "OrderEventWorkflowInput",
    "CompensationWorkflowInput",
    "ReconciliationWorkflow",
    "ReconciliationWorkflowInput",
]

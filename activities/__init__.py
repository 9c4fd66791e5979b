"""Activity definitions module."""

from activities.sync import (
    mirror_order,
    compensate_order,
    reconcile_inventory,
    recover_failures,
    sync_recent_orders,
    OrderEventInput,
    CompensationInput,
    ReconcileInput,
    RecoverInput,
    SyncOrdersInput,
)

ALL_ACTIVITIES = [
    mirror_order,
    compensate_order,
    reconcile_inventory,
    recover_failures,
    sync_recent_orders,
]

__all__ = [
    # Activities
    "mirror_order",
    "compensate_order",
    "reconcile_inventory",
    "recover_failures",
    "sync_recent_orders",
    "ALL_ACTIVITIES",
    # Inputs
    "OrderEventInput",
    "CompensationInput",
    "ReconcileInput",
    "RecoverInput",
    "SyncOrdersInput",
]

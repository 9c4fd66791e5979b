"""
Temporal Activity Tests

Runs the sync activities in temporalio's ActivityEnvironment (no server
needed) against the in-memory ledger and storefront.
"""

import asyncio

import pytest
from temporalio.testing import ActivityEnvironment

from activities import (
    ALL_ACTIVITIES,
    CompensationInput,
    OrderEventInput,
    ReconcileInput,
    RecoverInput,
    SyncOrdersInput,
    compensate_order,
    mirror_order,
    reconcile_inventory,
    recover_failures,
    sync_recent_orders,
)
from conftest import make_order, make_refund
from connectors.http_client import ConnectorTimeoutError
from sync_engine import db, set_engine


def run_activity(env, fn, arg):
    async def _run():
        return await env.run(fn, arg)
    return asyncio.run(_run())


@pytest.fixture
def activity_env(engine):
    set_engine(engine)
    yield ActivityEnvironment()
    set_engine(None)


def test_all_activities_registered():
    names = {fn.__name__ for fn in ALL_ACTIVITIES}
    assert names == {
        "mirror_order",
        "compensate_order",
        "reconcile_inventory",
        "recover_failures",
        "sync_recent_orders",
    }


class TestSyncActivities:

    def test_mirror_order(self, activity_env, ledger, connection):
        order = make_order(connection, "500")
        payload = OrderEventInput(connection_id=connection.id, order=order.model_dump(mode="json"))

        result = run_activity(activity_env, mirror_order, payload)

        assert result["processed"] is True
        assert result["ledger_transaction_id"] == "T1"
        assert len(ledger.sales) == 1

    def test_compensate_order(self, activity_env, ledger, connection, temp_db):
        order = make_order(connection, "500")
        run_activity(
            activity_env, mirror_order,
            OrderEventInput(connection_id=connection.id, order=order.model_dump(mode="json")),
        )
        db.upsert_snapshot(connection.id, "SKU-A", 5, db_path=temp_db)
        event = make_refund(connection, "500")

        result = run_activity(
            activity_env, compensate_order,
            CompensationInput(connection_id=connection.id, event=event.model_dump(mode="json")),
        )

        assert result["processed"] is True
        assert result["kind"] == "CANCELLATION"
        assert result["restored"] == [{"sku": "SKU-A", "quantity": 2}]

    def test_reconcile_and_recover(self, activity_env, ledger, platform, connection):
        run = run_activity(activity_env, reconcile_inventory, ReconcileInput())
        assert run["per_connection"][0]["pushed"] == 2

        ledger.sale_errors = [ConnectorTimeoutError("Request timed out")]
        run_activity(
            activity_env, mirror_order,
            OrderEventInput(connection_id=connection.id, order=make_order(connection, "501").model_dump(mode="json")),
        )

        heartbeats = []
        activity_env.on_heartbeat = lambda *details: heartbeats.append(details)

        recovered = run_activity(activity_env, recover_failures, RecoverInput())
        assert recovered["processed"] == 1
        assert recovered["resolved"] == 1
        assert len(heartbeats) == 1
        assert heartbeats[0][0].startswith("Recovering failure #")

    def test_sync_recent_orders(self, activity_env, platform, connection):
        platform.orders = [make_order(connection, "900")]

        batch = run_activity(activity_env, sync_recent_orders, SyncOrdersInput(connection_id=connection.id))

        assert batch["fetched"] == 1
        assert batch["processed"] == 1

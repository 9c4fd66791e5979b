"""
Inventory Reconciliation Tests

Validates that storefront stock converges on the ledger:
1. First sync creates snapshots and pushes every known quantity
2. Unchanged quantities cause no storefront call
3. Failed pushes are recorded and the snapshot still advances
4. A ledger outage aborts the run for every connection
5. Disabled connections are skipped
"""

import asyncio

import pytest

from connectors.http_client import ConfigurationError, ConnectorError, ConnectorTimeoutError
from sync_engine import SyncEngine, db
from sync_engine.errors import ConnectionNotFound
from sync_engine.models import ErrorCategory, FailureStatus


class TestConvergence:
    """Ledger quantities are pushed only when they change."""

    def test_first_sync_pushes_and_creates_snapshots(self, engine, ledger, platform, connection, temp_db):
        ledger.add_product("SKU-C")  # no stock row

        run = asyncio.run(engine.run_reconciliation())

        assert run.error is None
        assert len(run.per_connection) == 1
        result = run.per_connection[0]
        assert result.checked == 2
        assert result.created == 2
        assert result.pushed == 2
        assert result.skipped_no_stock == 1
        assert platform.pushes == [("SKU-A", 5), ("SKU-B", 0)]

        snapshot = db.get_snapshot(connection.id, "SKU-A", db_path=temp_db)
        assert snapshot.quantity == 5
        assert snapshot.product_id == ledger.products["SKU-A"].product_id
        assert db.get_snapshot(connection.id, "SKU-C", db_path=temp_db) is None

    def test_second_run_with_no_changes_makes_no_calls(self, engine, platform, connection):
        asyncio.run(engine.run_reconciliation())
        platform.pushes.clear()

        run = asyncio.run(engine.run_reconciliation())

        result = run.per_connection[0]
        assert result.unchanged == 2
        assert result.pushed == 0
        assert platform.pushes == []

    def test_changed_quantity_is_pushed(self, engine, ledger, platform, connection, temp_db):
        asyncio.run(engine.run_reconciliation())
        platform.pushes.clear()
        ledger.stock["SKU-A"] = 3

        run = asyncio.run(engine.run_reconciliation())

        assert run.per_connection[0].pushed == 1
        assert platform.pushes == [("SKU-A", 3)]
        assert db.get_snapshot(connection.id, "SKU-A", db_path=temp_db).quantity == 3

    def test_every_enabled_connection_is_reconciled(self, engine, platform, connection, temp_db):
        db.create_connection("woocommerce", "https://second.example.com", db_path=temp_db)
        disabled = db.create_connection("woocommerce", "https://third.example.com", db_path=temp_db)
        db.set_connection_enabled(disabled.id, False, db_path=temp_db)

        run = asyncio.run(engine.run_reconciliation())

        assert len(run.per_connection) == 2
        assert run.total_pushed == 4

    def test_write_delay_between_pushes(self, ledger, platform, sleeper, temp_db, connection):
        engine = SyncEngine(
            ledger,
            db_path=temp_db,
            adapters={"woocommerce": platform},
            write_delay_seconds=0.5,
            sleep=sleeper,
        )

        asyncio.run(engine.run_reconciliation())

        # Two writes, one pause between them
        assert sleeper.calls == [0.5]


class TestPushFailures:
    """Failed pushes become InventorySyncError records."""

    def test_failed_push_is_recorded_and_snapshot_advances(self, engine, ledger, platform, connection, temp_db):
        asyncio.run(engine.run_reconciliation())
        ledger.stock["SKU-A"] = 3
        platform.push_errors["SKU-A"] = [ConnectorError("Upstream error", 502)]

        run = asyncio.run(engine.run_reconciliation())

        result = run.per_connection[0]
        assert result.failed == 1
        assert result.pushed == 0
        assert db.get_snapshot(connection.id, "SKU-A", db_path=temp_db).quantity == 3

        failures = db.list_failures(db_path=temp_db)
        assert len(failures) == 1
        failure = failures[0]
        assert failure.category == ErrorCategory.INVENTORY_SYNC_ERROR
        assert failure.status == FailureStatus.OPEN
        assert failure.context["operation"] == "inventory_push"
        assert failure.context["sku"] == "SKU-A"
        assert failure.context["quantity"] == 3

    def test_missing_storefront_product_is_product_not_found(self, engine, platform, connection, temp_db):
        from connectors.http_client import NotFoundError

        platform.push_errors["SKU-B"] = [NotFoundError("SKU not found on WooCommerce store: SKU-B", 404)]

        asyncio.run(engine.run_reconciliation())

        failure = db.list_failures(db_path=temp_db)[0]
        assert failure.category == ErrorCategory.PRODUCT_NOT_FOUND
        assert failure.error_type == "InventorySyncError"
        # The snapshot was created before the first push
        assert db.get_snapshot(connection.id, "SKU-B", db_path=temp_db) is not None

    def test_configuration_error_stops_the_connection(self, engine, platform, connection, temp_db):
        platform.push_errors["SKU-A"] = [ConfigurationError("WooCommerce configuration error: no consumer key")]

        run = asyncio.run(engine.run_reconciliation())

        result = run.per_connection[0]
        assert result.failed == 1
        assert result.error
        assert platform.pushes == []
        failure = db.list_failures(db_path=temp_db)[0]
        assert failure.requires_manual_intervention is True


class TestRunAborts:
    """A run that cannot read the ledger writes nothing."""

    def test_ledger_outage_aborts_run(self, engine, ledger, platform, connection, temp_db):
        ledger.stock_error = ConnectorTimeoutError("Request timed out")

        run = asyncio.run(engine.run_reconciliation())

        assert run.error == "Request timed out"
        assert run.per_connection[0].error == "Request timed out"
        assert platform.pushes == []
        assert db.list_snapshots(connection.id, db_path=temp_db) == []

    def test_disabled_connection_is_skipped(self, engine, platform, connection, temp_db):
        db.set_connection_enabled(connection.id, False, db_path=temp_db)

        run = asyncio.run(engine.run_reconciliation(connection.id))

        assert run.per_connection[0].skipped is True
        assert platform.pushes == []

    def test_unknown_connection_raises(self, engine):
        with pytest.raises(ConnectionNotFound):
            asyncio.run(engine.run_reconciliation(9999))


class TestCatalogPush:
    """Ledger products are created or updated on the storefront."""

    def test_push_catalog_sets_snapshots(self, engine, ledger, platform, connection, temp_db):
        ledger.add_product("SKU-C")

        result = asyncio.run(engine.push_catalog(connection.id))

        assert result.total == 3
        assert result.pushed == 3
        assert platform.created == [("SKU-A", 5), ("SKU-B", 0), ("SKU-C", None)]
        assert db.get_snapshot(connection.id, "SKU-A", db_path=temp_db).quantity == 5
        assert db.get_snapshot(connection.id, "SKU-C", db_path=temp_db) is None

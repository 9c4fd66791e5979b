"""
Sync Database Tests

Validates the storage guarantees the engine relies on:
1. UNIQUE constraints turn duplicate inserts into "already recorded"
2. Snapshot quantities never go below zero
3. Resolved failures are never touched again
"""

from datetime import datetime
from decimal import Decimal

from sync_engine import db
from sync_engine.models import (
    CompensationEntry,
    ErrorCategory,
    FailureFilter,
    FailureStatus,
    RefundKind,
    SalesLedgerEntry,
    SyncFailure,
)


def _entry(connection_id: int, external_order_id: str = "500") -> SalesLedgerEntry:
    return SalesLedgerEntry(
        connection_id=connection_id,
        external_order_id=external_order_id,
        order_number=f"#{external_order_id}",
        total_amount=Decimal("20.00"),
        order_date=datetime(2024, 3, 1, 12, 0, 0),
    )


def _failure(connection_id: int, status: FailureStatus = FailureStatus.OPEN) -> SyncFailure:
    return SyncFailure(
        connection_id=connection_id,
        category=ErrorCategory.NETWORK_TIMEOUT,
        error_type="OrderProcessingError",
        message="timed out",
        context={"operation": "order_sync"},
        status=status,
    )


class TestConnections:

    def test_find_by_store_ignores_scheme_and_slash(self, temp_db, connection):
        found = db.find_connection_by_store("woocommerce", "shop.example.com/", db_path=temp_db)
        assert found.id == connection.id
        assert found.credentials["consumer_key"] == "ck_test"
        assert db.find_connection_by_store("shopify", "shop.example.com", db_path=temp_db) is None

    def test_update_last_synced(self, temp_db, connection):
        stamp = datetime(2024, 3, 1, 12, 0, 0)
        db.update_last_synced(connection.id, stamp, db_path=temp_db)
        assert db.get_connection(connection.id, db_path=temp_db).last_synced_at == stamp


class TestSalesLedger:

    def test_duplicate_insert_returns_none(self, temp_db, connection):
        assert db.insert_sales_entry(_entry(connection.id), db_path=temp_db) is not None
        assert db.insert_sales_entry(_entry(connection.id), db_path=temp_db) is None
        assert len(db.list_sales_entries(connection.id, db_path=temp_db)) == 1

    def test_transaction_id_is_attached_once(self, temp_db, connection):
        db.insert_sales_entry(_entry(connection.id), db_path=temp_db)

        assert db.attach_ledger_transaction_id(connection.id, "500", "T1", db_path=temp_db) is True
        assert db.attach_ledger_transaction_id(connection.id, "500", "T2", db_path=temp_db) is False
        assert db.get_sales_entry(connection.id, "500", db_path=temp_db).ledger_transaction_id == "T1"

    def test_duplicate_compensation_returns_none(self, temp_db, connection):
        entry = CompensationEntry(
            connection_id=connection.id,
            external_order_id="500",
            compensation_key="cancel",
            kind=RefundKind.CANCELLATION,
        )
        assert db.insert_compensation_entry(entry, db_path=temp_db) is not None
        assert db.insert_compensation_entry(entry, db_path=temp_db) is None

    def test_sold_and_returned_quantities(self, temp_db, connection):
        sale = _entry(connection.id).model_copy(update={"quantities": {"SKU-A": 3, "SKU-B": 1}})
        db.insert_sales_entry(sale, db_path=temp_db)
        for key, quantities in (("refund-r1", {"SKU-A": 1}), ("refund-r2", {"SKU-A": 1, "SKU-B": 1})):
            db.insert_compensation_entry(CompensationEntry(
                connection_id=connection.id,
                external_order_id="500",
                compensation_key=key,
                kind=RefundKind.REFUND,
                quantities=quantities,
            ), db_path=temp_db)

        assert db.sold_quantities(connection.id, "500", db_path=temp_db) == {"SKU-A": 3, "SKU-B": 1}
        assert db.returned_quantities(connection.id, "500", db_path=temp_db) == {"SKU-A": 2, "SKU-B": 1}
        assert db.returned_quantities(connection.id, "501", db_path=temp_db) == {}


class TestSnapshots:

    def test_upsert_clamps_and_keeps_metadata(self, temp_db, connection):
        db.upsert_snapshot(
            connection.id, "SKU-A", 4, product_id="101", product_name="Item A",
            unit_price=Decimal("10.00"), db_path=temp_db,
        )
        snapshot = db.upsert_snapshot(connection.id, "SKU-A", -3, db_path=temp_db)

        assert snapshot.quantity == 0
        assert snapshot.product_id == "101"
        assert snapshot.unit_price == Decimal("10.00")

    def test_adjust_missing_snapshot_returns_none(self, temp_db, connection):
        assert db.adjust_snapshot(connection.id, "SKU-A", 2, db_path=temp_db) is None

    def test_adjust_clamps_at_zero(self, temp_db, connection):
        db.upsert_snapshot(connection.id, "SKU-A", 1, db_path=temp_db)
        assert db.adjust_snapshot(connection.id, "SKU-A", -5, db_path=temp_db).quantity == 0


class TestFailures:

    def test_resolved_failure_is_absorbing(self, temp_db, connection):
        failure = db.insert_failure(_failure(connection.id), db_path=temp_db)

        assert db.mark_failure_resolved(failure.id, auto_recovered=False, db_path=temp_db) is True
        assert db.mark_failure_resolved(failure.id, auto_recovered=True, db_path=temp_db) is False
        assert db.begin_recovery(failure.id, db_path=temp_db) is None
        assert db.mark_failure_unresolved(
            failure.id, FailureStatus.OPEN, False, {}, db_path=temp_db
        ) is False

        stored = db.get_failure(failure.id, db_path=temp_db)
        assert stored.status == FailureStatus.RESOLVED
        assert stored.auto_recovered is False

    def test_escalated_failure_is_not_recoverable(self, temp_db, connection):
        failure = db.insert_failure(_failure(connection.id, FailureStatus.ESCALATED), db_path=temp_db)

        assert db.begin_recovery(failure.id, db_path=temp_db) is None
        assert db.list_recoverable_failures(db_path=temp_db) == []

    def test_begin_recovery_counts_attempts(self, temp_db, connection):
        failure = db.insert_failure(_failure(connection.id), db_path=temp_db)

        started = db.begin_recovery(failure.id, db_path=temp_db)
        assert started.status == FailureStatus.RETRYING
        assert started.recovery_attempts == 1
        assert db.record_recovery_attempt(failure.id, db_path=temp_db) is True
        assert db.get_failure(failure.id, db_path=temp_db).recovery_attempts == 2

    def test_list_filters(self, temp_db, connection):
        first = db.insert_failure(_failure(connection.id), db_path=temp_db)
        second = db.insert_failure(_failure(connection.id), db_path=temp_db)
        db.mark_failure_resolved(first.id, auto_recovered=True, db_path=temp_db)

        unresolved = db.list_failures(FailureFilter(resolved=False), db_path=temp_db)
        assert [f.id for f in unresolved] == [second.id]

        newest_first = db.list_failures(db_path=temp_db)
        assert [f.id for f in newest_first] == [second.id, first.id]

        counts = db.failure_counts(db_path=temp_db)
        assert counts["total"] == 2
        assert counts["auto_recovered"] == 1

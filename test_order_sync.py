"""
Order Sync Tests

Validates that paid storefront orders are mirrored into the ledger exactly once:
1. Payment gate - non-paid orders are no-ops
2. Idempotency gate - replays never create a second ledger sale
3. Partial mapping - unknown SKUs are dropped, the rest is mirrored
4. Failures are classified and persisted, never raised
5. Pull path stamps last_synced_at with the fetch start time
"""

import asyncio
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import make_order
from connectors.http_client import ConnectorError, ConnectorTimeoutError
from sync_engine import db
from sync_engine.errors import ConnectionNotFound
from sync_engine.models import ErrorCategory, FailureStatus, PaymentState


class TestPaymentAndIdempotencyGates:
    """Orders pass the payment gate once and are mirrored once."""

    def test_paid_order_is_mirrored(self, engine, ledger, connection, temp_db):
        order = make_order(connection, "500")

        result = asyncio.run(engine.process_order_event(connection.id, order))

        assert result.processed is True
        assert result.ledger_transaction_id == "T1"
        assert len(ledger.sales) == 1

        sale = ledger.sales[0]
        assert sale.external_reference == "woocommerce-500"
        assert sale.total == Decimal("20.00")
        assert sale.lines[0].variation_id == ledger.products["SKU-A"].variation_id

        entry = db.get_sales_entry(connection.id, "500", db_path=temp_db)
        assert entry is not None
        assert entry.ledger_transaction_id == "T1"
        assert entry.order_number == "#500"
        assert entry.customer_email == "jane@example.com"

    def test_replayed_order_is_already_processed(self, engine, ledger, connection):
        order = make_order(connection, "500")

        first = asyncio.run(engine.process_order_event(connection.id, order))
        second = asyncio.run(engine.process_order_event(connection.id, order))

        assert first.processed is True
        assert second.processed is False
        assert second.reason == "already_processed"
        assert len(ledger.sales) == 1

    def test_concurrent_deliveries_store_one_entry(self, engine, ledger, connection, temp_db):
        order = make_order(connection, "500")

        async def deliver_twice():
            return await asyncio.gather(
                engine.process_order_event(connection.id, order),
                engine.process_order_event(connection.id, order),
            )

        results = asyncio.run(deliver_twice())

        assert sorted(r.processed for r in results) == [False, True]
        loser = next(r for r in results if not r.processed)
        assert loser.reason == "already_processed"
        assert len(db.list_sales_entries(connection.id, db_path=temp_db)) == 1
        assert db.list_failures(db_path=temp_db) == []

    def test_unpaid_order_is_skipped(self, engine, ledger, connection, temp_db):
        order = make_order(connection, "501", payment_state=PaymentState.PENDING)

        result = asyncio.run(engine.process_order_event(connection.id, order))

        assert result.processed is False
        assert result.reason == "not_paid"
        assert ledger.sales == []
        assert db.get_sales_entry(connection.id, "501", db_path=temp_db) is None

    def test_pending_then_paid_is_mirrored_once(self, engine, ledger, connection):
        pending = make_order(connection, "502", payment_state=PaymentState.PENDING)
        paid = make_order(connection, "502")

        asyncio.run(engine.process_order_event(connection.id, pending))
        result = asyncio.run(engine.process_order_event(connection.id, paid))

        assert result.processed is True
        assert len(ledger.sales) == 1

    def test_same_order_id_on_two_connections(self, engine, ledger, connection, temp_db):
        other = db.create_connection("woocommerce", "https://other.example.com", db_path=temp_db)

        asyncio.run(engine.process_order_event(connection.id, make_order(connection, "500")))
        result = asyncio.run(engine.process_order_event(other.id, make_order(other, "500")))

        assert result.processed is True
        assert len(ledger.sales) == 2

    def test_disabled_connection_is_ignored(self, engine, ledger, connection, temp_db):
        db.set_connection_enabled(connection.id, False, db_path=temp_db)

        result = asyncio.run(engine.process_order_event(connection.id, make_order(connection)))

        assert result.reason == "connection_disabled"
        assert ledger.sales == []

    def test_unknown_connection_raises(self, engine, connection):
        with pytest.raises(ConnectionNotFound):
            asyncio.run(engine.process_order_event(9999, make_order(connection)))


class TestMapping:
    """Lines are resolved through the ledger by SKU."""

    def test_partial_mapping_mirrors_mapped_lines(self, engine, ledger, connection):
        order = make_order(
            connection,
            "600",
            lines=[("SKU-A", 2, "10.00"), ("NOPE", 1, "30.00"), (None, 1, "5.00")],
            total="55.00",
        )

        result = asyncio.run(engine.process_order_event(connection.id, order))

        assert result.processed is True
        assert result.unmapped_skus == ["NOPE"]
        sale = ledger.sales[0]
        assert [line.sku for line in sale.lines] == ["SKU-A"]
        # Only the mapped lines are booked
        assert sale.total == Decimal("20.00")
        assert sale.payment_amount == Decimal("20.00")

    def test_fully_mapped_order_uses_order_total(self, engine, ledger, connection):
        order = make_order(
            connection,
            "601",
            lines=[("SKU-A", 1, "10.00"), ("SKU-B", 1, "25.00")],
            total="38.50",
        )

        asyncio.run(engine.process_order_event(connection.id, order))

        assert ledger.sales[0].total == Decimal("38.50")

    def test_nothing_mapped_records_escalated_failure(self, engine, ledger, connection, temp_db):
        order = make_order(connection, "602", lines=[("NOPE", 1, "30.00")])

        result = asyncio.run(engine.process_order_event(connection.id, order))

        assert result.processed is False
        assert result.reason == "failed"
        assert result.unmapped_skus == ["NOPE"]
        assert ledger.sales == []

        failure = db.get_failure(result.failure_id, db_path=temp_db)
        assert failure.category == ErrorCategory.MAPPING_FAILED
        assert failure.status == FailureStatus.ESCALATED
        assert failure.requires_manual_intervention is True
        assert failure.external_order_id == "602"
        assert failure.context["next_step"]
        assert db.get_sales_entry(connection.id, "602", db_path=temp_db) is None


class TestFailureRecording:
    """Ledger errors are classified and stored with a replay context."""

    def test_server_error_is_order_processing_error(self, engine, ledger, connection, temp_db):
        ledger.sale_errors = [ConnectorError("Internal server error", 500)]

        result = asyncio.run(engine.process_order_event(connection.id, make_order(connection, "700")))

        assert result.reason == "failed"
        failure = db.get_failure(result.failure_id, db_path=temp_db)
        assert failure.category == ErrorCategory.ORDER_PROCESSING_ERROR
        assert failure.error_type == "OrderProcessingError"
        assert failure.status == FailureStatus.OPEN
        assert failure.requires_manual_intervention is False
        assert failure.context["operation"] == "order_sync"
        assert failure.context["status_code"] == 500
        assert failure.context["event"]["external_order_id"] == "700"
        assert failure.context["request"]["external_reference"] == "woocommerce-700"
        assert db.get_sales_entry(connection.id, "700", db_path=temp_db) is None

    def test_timeout_is_network_timeout(self, engine, ledger, connection, temp_db):
        ledger.sale_errors = [ConnectorTimeoutError("Request to ledger timed out after 30s")]

        result = asyncio.run(engine.process_order_event(connection.id, make_order(connection, "701")))

        failure = db.get_failure(result.failure_id, db_path=temp_db)
        assert failure.category == ErrorCategory.NETWORK_TIMEOUT
        assert failure.error_type == "OrderProcessingError"

    def test_failed_order_can_be_mirrored_later(self, engine, ledger, connection):
        ledger.sale_errors = [ConnectorError("Internal server error", 500)]
        order = make_order(connection, "702")

        first = asyncio.run(engine.process_order_event(connection.id, order))
        second = asyncio.run(engine.process_order_event(connection.id, order))

        assert first.reason == "failed"
        assert second.processed is True
        assert len(ledger.sales) == 1


class TestOrderPull:
    """The poll path shares every gate with the webhook path."""

    def test_sync_orders_counts_and_stamps(self, engine, ledger, platform, connection, temp_db):
        platform.orders = [
            make_order(connection, "800"),
            make_order(connection, "801", payment_state=PaymentState.PENDING),
            make_order(connection, "802", lines=[("NOPE", 1, "1.00")]),
        ]
        before = datetime.utcnow()

        batch = asyncio.run(engine.sync_orders(connection.id))

        assert batch.error is None
        assert batch.fetched == 3
        assert batch.processed == 1
        assert batch.skipped == 1
        assert batch.failed == 1
        assert platform.fetch_since == [None]

        stored = db.get_connection(connection.id, db_path=temp_db)
        assert stored.last_synced_at is not None
        assert stored.last_synced_at >= before

    def test_next_pull_starts_from_last_sync(self, engine, platform, connection, temp_db):
        asyncio.run(engine.sync_orders(connection.id))
        stamped = db.get_connection(connection.id, db_path=temp_db).last_synced_at

        asyncio.run(engine.sync_orders(connection.id))

        assert platform.fetch_since == [None, stamped]

    def test_fetch_failure_aborts_without_stamping(self, engine, platform, connection, temp_db):
        platform.fetch_error = ConnectorTimeoutError("Request timed out")

        batch = asyncio.run(engine.sync_orders(connection.id))

        assert batch.error == "Request timed out"
        assert batch.fetched == 0
        assert db.get_connection(connection.id, db_path=temp_db).last_synced_at is None

"""
Connector Normalization Tests

Validates the boundary between platform payloads and the engine's model:
1. Each storefront maps its own statuses onto the shared PaymentState
2. Orders, refunds and cancellations normalize to the same shapes
3. Webhook signatures are checked against the raw body
4. Prokip catalog and stock rows convert to the normalized ledger types
"""

import asyncio
import base64
import hashlib
import hmac
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from connectors import ShopifyAdapter, WooCommerceAdapter, get_platform_adapter
from connectors.http_client import ConfigurationError, NotFoundError
from connectors.ledger_base import LedgerConfig, SaleLine, SaleRequest, create_connector
from connectors.platform_base import (
    Connection,
    PaymentState,
    RefundKind,
    parse_timestamp,
    verify_hmac_signature,
)
from connectors.prokip import ProkipConnector
from connectors.prokip.prokip_auth import ProkipAuthConfig, ProkipAuthProvider, ProkipToken
from connectors.prokip.prokip_models import (
    ProkipProduct,
    ProkipStockReportRow,
    resolve_variation_id,
    to_ledger_product,
    to_stock_row,
)
from sync_engine.errors import classify_failure
from sync_engine.models import ErrorCategory


class FakeRestClient:
    """Records requests and answers from canned responses keyed by path."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.errors = {}
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    def _answer(self, method, path, payload):
        self.calls.append((method, path, payload))
        if path in self.errors:
            raise self.errors[path]
        return self.responses.get(path, {})

    async def get(self, path, params=None):
        return self._answer("GET", path, params)

    async def post(self, path, data, params=None):
        return self._answer("POST", path, data)

    async def put(self, path, data):
        return self._answer("PUT", path, data)

    async def get_all_pages(self, path, params=None, **kwargs):
        self.calls.append(("GET", path, params))
        return self.responses.get(path, [])

    def count(self, method, path):
        return sum(1 for m, p, _ in self.calls if m == method and p == path)


def _use_client(monkeypatch, adapter, client):
    monkeypatch.setattr(adapter, "_client", lambda connection: client)


@pytest.fixture
def woo_connection():
    return Connection(id=1, platform="woocommerce", store_identifier="https://shop.example.com")


@pytest.fixture
def shopify_connection():
    return Connection(id=2, platform="shopify", store_identifier="my-shop.myshopify.com")


class TestPaymentStateMapping:
    """Each adapter owns its status table."""

    @pytest.mark.parametrize("raw,expected", [
        ("processing", PaymentState.PAID),
        ("completed", PaymentState.PAID),
        ("pending", PaymentState.PENDING),
        ("on-hold", PaymentState.PENDING),
        ("cancelled", PaymentState.OTHER),
        ("refunded", PaymentState.OTHER),
        (None, PaymentState.OTHER),
    ])
    def test_woocommerce(self, raw, expected):
        assert WooCommerceAdapter().map_payment_state(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("paid", PaymentState.PAID),
        ("pending", PaymentState.PENDING),
        ("authorized", PaymentState.PENDING),
        ("partially_paid", PaymentState.PENDING),
        ("refunded", PaymentState.OTHER),
        ("voided", PaymentState.OTHER),
        (None, PaymentState.OTHER),
    ])
    def test_shopify(self, raw, expected):
        assert ShopifyAdapter().map_payment_state(raw) == expected


class TestWooCommerceNormalization:

    def test_order(self, woo_connection):
        payload = {
            "id": 500,
            "number": "500",
            "status": "completed",
            "total": "45.00",
            "currency": "KES",
            "date_created_gmt": "2024-03-01T09:00:00",
            "billing": {"first_name": "Jane", "last_name": "Doe", "email": "jane@example.com"},
            "line_items": [
                {"sku": "SKU-A", "quantity": 2, "price": 10, "total": "20.00", "name": "Item A"},
                {"sku": "", "quantity": 1, "price": 25, "total": "25.00", "name": "Gift wrap"},
            ],
        }

        order = WooCommerceAdapter().normalize_order(woo_connection, payload)

        assert order.external_order_id == "500"
        assert order.platform == "woocommerce"
        assert order.payment_state == PaymentState.PAID
        assert order.raw_status == "completed"
        assert order.total == Decimal("45.00")
        assert order.line_items[0].unit_price == Decimal("10")
        assert order.line_items[1].sku is None
        assert order.created_at == datetime(2024, 3, 1, 9, 0, 0)

    def test_refund_resource(self, woo_connection):
        payload = {
            "id": 77,
            "parent_id": 500,
            "amount": "10.00",
            "line_items": [
                {"sku": "SKU-A", "quantity": -1, "price": -10},
                {"sku": "SKU-B", "quantity": 0, "price": 0},
            ],
        }

        event = WooCommerceAdapter().normalize_refund(woo_connection, payload)

        assert event.kind == RefundKind.REFUND
        assert event.external_order_id == "500"
        assert event.compensation_key == "refund-77"
        assert len(event.lines) == 1
        assert event.lines[0].quantity == 1
        assert event.lines[0].unit_price == Decimal("10")

    def test_refunded_status_is_full_refund(self, woo_connection):
        payload = {"id": 500, "status": "refunded", "line_items": [{"sku": "SKU-A", "quantity": 2}]}

        event = WooCommerceAdapter().normalize_refund(woo_connection, payload)

        assert event.kind == RefundKind.REFUND
        assert event.compensation_key == "refund-full"

    def test_non_order_topics_are_ignored(self, woo_connection):
        adapter = WooCommerceAdapter()
        assert adapter.normalize_webhook(woo_connection, "product.updated", {"id": 1}) is None
        assert adapter.normalize_webhook(woo_connection, "order.deleted", {"id": 1}) is None


class TestShopifyNormalization:

    def test_order_applies_line_discount(self, shopify_connection):
        payload = {
            "id": 4501,
            "name": "#1001",
            "financial_status": "paid",
            "total_price": "18.00",
            "created_at": "2024-03-01T12:00:00+03:00",
            "email": "jane@example.com",
            "line_items": [{"sku": "SKU-A", "quantity": 2, "price": "10.00", "total_discount": "2.00"}],
        }

        order = ShopifyAdapter().normalize_order(shopify_connection, payload)

        assert order.order_number == "#1001"
        assert order.line_items[0].line_total == Decimal("18.00")
        assert order.customer["email"] == "jane@example.com"
        assert order.created_at == datetime(2024, 3, 1, 9, 0, 0)

    def test_refund_skips_zero_quantity_lines(self, shopify_connection):
        payload = {
            "id": 9001,
            "order_id": 4501,
            "refund_line_items": [
                {"quantity": 0, "line_item": {"sku": "SKU-B"}},
                {"quantity": 2, "line_item": {"sku": "SKU-A", "price": "10.00"}},
            ],
        }

        event = ShopifyAdapter().normalize_refund(shopify_connection, payload)

        assert [line.sku for line in event.lines] == ["SKU-A"]
        assert event.compensation_key == "refund-9001"

    def test_updated_order_without_cancellation_is_an_order(self, shopify_connection):
        payload = {"id": 4501, "financial_status": "pending", "line_items": []}

        event = ShopifyAdapter().normalize_webhook(shopify_connection, "orders/updated", payload)

        assert event.external_order_id == "4501"
        assert event.payment_state == PaymentState.PENDING


class TestStorefrontCalls:
    """Requests the adapters send and how they read the answers."""

    def test_woocommerce_pull_filters_on_modification_time(self, monkeypatch, woo_connection):
        adapter = WooCommerceAdapter()
        client = FakeRestClient({"orders": [{"id": 501, "status": "processing", "line_items": []}]})
        _use_client(monkeypatch, adapter, client)

        orders = asyncio.run(adapter.fetch_orders(woo_connection, since=datetime(2024, 3, 1, 9, 0, 0)))

        assert [o.external_order_id for o in orders] == ["501"]
        _, path, params = client.calls[0]
        assert path == "orders"
        assert params["modified_after"] == "2024-03-01T09:00:00"
        assert params["dates_are_gmt"] == "true"
        assert "after" not in params

    def test_woocommerce_products(self, monkeypatch, woo_connection):
        adapter = WooCommerceAdapter()
        _use_client(monkeypatch, adapter, FakeRestClient({"products": [
            {"id": 5, "sku": "SKU-A", "name": "Item A", "stock_quantity": 4},
            {"id": 6, "sku": "", "name": "Gift card"},
        ]}))

        products = asyncio.run(adapter.fetch_products(woo_connection))

        assert [(p.external_id, p.sku, p.stock_quantity) for p in products] == [
            ("5", "SKU-A", 4),
            ("6", None, None),
        ]

    def test_shopify_products_are_listed_per_variant(self, monkeypatch, shopify_connection):
        adapter = ShopifyAdapter()
        _use_client(monkeypatch, adapter, FakeRestClient({"products.json": {"products": [
            {"id": 1, "title": "Shirt", "variants": [
                {"id": 11, "sku": "SHIRT-S", "inventory_quantity": 3},
                {"id": 12, "sku": "", "inventory_quantity": 1},
            ]},
        ]}}))

        products = asyncio.run(adapter.fetch_products(shopify_connection))

        assert [(p.external_id, p.sku, p.name) for p in products] == [
            ("11", "SHIRT-S", "Shirt"),
            ("12", None, "Shirt"),
        ]


class TestShopifySkuIndex:
    """SKU lookups list the catalog once per TTL, including misses."""

    @pytest.fixture
    def store(self):
        return Connection(
            id=2,
            platform="shopify",
            store_identifier="my-shop.myshopify.com",
            credentials={"access_token": "shpat_test", "location_id": "7"},
        )

    @pytest.fixture
    def catalog(self):
        return FakeRestClient({"products.json": {"products": [
            {"id": 1, "variants": [{"id": 11, "sku": "SKU-A", "inventory_item_id": 111}]},
        ]}})

    def test_missing_skus_do_not_relist_the_catalog(self, monkeypatch, store, catalog):
        adapter = ShopifyAdapter()
        _use_client(monkeypatch, adapter, catalog)

        for sku in ("NOPE-1", "NOPE-2"):
            with pytest.raises(NotFoundError):
                asyncio.run(adapter.set_stock_level(store, sku, 3))
        asyncio.run(adapter.set_stock_level(store, "SKU-A", 3))

        assert catalog.count("GET", "products.json") == 1
        assert catalog.calls[-1] == (
            "POST",
            "inventory_levels/set.json",
            {"location_id": 7, "inventory_item_id": 111, "available": 3},
        )

    def test_index_expires(self, monkeypatch, store, catalog):
        now = [1000.0]
        adapter = ShopifyAdapter(clock=lambda: now[0])
        _use_client(monkeypatch, adapter, catalog)

        asyncio.run(adapter.set_stock_level(store, "SKU-A", 1))
        now[0] += 60
        asyncio.run(adapter.set_stock_level(store, "SKU-A", 2))
        now[0] += 300
        asyncio.run(adapter.set_stock_level(store, "SKU-A", 3))

        assert catalog.count("GET", "products.json") == 2

    def test_not_found_on_write_drops_the_index(self, monkeypatch, store, catalog):
        adapter = ShopifyAdapter()
        _use_client(monkeypatch, adapter, catalog)
        catalog.errors["inventory_levels/set.json"] = NotFoundError("Not Found", 404)

        with pytest.raises(NotFoundError):
            asyncio.run(adapter.set_stock_level(store, "SKU-A", 3))
        del catalog.errors["inventory_levels/set.json"]
        asyncio.run(adapter.set_stock_level(store, "SKU-A", 3))

        assert catalog.count("GET", "products.json") == 2


class TestBoundaryHelpers:

    def test_signature_matches_raw_body(self):
        body = b'{"id": 1}'
        signature = base64.b64encode(hmac.new(b"secret", body, hashlib.sha256).digest()).decode()

        assert verify_hmac_signature(body, signature, "secret") is True
        assert verify_hmac_signature(body + b" ", signature, "secret") is False
        assert verify_hmac_signature(body, None, "secret") is False
        assert verify_hmac_signature(body, signature, "") is False

    def test_parse_timestamp_to_naive_utc(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12, 0, 0)
        assert parse_timestamp("2024-03-01T12:00:00-05:00") == datetime(2024, 3, 1, 17, 0, 0)

    def test_adapter_registry(self):
        assert isinstance(get_platform_adapter("Shopify"), ShopifyAdapter)
        with pytest.raises(ValueError):
            get_platform_adapter("magento")


class TestProkipConversion:

    def test_first_variation_is_used(self):
        product = ProkipProduct.model_validate({
            "id": 10,
            "sku": "SKU-A",
            "name": "Item A",
            "product_variations": [
                {"variations": [{"id": 1, "sell_price_inc_tax": "12.50"}]},
                {"variations": [{"variation_id": 31}, {"variation_id": 32}]},
            ],
        })

        assert resolve_variation_id(product) == 31
        ledger_product = to_ledger_product(product)
        assert ledger_product.variation_id == "31"
        assert ledger_product.price == Decimal("12.50")

    def test_product_without_variations_uses_base_id(self):
        product = ProkipProduct.model_validate({"id": 10, "sku": "SKU-A"})
        assert resolve_variation_id(product) == 10

    def test_stock_rows(self):
        assert to_stock_row(ProkipStockReportRow(sku=None, stock=Decimal("3"))) is None
        row = to_stock_row(ProkipStockReportRow(sku="SKU-A", stock=Decimal("-2")), location_id="1")
        assert row.quantity == 0
        assert row.location_id == "1"
        row = to_stock_row(ProkipStockReportRow(sku="SKU-B", qty_available=Decimal("7.0")))
        assert row.quantity == 7


class TestProkipConfiguration:

    def test_registry_builds_prokip_connector(self):
        connector = create_connector(LedgerConfig(
            connector_type="Prokip",
            base_url="https://api.prokip.africa",
            location_id="1",
        ))
        assert isinstance(connector, ProkipConnector)

    def test_missing_url_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            ProkipConnector(LedgerConfig(connector_type="prokip"))

    def test_sale_without_contact_is_a_configuration_error(self):
        connector = ProkipConnector(LedgerConfig(
            connector_type="prokip",
            base_url="https://api.prokip.africa",
            location_id="1",
        ))
        request = SaleRequest(
            external_reference="woocommerce-500",
            transaction_date=datetime(2024, 3, 1, 12, 0, 0),
            lines=[SaleLine(product_id="10", variation_id="31", sku="SKU-A", quantity=1, unit_price=Decimal("10"))],
            total=Decimal("10"),
            payment_amount=Decimal("10"),
        )

        with pytest.raises(ConfigurationError, match="PROKIP_CONTACT_ID"):
            asyncio.run(connector.record_sale(request))

    def test_missing_credentials_fail_before_any_request(self):
        provider = ProkipAuthProvider(ProkipAuthConfig(
            api_url="https://api.prokip.africa",
            client_id="",
            client_secret="",
            username="ops@example.com",
            password="",
        ))

        with pytest.raises(ConfigurationError, match="client_id, client_secret, password"):
            asyncio.run(provider.authenticate())

    def test_token_expires_with_buffer(self):
        fresh = ProkipToken(access_token="a", token_type="Bearer", expires_in=3600)
        nearly = ProkipToken(
            access_token="a",
            token_type="Bearer",
            expires_in=3600,
            obtained_at=datetime.utcnow() - timedelta(minutes=56),
        )

        assert fresh.is_expired is False
        assert nearly.is_expired is True
        assert fresh.authorization_header == "Bearer a"


class TestClassification:

    @pytest.mark.parametrize("message,expected", [
        ("ECONNRESET while reading response", ErrorCategory.NETWORK_TIMEOUT),
        ("HTTP 429 Too Many Requests", ErrorCategory.RATE_LIMIT),
        ("401 Unauthorized", ErrorCategory.AUTH_ERROR),
        ("Product not found", ErrorCategory.PRODUCT_NOT_FOUND),
        ("Something odd happened", ErrorCategory.INVENTORY_SYNC_ERROR),
    ])
    def test_message_markers(self, message, expected):
        assert classify_failure(Exception(message), default=ErrorCategory.INVENTORY_SYNC_ERROR) == expected

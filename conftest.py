"""Shared test fixtures.

Provides in-memory stand-ins for the ledger connector and a storefront
adapter, a temporary sync database and an engine wired to all three.
"""

import asyncio
import os
import sys
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parent))

from connectors.ledger_base import (
    LedgerConfig,
    LedgerConnector,
    LedgerProduct,
    ReturnRequest,
    ReturnResult,
    SaleRequest,
    SaleResult,
    StockRow,
)
from connectors.platform_base import (
    Connection,
    NormalizedOrder,
    OrderLine,
    PaymentState,
    PlatformAdapter,
    RefundEvent,
    RefundKind,
    RefundLine,
    StorefrontProduct,
    verify_hmac_signature,
)
from sync_engine import SyncEngine, db


# =============================================================================
# Fakes
# =============================================================================

class FakeLedger(LedgerConnector):
    """In-memory ledger.

    Errors queued in sale_errors / return_errors are raised by the next
    calls, one per call, in order.
    """

    def __init__(self):
        super().__init__(LedgerConfig(connector_type="fake", location_id="1", contact_id=1))
        self.products: Dict[str, LedgerProduct] = {}
        self.stock: Dict[str, int] = {}
        self.sales: List[SaleRequest] = []
        self.returns: List[ReturnRequest] = []
        self.sale_errors: List[Exception] = []
        self.return_errors: List[Exception] = []
        self.stock_error: Optional[Exception] = None
        self.omit_transaction_id = False
        self.refresh_result = True
        self.refresh_calls = 0
        self._sale_ids: Dict[str, str] = {}

    def add_product(self, sku: str, price: str = "10.00", quantity: Optional[int] = None) -> LedgerProduct:
        number = len(self.products) + 1
        product = LedgerProduct(
            product_id=str(100 + number),
            variation_id=str(200 + number),
            sku=sku,
            name=f"Product {sku}",
            price=Decimal(price),
        )
        self.products[sku] = product
        if quantity is not None:
            self.stock[sku] = quantity
        return product

    async def connect(self) -> bool:
        return True

    async def disconnect(self) -> None:
        pass

    async def refresh_auth(self) -> bool:
        self.refresh_calls += 1
        return self.refresh_result

    async def list_stock(self, location_id: Optional[str] = None) -> List[StockRow]:
        if self.stock_error is not None:
            raise self.stock_error
        return [StockRow(sku=sku, quantity=qty) for sku, qty in self.stock.items()]

    async def list_products(self, location_id: Optional[str] = None) -> List[LedgerProduct]:
        if self.stock_error is not None:
            raise self.stock_error
        return list(self.products.values())

    async def find_product_by_sku(self, sku: str) -> Optional[LedgerProduct]:
        return self.products.get(sku)

    async def record_sale(self, request: SaleRequest) -> SaleResult:
        # Let concurrent deliveries interleave at the ledger call
        await asyncio.sleep(0)
        if self.sale_errors:
            raise self.sale_errors.pop(0)
        self.sales.append(request)
        transaction_id = f"T{len(self.sales)}"
        self._sale_ids[request.external_reference] = transaction_id
        return SaleResult(
            transaction_id=None if self.omit_transaction_id else transaction_id,
            external_reference=request.external_reference,
        )

    async def record_return(self, request: ReturnRequest) -> ReturnResult:
        if self.return_errors:
            raise self.return_errors.pop(0)
        self.returns.append(request)
        return ReturnResult(return_id=f"R{len(self.returns)}", transaction_id=request.transaction_id)

    async def find_sale_by_reference(self, reference: str) -> Optional[SaleResult]:
        transaction_id = self._sale_ids.get(reference)
        if transaction_id is None:
            return None
        return SaleResult(transaction_id=transaction_id, external_reference=reference)


class FakePlatform(PlatformAdapter):
    """In-memory storefront.

    Errors queued in push_errors[sku] are raised by the next pushes of that
    SKU, one per call.
    """

    platform = "woocommerce"

    def __init__(self):
        super().__init__(timeout_seconds=5)
        self.orders: List[NormalizedOrder] = []
        self.fetch_error: Optional[Exception] = None
        self.fetch_since: List[Optional[datetime]] = []
        self.pushes: List[Tuple[str, int]] = []
        self.push_errors: Dict[str, List[Exception]] = {}
        self.created: List[Tuple[str, Optional[int]]] = []

    async def fetch_orders(self, connection: Connection, since: Optional[datetime] = None) -> List[NormalizedOrder]:
        self.fetch_since.append(since)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.orders)

    async def fetch_products(self, connection: Connection) -> List[StorefrontProduct]:
        return []

    async def set_stock_level(self, connection: Connection, sku: str, quantity: int) -> None:
        errors = self.push_errors.get(sku)
        if errors:
            raise errors.pop(0)
        self.pushes.append((sku, quantity))

    async def create_or_update_product(
        self,
        connection: Connection,
        product: LedgerProduct,
        quantity: Optional[int] = None,
    ) -> None:
        self.created.append((product.sku, quantity))

    def map_payment_state(self, raw: Optional[str]) -> PaymentState:
        return PaymentState.PAID if raw == "paid" else PaymentState.OTHER

    def normalize_order(self, connection: Connection, payload: Dict[str, Any]) -> NormalizedOrder:
        return make_order(connection, str(payload["id"]))

    def normalize_refund(self, connection: Connection, payload: Dict[str, Any]) -> Optional[RefundEvent]:
        return None

    def normalize_webhook(self, connection: Connection, topic: str, payload: Dict[str, Any]):
        return None

    @staticmethod
    def verify_webhook(body: bytes, signature: Optional[str], secret: str) -> bool:
        return verify_hmac_signature(body, signature, secret)


class SleepRecorder:
    """Awaitable sleep that records the requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# =============================================================================
# Builders
# =============================================================================

def make_order(
    connection: Connection,
    external_order_id: str = "500",
    lines: Optional[List[Tuple[Optional[str], int, str]]] = None,
    payment_state: PaymentState = PaymentState.PAID,
    total: Optional[str] = None,
) -> NormalizedOrder:
    """Build an order from (sku, quantity, unit_price) tuples."""
    lines = lines if lines is not None else [("SKU-A", 2, "10.00")]
    order_lines = [
        OrderLine(
            sku=sku,
            quantity=quantity,
            unit_price=Decimal(price),
            line_total=Decimal(price) * quantity,
            name=f"Item {sku}",
        )
        for sku, quantity, price in lines
    ]
    return NormalizedOrder(
        connection_id=connection.id,
        platform=connection.platform,
        external_order_id=external_order_id,
        order_number=f"#{external_order_id}",
        line_items=order_lines,
        total=Decimal(total) if total is not None else sum(
            (line.line_total for line in order_lines), Decimal("0")
        ),
        currency="KES",
        payment_state=payment_state,
        raw_status="processing" if payment_state == PaymentState.PAID else "pending",
        customer={"name": "Jane Doe", "email": "jane@example.com"},
        created_at=datetime(2024, 3, 1, 12, 0, 0),
    )


def make_refund(
    connection: Connection,
    external_order_id: str = "500",
    lines: Optional[List[Tuple[Optional[str], int]]] = None,
    kind: RefundKind = RefundKind.CANCELLATION,
    refund_id: Optional[str] = None,
) -> RefundEvent:
    """Build a cancellation or refund from (sku, quantity) tuples."""
    lines = lines if lines is not None else [("SKU-A", 2)]
    return RefundEvent(
        connection_id=connection.id,
        platform=connection.platform,
        external_order_id=external_order_id,
        kind=kind,
        refund_id=refund_id,
        lines=[RefundLine(sku=sku, quantity=quantity, unit_price=Decimal("10.00")) for sku, quantity in lines],
        created_at=datetime(2024, 3, 2, 9, 0, 0),
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_db():
    """Create a temporary sync database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    db.init_sync_db(db_path)
    yield db_path

    # Cleanup - try to delete, ignore errors on Windows
    try:
        os.unlink(db_path)
    except PermissionError:
        pass


@pytest.fixture
def ledger():
    fake = FakeLedger()
    fake.add_product("SKU-A", "10.00", quantity=5)
    fake.add_product("SKU-B", "25.00", quantity=0)
    return fake


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def engine(ledger, platform, sleeper, temp_db):
    return SyncEngine(
        ledger,
        db_path=temp_db,
        adapters={"woocommerce": platform},
        write_delay_seconds=0,
        sleep=sleeper,
    )


@pytest.fixture
def connection(temp_db):
    return db.create_connection(
        "woocommerce",
        "https://shop.example.com",
        {"consumer_key": "ck_test", "consumer_secret": "cs_test"},
        db_path=temp_db,
    )

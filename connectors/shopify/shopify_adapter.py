"""Shopify Platform Adapter.

Talks to the Shopify Admin REST API (``https://{shop}/admin/api/2024-01/``)
with an access token header.

Connection.credentials:
- access_token
- location_id (optional; first active location is used otherwise)
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from connectors.http_client import ConfigurationError, NotFoundError, RestClient
from connectors.ledger_base import LedgerProduct
from connectors.platform_base import (
    Connection,
    NormalizedOrder,
    OrderLine,
    PaymentState,
    Platform,
    PlatformAdapter,
    RefundEvent,
    RefundKind,
    RefundLine,
    StorefrontProduct,
    WebhookEvent,
    parse_timestamp,
    register_platform,
    to_decimal,
    verify_hmac_signature,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)

API_VERSION = "2024-01"
PAGE_LIMIT = 250

# A SKU index older than this is rebuilt on the next lookup
SKU_INDEX_TTL_SECONDS = 300

PENDING_FINANCIAL_STATUSES = {"pending", "authorized", "partially_paid"}

SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
SHOP_HEADER = "X-Shopify-Shop-Domain"
TOPIC_HEADER = "X-Shopify-Topic"


@register_platform(Platform.SHOPIFY.value)
class ShopifyAdapter(PlatformAdapter):
    """Shopify storefront adapter."""

    def __init__(self, timeout_seconds: int = 30, clock: Callable[[], float] = time.monotonic):
        super().__init__(timeout_seconds)
        # connection_id -> {sku: (product_id, variant_id, inventory_item_id)}
        self._sku_index: Dict[int, Dict[str, Tuple[int, int, int]]] = {}
        self._indexed_at: Dict[int, float] = {}
        self._clock = clock
        self._location_cache: Dict[int, int] = {}

    def _client(self, connection: Connection) -> RestClient:
        token = connection.credentials.get("access_token")
        if not token:
            raise ConfigurationError(
                f"Shopify configuration error: connection {connection.id} has no access token"
            )
        shop = connection.store_identifier.replace("https://", "").rstrip("/")
        return RestClient(
            f"https://{shop}/admin/api/{API_VERSION}/",
            headers={"X-Shopify-Access-Token": token},
            timeout_seconds=self.timeout_seconds,
        )

    async def _list_since_id(
        self,
        client: RestClient,
        path: str,
        key: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Page through a list endpoint with since_id."""
        records: List[Dict[str, Any]] = []
        since_id = 0
        while True:
            query = dict(params or {})
            query["limit"] = str(PAGE_LIMIT)
            query["since_id"] = str(since_id)
            page = (await client.get(path, params=query)).get(key, [])
            if not page:
                break
            records.extend(page)
            if len(page) < PAGE_LIMIT:
                break
            since_id = page[-1]["id"]
        return records

    # =========================================================================
    # Remote operations
    # =========================================================================

    async def fetch_orders(
        self,
        connection: Connection,
        since: Optional[datetime] = None,
    ) -> List[NormalizedOrder]:
        params = {"status": "any"}
        if since:
            params["updated_at_min"] = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        async with self._client(connection) as client:
            payloads = await self._list_since_id(client, "orders.json", "orders", params)
        return [self.normalize_order(connection, p) for p in payloads]

    async def fetch_products(self, connection: Connection) -> List[StorefrontProduct]:
        async with self._client(connection) as client:
            payloads = await self._list_since_id(client, "products.json", "products")
        products = []
        for product in payloads:
            for variant in product.get("variants", []):
                products.append(StorefrontProduct(
                    external_id=str(variant["id"]),
                    sku=variant.get("sku") or None,
                    name=product.get("title", ""),
                    stock_quantity=variant.get("inventory_quantity"),
                ))
        return products

    async def _variant_index(
        self,
        client: RestClient,
        connection: Connection,
    ) -> Dict[str, Tuple[int, int, int]]:
        """SKU -> variant ids for a store, listed once per SKU_INDEX_TTL_SECONDS.

        A SKU missing from a fresh index is reported missing without another
        catalog listing.
        """
        indexed_at = self._indexed_at.get(connection.id)
        if indexed_at is not None and self._clock() - indexed_at < SKU_INDEX_TTL_SECONDS:
            return self._sku_index[connection.id]

        products = await self._list_since_id(
            client, "products.json", "products", {"fields": "id,variants"}
        )
        index: Dict[str, Tuple[int, int, int]] = {}
        for product in products:
            for variant in product.get("variants", []):
                if variant.get("sku"):
                    index[variant["sku"]] = (
                        product["id"],
                        variant["id"],
                        variant["inventory_item_id"],
                    )
        self._sku_index[connection.id] = index
        self._indexed_at[connection.id] = self._clock()
        logger.debug(f"Indexed {len(index)} Shopify SKU(s) for connection {connection.id}")
        return index

    async def _find_variant(
        self,
        client: RestClient,
        connection: Connection,
        sku: str,
    ) -> Optional[Tuple[int, int, int]]:
        return (await self._variant_index(client, connection)).get(sku)

    def _forget_index(self, connection: Connection) -> None:
        """Drop a store's SKU index after a write hit a variant that no longer exists."""
        self._sku_index.pop(connection.id, None)
        self._indexed_at.pop(connection.id, None)

    async def _location_id(self, client: RestClient, connection: Connection) -> int:
        configured = connection.credentials.get("location_id")
        if configured:
            return int(configured)
        if connection.id in self._location_cache:
            return self._location_cache[connection.id]
        locations = (await client.get("locations.json")).get("locations", [])
        active = [loc for loc in locations if loc.get("active", True)]
        if not active:
            raise ConfigurationError(
                f"Shopify configuration error: store {connection.store_identifier} has no active location"
            )
        self._location_cache[connection.id] = active[0]["id"]
        return active[0]["id"]

    async def set_stock_level(self, connection: Connection, sku: str, quantity: int) -> None:
        async with self._client(connection) as client:
            variant = await self._find_variant(client, connection, sku)
            if variant is None:
                raise NotFoundError(f"SKU not found on Shopify store: {sku}", 404)
            _, _, inventory_item_id = variant
            location_id = await self._location_id(client, connection)
            try:
                await client.post("inventory_levels/set.json", {
                    "location_id": location_id,
                    "inventory_item_id": inventory_item_id,
                    "available": max(0, int(quantity)),
                })
            except NotFoundError:
                self._forget_index(connection)
                raise
        logger.debug(f"Shopify stock for {sku} set to {quantity}")

    async def create_or_update_product(
        self,
        connection: Connection,
        product: LedgerProduct,
        quantity: Optional[int] = None,
    ) -> None:
        async with self._client(connection) as client:
            variant = await self._find_variant(client, connection, product.sku)
            if variant is not None:
                product_id, variant_id, _ = variant
                try:
                    await client.put(f"variants/{variant_id}.json", {
                        "variant": {"id": variant_id, "price": str(product.price)},
                    })
                    await client.put(f"products/{product_id}.json", {
                        "product": {"id": product_id, "title": product.name or product.sku},
                    })
                except NotFoundError:
                    self._forget_index(connection)
                    raise
                logger.info(f"Updated Shopify product {product.sku}")
            else:
                created = await client.post("products.json", {
                    "product": {
                        "title": product.name or product.sku,
                        "body_html": product.description or "",
                        "variants": [{
                            "sku": product.sku,
                            "price": str(product.price),
                            "inventory_management": "shopify",
                        }],
                    },
                })
                new_product = created.get("product", {})
                index = self._sku_index.setdefault(connection.id, {})
                for v in new_product.get("variants", []):
                    if v.get("sku"):
                        index[v["sku"]] = (new_product["id"], v["id"], v["inventory_item_id"])
                logger.info(f"Created Shopify product {product.sku}")

        if quantity is not None:
            await self.set_stock_level(connection, product.sku, quantity)

    # =========================================================================
    # Boundary normalization
    # =========================================================================

    def map_payment_state(self, raw: Optional[str]) -> PaymentState:
        status = (raw or "").lower()
        if status == "paid":
            return PaymentState.PAID
        if status in PENDING_FINANCIAL_STATUSES:
            return PaymentState.PENDING
        return PaymentState.OTHER

    def normalize_order(self, connection: Connection, payload: Dict[str, Any]) -> NormalizedOrder:
        lines = []
        for item in payload.get("line_items", []):
            quantity = int(item.get("quantity", 0))
            unit_price = to_decimal(item.get("price"))
            lines.append(OrderLine(
                sku=item.get("sku") or None,
                quantity=quantity,
                unit_price=unit_price,
                line_total=unit_price * quantity - to_decimal(item.get("total_discount")),
                name=item.get("name") or item.get("title"),
            ))

        customer = payload.get("customer") or {}
        financial_status = payload.get("financial_status")
        return NormalizedOrder(
            connection_id=connection.id,
            platform=Platform.SHOPIFY.value,
            external_order_id=str(payload["id"]),
            order_number=str(payload.get("name") or payload.get("order_number") or payload["id"]),
            line_items=lines,
            total=to_decimal(payload.get("total_price")),
            currency=payload.get("currency"),
            payment_state=self.map_payment_state(financial_status),
            raw_status=financial_status,
            customer={
                "name": " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p) or None,
                "email": customer.get("email") or payload.get("email"),
            },
            created_at=parse_timestamp(payload.get("created_at")),
        )

    def normalize_refund(
        self,
        connection: Connection,
        payload: Dict[str, Any],
    ) -> Optional[RefundEvent]:
        # refunds/create delivers a refund resource with refund_line_items
        if "refund_line_items" in payload:
            lines = []
            for item in payload.get("refund_line_items", []):
                line_item = item.get("line_item") or {}
                quantity = int(item.get("quantity", 0))
                if quantity <= 0:
                    continue
                lines.append(RefundLine(
                    sku=line_item.get("sku") or None,
                    quantity=quantity,
                    unit_price=to_decimal(line_item.get("price")),
                    name=line_item.get("name"),
                ))
            if not lines:
                return None
            return RefundEvent(
                connection_id=connection.id,
                platform=Platform.SHOPIFY.value,
                external_order_id=str(payload["order_id"]),
                kind=RefundKind.REFUND,
                refund_id=str(payload["id"]),
                lines=lines,
                created_at=parse_timestamp(payload.get("created_at")),
            )

        if not payload.get("cancelled_at"):
            return None
        return RefundEvent(
            connection_id=connection.id,
            platform=Platform.SHOPIFY.value,
            external_order_id=str(payload["id"]),
            kind=RefundKind.CANCELLATION,
            lines=[
                RefundLine(
                    sku=item.get("sku") or None,
                    quantity=int(item.get("quantity", 0)),
                    unit_price=to_decimal(item.get("price")),
                    name=item.get("name"),
                )
                for item in payload.get("line_items", [])
            ],
            created_at=parse_timestamp(payload.get("cancelled_at")),
        )

    def normalize_webhook(
        self,
        connection: Connection,
        topic: str,
        payload: Dict[str, Any],
    ) -> Optional[WebhookEvent]:
        topic = (topic or "").lower()
        if topic == "refunds/create":
            return self.normalize_refund(connection, payload)
        if topic in ("orders/create", "orders/paid", "orders/updated", "orders/cancelled"):
            refund = self.normalize_refund(connection, payload)
            if refund is not None:
                return refund
            if topic == "orders/cancelled":
                return None
            return self.normalize_order(connection, payload)
        return None

    @staticmethod
    def verify_webhook(body: bytes, signature: Optional[str], secret: str) -> bool:
        return verify_hmac_signature(body, signature, secret)

"""WooCommerce Platform Adapter.

Talks to the WooCommerce REST API (``{store}/wp-json/wc/v3/``) with consumer
key/secret basic auth.

Connection.credentials:
- consumer_key
- consumer_secret
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

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

PAID_STATUSES = {"processing", "completed"}
PENDING_STATUSES = {"pending", "on-hold"}
CANCELLED_STATUSES = {"cancelled"}
REFUNDED_STATUSES = {"refunded"}

SIGNATURE_HEADER = "X-WC-Webhook-Signature"
SOURCE_HEADER = "X-WC-Webhook-Source"
TOPIC_HEADER = "X-WC-Webhook-Topic"


@register_platform(Platform.WOOCOMMERCE.value)
class WooCommerceAdapter(PlatformAdapter):
    """WooCommerce storefront adapter."""

    def _client(self, connection: Connection) -> RestClient:
        key = connection.credentials.get("consumer_key")
        secret = connection.credentials.get("consumer_secret")
        if not key or not secret:
            raise ConfigurationError(
                f"WooCommerce configuration error: connection {connection.id} has no consumer key/secret"
            )
        return RestClient(
            f"{connection.store_identifier.rstrip('/')}/wp-json/wc/v3/",
            basic_auth=(key, secret),
            timeout_seconds=self.timeout_seconds,
        )

    # =========================================================================
    # Remote operations
    # =========================================================================

    async def fetch_orders(
        self,
        connection: Connection,
        since: Optional[datetime] = None,
    ) -> List[NormalizedOrder]:
        params = {"orderby": "date", "order": "asc"}
        if since:
            # since is naive UTC; picks up orders paid or changed after creation
            params["modified_after"] = since.strftime("%Y-%m-%dT%H:%M:%S")
            params["dates_are_gmt"] = "true"
        async with self._client(connection) as client:
            payloads = await client.get_all_pages("orders", params=params)
        return [self.normalize_order(connection, p) for p in payloads]

    async def fetch_products(self, connection: Connection) -> List[StorefrontProduct]:
        async with self._client(connection) as client:
            payloads = await client.get_all_pages("products")
        return [
            StorefrontProduct(
                external_id=str(p["id"]),
                sku=p.get("sku") or None,
                name=p.get("name", ""),
                stock_quantity=p.get("stock_quantity"),
            )
            for p in payloads
        ]

    async def _find_by_sku(self, client: RestClient, sku: str) -> Optional[Dict[str, Any]]:
        results = await client.get("products", params={"sku": sku})
        for product in results or []:
            if product.get("sku") == sku:
                return product
        return None

    @staticmethod
    def _product_path(product: Dict[str, Any]) -> str:
        # SKU search also returns variations; those are written through their parent
        parent_id = product.get("parent_id")
        if parent_id:
            return f"products/{parent_id}/variations/{product['id']}"
        return f"products/{product['id']}"

    async def set_stock_level(self, connection: Connection, sku: str, quantity: int) -> None:
        async with self._client(connection) as client:
            product = await self._find_by_sku(client, sku)
            if product is None:
                raise NotFoundError(f"SKU not found on WooCommerce store: {sku}", 404)
            await client.put(
                self._product_path(product),
                {"manage_stock": True, "stock_quantity": max(0, int(quantity))},
            )
        logger.debug(f"WooCommerce stock for {sku} set to {quantity}")

    async def create_or_update_product(
        self,
        connection: Connection,
        product: LedgerProduct,
        quantity: Optional[int] = None,
    ) -> None:
        body: Dict[str, Any] = {
            "name": product.name or product.sku,
            "sku": product.sku,
            "regular_price": str(product.price),
            "manage_stock": True,
        }
        if product.description:
            body["description"] = product.description
        if quantity is not None:
            body["stock_quantity"] = max(0, int(quantity))

        async with self._client(connection) as client:
            existing = await self._find_by_sku(client, product.sku)
            if existing is not None:
                await client.put(self._product_path(existing), body)
                logger.info(f"Updated WooCommerce product {product.sku}")
            else:
                body["type"] = "simple"
                body.setdefault("stock_quantity", 0)
                await client.post("products", body)
                logger.info(f"Created WooCommerce product {product.sku}")

    # =========================================================================
    # Boundary normalization
    # =========================================================================

    def map_payment_state(self, raw: Optional[str]) -> PaymentState:
        status = (raw or "").lower()
        if status in PAID_STATUSES:
            return PaymentState.PAID
        if status in PENDING_STATUSES:
            return PaymentState.PENDING
        return PaymentState.OTHER

    def normalize_order(self, connection: Connection, payload: Dict[str, Any]) -> NormalizedOrder:
        lines = []
        for item in payload.get("line_items", []):
            quantity = int(item.get("quantity", 0))
            lines.append(OrderLine(
                sku=item.get("sku") or None,
                quantity=quantity,
                unit_price=to_decimal(item.get("price")),
                line_total=to_decimal(item.get("total")),
                name=item.get("name"),
            ))

        billing = payload.get("billing") or {}
        status = payload.get("status")
        return NormalizedOrder(
            connection_id=connection.id,
            platform=Platform.WOOCOMMERCE.value,
            external_order_id=str(payload["id"]),
            order_number=str(payload.get("number") or payload["id"]),
            line_items=lines,
            total=to_decimal(payload.get("total")),
            currency=payload.get("currency"),
            payment_state=self.map_payment_state(status),
            raw_status=status,
            customer={
                "name": " ".join(p for p in (billing.get("first_name"), billing.get("last_name")) if p) or None,
                "email": billing.get("email"),
            },
            created_at=parse_timestamp(payload.get("date_created_gmt") or payload.get("date_created")),
        )

    def normalize_refund(
        self,
        connection: Connection,
        payload: Dict[str, Any],
    ) -> Optional[RefundEvent]:
        # A refund resource (orders/{id}/refunds/{rid}) carries negative line quantities
        order_id = payload.get("parent_id") or payload.get("order_id")
        if "amount" in payload and "status" not in payload and order_id:
            lines = [
                RefundLine(
                    sku=item.get("sku") or None,
                    quantity=abs(int(item.get("quantity", 0))),
                    unit_price=abs(to_decimal(item.get("price"))),
                    name=item.get("name"),
                )
                for item in payload.get("line_items", [])
                if int(item.get("quantity", 0)) != 0
            ]
            if not lines:
                return None
            return RefundEvent(
                connection_id=connection.id,
                platform=Platform.WOOCOMMERCE.value,
                external_order_id=str(order_id),
                kind=RefundKind.REFUND,
                refund_id=str(payload["id"]),
                lines=lines,
                created_at=parse_timestamp(payload.get("date_created_gmt") or payload.get("date_created")),
            )

        status = (payload.get("status") or "").lower()
        if status not in CANCELLED_STATUSES and status not in REFUNDED_STATUSES:
            return None

        lines = [
            RefundLine(
                sku=item.get("sku") or None,
                quantity=int(item.get("quantity", 0)),
                unit_price=to_decimal(item.get("price")),
                name=item.get("name"),
            )
            for item in payload.get("line_items", [])
        ]
        kind = RefundKind.CANCELLATION if status in CANCELLED_STATUSES else RefundKind.REFUND
        return RefundEvent(
            connection_id=connection.id,
            platform=Platform.WOOCOMMERCE.value,
            external_order_id=str(payload["id"]),
            kind=kind,
            refund_id=None if kind == RefundKind.CANCELLATION else "full",
            lines=lines,
            created_at=parse_timestamp(payload.get("date_modified_gmt") or payload.get("date_modified")),
        )

    def normalize_webhook(
        self,
        connection: Connection,
        topic: str,
        payload: Dict[str, Any],
    ) -> Optional[WebhookEvent]:
        topic = (topic or "").lower()
        if not topic.startswith("order."):
            return None
        if topic == "order.deleted" or "id" not in payload:
            return None
        refund = self.normalize_refund(connection, payload)
        if refund is not None:
            return refund
        return self.normalize_order(connection, payload)

    @staticmethod
    def verify_webhook(body: bytes, signature: Optional[str], secret: str) -> bool:
        return verify_hmac_signature(body, signature, secret)

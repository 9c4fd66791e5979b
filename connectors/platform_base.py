"""Abstract Storefront Platform Adapter Interface.

Every storefront kind (WooCommerce, Shopify) gets one adapter that translates
between the platform's REST API and the engine's normalized model. Payloads
are normalized HERE, at the boundary; the sync engine never branches on
platform kind.

To add a new storefront:
1. Create a new folder (e.g., bigcommerce/)
2. Implement PlatformAdapter
3. Register using @register_platform
"""

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from connectors.ledger_base import LedgerProduct


# =============================================================================
# Enums
# =============================================================================

class Platform(str, Enum):
    """Supported storefront kinds."""
    WOOCOMMERCE = "woocommerce"
    SHOPIFY = "shopify"


class PaymentState(str, Enum):
    """Shared payment state; each adapter maps its own statuses onto it."""
    PAID = "PAID"
    PENDING = "PENDING"
    OTHER = "OTHER"


class RefundKind(str, Enum):
    """Whether a compensation event reverses the whole order or part of it."""
    CANCELLATION = "CANCELLATION"
    REFUND = "REFUND"


# =============================================================================
# Connection
# =============================================================================

@dataclass
class Connection:
    """A configured storefront integration.

    Passed explicitly into every adapter and processor call. Credentials are
    opaque to the engine; only the adapter for `platform` reads them.
    """
    id: int
    platform: str
    store_identifier: str                   # shop domain or store URL
    credentials: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# Normalized Event Models
# =============================================================================

class OrderLine(BaseModel):
    """One storefront order line."""
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")
    name: Optional[str] = None


class NormalizedOrder(BaseModel):
    """A storefront order in the engine's shape."""
    connection_id: int
    platform: str
    external_order_id: str
    order_number: str
    line_items: List[OrderLine] = Field(default_factory=list)
    total: Decimal = Decimal("0")
    currency: Optional[str] = None
    payment_state: PaymentState = PaymentState.OTHER
    raw_status: Optional[str] = Field(default=None, description="Platform status before mapping")
    customer: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class RefundLine(BaseModel):
    """One line being returned; quantity comes from the refund payload."""
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal = Decimal("0")
    name: Optional[str] = None


class RefundEvent(BaseModel):
    """A cancellation (all original lines) or a partial refund (refunded lines only)."""
    connection_id: int
    platform: str
    external_order_id: str
    kind: RefundKind
    refund_id: Optional[str] = None
    lines: List[RefundLine] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def compensation_key(self) -> str:
        """Key under which a successful reversal is remembered."""
        if self.kind == RefundKind.CANCELLATION:
            return "cancel"
        return f"refund-{self.refund_id or 'full'}"


class StorefrontProduct(BaseModel):
    """A product as the storefront reports it."""
    external_id: str
    sku: Optional[str] = None
    name: str = ""
    stock_quantity: Optional[int] = None


WebhookEvent = Union[NormalizedOrder, RefundEvent]


# =============================================================================
# Normalization helpers
# =============================================================================

def to_decimal(value: Any) -> Decimal:
    """Parse a platform money value ("12.50", 12.5, None)."""
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse a platform timestamp to naive UTC.

    Accepts ISO-8601 with or without offset ("Z" included). Missing values
    map to now.
    """
    if not value:
        return datetime.utcnow()
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a base64 HMAC-SHA256 signature of the raw body.

    Both WooCommerce and Shopify sign webhooks this way.
    """
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())


# =============================================================================
# Abstract Adapter Interface
# =============================================================================

class PlatformAdapter(ABC):
    """Abstract base class for storefront adapters.

    Failures raise connectors.http_client.ConnectorError subclasses.
    """

    platform: str = ""

    def __init__(self, timeout_seconds: int = 30):
        self.timeout_seconds = timeout_seconds

    # =========================================================================
    # Remote operations
    # =========================================================================

    @abstractmethod
    async def fetch_orders(
        self,
        connection: Connection,
        since: Optional[datetime] = None,
    ) -> List[NormalizedOrder]:
        """Fetch orders created or modified after `since` (all recent orders if None)."""
        pass

    @abstractmethod
    async def fetch_products(self, connection: Connection) -> List[StorefrontProduct]:
        """Fetch the storefront catalog."""
        pass

    @abstractmethod
    async def set_stock_level(self, connection: Connection, sku: str, quantity: int) -> None:
        """Set the absolute stock quantity of the product with this SKU.

        Raises:
            NotFoundError: No product with this SKU exists on the storefront
            ConnectorError: Any other failure
        """
        pass

    @abstractmethod
    async def create_or_update_product(
        self,
        connection: Connection,
        product: LedgerProduct,
        quantity: Optional[int] = None,
    ) -> None:
        """Create the product if its SKU is unknown, otherwise update it."""
        pass

    # =========================================================================
    # Boundary normalization
    # =========================================================================

    @abstractmethod
    def map_payment_state(self, raw: Optional[str]) -> PaymentState:
        """Map a platform payment/order status onto PaymentState."""
        pass

    @abstractmethod
    def normalize_order(self, connection: Connection, payload: Dict[str, Any]) -> NormalizedOrder:
        """Convert a platform order payload to a NormalizedOrder."""
        pass

    @abstractmethod
    def normalize_refund(
        self,
        connection: Connection,
        payload: Dict[str, Any],
    ) -> Optional[RefundEvent]:
        """Convert a platform refund or cancellation payload to a RefundEvent.

        Returns:
            RefundEvent, or None if the payload carries nothing to reverse
        """
        pass

    @abstractmethod
    def normalize_webhook(
        self,
        connection: Connection,
        topic: str,
        payload: Dict[str, Any],
    ) -> Optional[WebhookEvent]:
        """Route a webhook delivery to order or refund normalization.

        Returns:
            NormalizedOrder, RefundEvent, or None for topics the engine ignores
        """
        pass

    @staticmethod
    @abstractmethod
    def verify_webhook(body: bytes, signature: Optional[str], secret: str) -> bool:
        """Check the webhook signature header against the raw request body."""
        pass


# =============================================================================
# Adapter Factory
# =============================================================================

_platform_registry: Dict[str, type] = {}


def register_platform(platform: str):
    """Decorator to register a platform adapter implementation."""
    def decorator(cls):
        cls.platform = platform
        _platform_registry[platform] = cls
        return cls
    return decorator


def get_platform_adapter(platform: str, **kwargs) -> PlatformAdapter:
    """Create an adapter for a storefront kind.

    Raises:
        ValueError: If the platform is not registered
    """
    key = platform.lower()
    if key not in _platform_registry:
        raise ValueError(
            f"Unknown platform: {platform}. "
            f"Available: {list(_platform_registry.keys())}"
        )
    return _platform_registry[key](**kwargs)


def list_available_platforms() -> List[str]:
    """List all registered storefront kinds."""
    return list(_platform_registry.keys())

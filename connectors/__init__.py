"""Connectors - ledger and storefront integrations.

This package contains the abstract ledger and storefront interfaces plus
concrete implementations (Prokip ledger; WooCommerce and Shopify storefronts).

This package handles:
- Remote authentication (OAuth tokens, API keys, consumer keys)
- Data transformation (platform payloads -> normalized models)
- API communication and HTTP error mapping

Key Design Principle:
- The sync engine, Temporal activities and API routes depend ONLY on
  LedgerConnector and PlatformAdapter
- All methods return NORMALIZED types (LedgerProduct, NormalizedOrder, ...)

To add a new storefront:
1. Create a new folder (e.g., bigcommerce/)
2. Implement PlatformAdapter
3. Register using @register_platform decorator
"""

from connectors.http_client import (
    ConnectorError,
    AuthenticationError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    ConnectorTimeoutError,
    ConfigurationError,
    RestClient,
)
from connectors.ledger_base import (
    LedgerConnector,
    LedgerConfig,
    LedgerProduct,
    StockRow,
    SaleLine,
    SaleRequest,
    SaleResult,
    ReturnLine,
    ReturnRequest,
    ReturnResult,
    create_connector,
    register_connector,
    list_available_connectors,
)
from connectors.platform_base import (
    Connection,
    Platform,
    PaymentState,
    RefundKind,
    OrderLine,
    NormalizedOrder,
    RefundLine,
    RefundEvent,
    StorefrontProduct,
    PlatformAdapter,
    get_platform_adapter,
    register_platform,
    list_available_platforms,
)

# Register implementations
from connectors.prokip import ProkipConnector
from connectors.woocommerce import WooCommerceAdapter
from connectors.shopify import ShopifyAdapter

__all__ = [
    # Errors
    "ConnectorError",
    "AuthenticationError",
    "NotFoundError",
    "RateLimitError",
    "ValidationError",
    "ConnectorTimeoutError",
    "ConfigurationError",
    "RestClient",
    # Ledger interface
    "LedgerConnector",
    "LedgerConfig",
    "LedgerProduct",
    "StockRow",
    "SaleLine",
    "SaleRequest",
    "SaleResult",
    "ReturnLine",
    "ReturnRequest",
    "ReturnResult",
    "create_connector",
    "register_connector",
    "list_available_connectors",
    # Storefront interface
    "Connection",
    "Platform",
    "PaymentState",
    "RefundKind",
    "OrderLine",
    "NormalizedOrder",
    "RefundLine",
    "RefundEvent",
    "StorefrontProduct",
    "PlatformAdapter",
    "get_platform_adapter",
    "register_platform",
    "list_available_platforms",
    # Implementations
    "ProkipConnector",
    "WooCommerceAdapter",
    "ShopifyAdapter",
]

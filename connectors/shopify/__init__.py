"""Shopify Adapter Package."""

from connectors.shopify.shopify_adapter import (
    ShopifyAdapter,
    SIGNATURE_HEADER,
    SHOP_HEADER,
    TOPIC_HEADER,
)

__all__ = [
    "ShopifyAdapter",
    "SIGNATURE_HEADER",
    "SHOP_HEADER",
    "TOPIC_HEADER",
]

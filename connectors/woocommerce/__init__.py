"""WooCommerce Adapter Package."""

from connectors.woocommerce.woo_adapter import (
    WooCommerceAdapter,
    SIGNATURE_HEADER,
    SOURCE_HEADER,
    TOPIC_HEADER,
)

__all__ = [
    "WooCommerceAdapter",
    "SIGNATURE_HEADER",
    "SOURCE_HEADER",
    "TOPIC_HEADER",
]

"""Core module - platform-neutral configuration and observability.

Storefront-specific logic (WooCommerce, Shopify) and ledger-specific logic
(Prokip) belong in /connectors/. Sync semantics belong in /sync_engine/.
"""

__version__ = "1.0.0"

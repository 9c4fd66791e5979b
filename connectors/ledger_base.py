"""Abstract Ledger Connector Interface.

This module defines the interface every inventory-of-record ("ledger")
connector must implement. It is intentionally ledger-agnostic - no Prokip
specifics here.

Connectors implement this interface to:
1. Authenticate with the ledger (and refresh expired tokens)
2. Read stock levels and the product catalog
3. Resolve products by SKU
4. Record sales and sales returns

Key Design Principles:
- All methods return NORMALIZED objects (LedgerProduct, StockRow, SaleResult)
- The sync engine, Temporal activities and API routes depend ONLY on this interface
- Ledger-specific implementations live in connector subfolders
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Normalized Reference Models (Ledger-Agnostic)
# =============================================================================

class LedgerProduct(BaseModel):
    """Normalized product from the ledger catalog.

    IMPORTANT: product_id and variation_id are both kept.
    - product_id: the base product
    - variation_id: the sellable unit the ledger expects on sale lines
      (see sync_engine.mapping.resolve_variation_id)
    """
    product_id: str = Field(..., description="Ledger product ID")
    variation_id: str = Field(..., description="Ledger variation ID used on sale/return lines")
    sku: str = Field(..., description="Stock keeping unit")
    name: str = Field(default="", description="Display name")
    price: Decimal = Field(default=Decimal("0"), description="Default selling price")
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True


class StockRow(BaseModel):
    """Current ledger quantity for one SKU at one location."""
    sku: str
    quantity: int = Field(..., description="Quantity on hand (never negative)")
    product_id: Optional[str] = None
    name: Optional[str] = None
    location_id: Optional[str] = None

    class Config:
        frozen = True


# =============================================================================
# Transaction Models
# =============================================================================

class SaleLine(BaseModel):
    """One resolved line of a ledger sale."""
    product_id: str
    variation_id: str
    sku: str
    quantity: int
    unit_price: Decimal


class SaleRequest(BaseModel):
    """Normalized sale request for the ledger.

    external_reference is deterministic ("<platform>-<external_order_id>")
    so the ledger can detect duplicates where it supports that.
    """
    location_id: Optional[str] = None
    contact_id: Optional[int] = None
    external_reference: str = Field(..., description="Deterministic idempotency reference")
    transaction_date: datetime
    lines: List[SaleLine] = Field(default_factory=list)
    total: Decimal
    currency: Optional[str] = None
    payment_method: str = "cash"
    payment_amount: Decimal

    @property
    def line_total(self) -> Decimal:
        """Calculate total from lines."""
        return sum((line.unit_price * line.quantity for line in self.lines), Decimal("0"))


class SaleResult(BaseModel):
    """Reference to a sale recorded in the ledger."""
    transaction_id: Optional[str] = Field(default=None, description="Ledger transaction ID (not every response carries it)")
    external_reference: Optional[str] = None
    invoice_no: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    raw: Dict[str, Any] = Field(default_factory=dict)


class ReturnLine(BaseModel):
    """One line of a sales return."""
    product_id: str
    variation_id: str
    sku: str
    quantity: int
    unit_price: Decimal = Decimal("0")


class ReturnRequest(BaseModel):
    """Sales return against a previously recorded ledger sale."""
    transaction_id: str = Field(..., description="Ledger transaction ID of the original sale")
    external_reference: str
    transaction_date: datetime
    lines: List[ReturnLine] = Field(default_factory=list)


class ReturnResult(BaseModel):
    """Reference to a return recorded in the ledger."""
    return_id: Optional[str] = None
    transaction_id: str
    raw: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class LedgerConfig:
    """Configuration for a ledger connector.

    Generic configuration that can be extended by specific connectors.
    """
    connector_type: str                     # "prokip", ...
    base_url: Optional[str] = None          # Ledger API endpoint
    location_id: Optional[str] = None       # Business location for stock and sales
    contact_id: Optional[int] = None        # Counterparty for storefront sales
    payment_method: str = "cash"
    timeout_seconds: int = 30

    # Authentication (connector-specific)
    auth_type: str = "oauth2"               # "oauth2", "api_key"
    auth_config: Dict[str, Any] = field(default_factory=dict)

    # Ledger-specific settings
    custom_settings: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Abstract Connector Interface
# =============================================================================

class LedgerConnector(ABC):
    """Abstract base class for ledger connectors.

    DESIGN PRINCIPLE:
    - The sync engine depends ONLY on this interface
    - All methods return NORMALIZED objects
    - Failures raise connectors.http_client.ConnectorError subclasses so the
      recovery engine can classify them

    Implementations:
    - connectors/prokip/prokip_connector.py
    """

    def __init__(self, config: LedgerConfig):
        """Initialize connector with configuration."""
        self.config = config

    # =========================================================================
    # Connection Management
    # =========================================================================

    @abstractmethod
    async def connect(self) -> bool:
        """Establish (authenticate) the connection to the ledger.

        Returns:
            True if connection successful
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release network resources."""
        pass

    @abstractmethod
    async def refresh_auth(self) -> bool:
        """Force a token refresh.

        Returns:
            True if a fresh token was obtained
        """
        pass

    # =========================================================================
    # Stock & Catalog
    # =========================================================================

    @abstractmethod
    async def list_stock(self, location_id: Optional[str] = None) -> List[StockRow]:
        """List current stock per SKU.

        Args:
            location_id: Location to report (defaults to the configured one)

        Returns:
            List of StockRow
        """
        pass

    @abstractmethod
    async def list_products(self, location_id: Optional[str] = None) -> List[LedgerProduct]:
        """List the ledger product catalog."""
        pass

    @abstractmethod
    async def find_product_by_sku(self, sku: str) -> Optional[LedgerProduct]:
        """Resolve a product by exact SKU.

        Returns:
            LedgerProduct if found, None otherwise
        """
        pass

    # =========================================================================
    # Transactions
    # =========================================================================

    @abstractmethod
    async def record_sale(self, request: SaleRequest) -> SaleResult:
        """Record a sale transaction.

        Raises:
            ConnectorError: If the ledger rejects or cannot be reached
        """
        pass

    @abstractmethod
    async def record_return(self, request: ReturnRequest) -> ReturnResult:
        """Record a sales return against an existing sale.

        Raises:
            ConnectorError: If the ledger rejects or cannot be reached
        """
        pass

    async def find_sale_by_reference(self, reference: str) -> Optional[SaleResult]:
        """Find a previously recorded sale by its external reference.

        Default implementation returns None; connectors that can search their
        sales should override.
        """
        return None


# =============================================================================
# Connector Factory
# =============================================================================

_connector_registry: Dict[str, type] = {}


def register_connector(connector_type: str):
    """Decorator to register a ledger connector implementation."""
    def decorator(cls):
        _connector_registry[connector_type] = cls
        return cls
    return decorator


def create_connector(config: LedgerConfig) -> LedgerConnector:
    """Create a connector instance from configuration.

    Args:
        config: LedgerConfig with connector_type specified

    Returns:
        Configured connector instance

    Raises:
        ValueError: If connector_type is not registered
    """
    connector_type = config.connector_type.lower()

    if connector_type not in _connector_registry:
        available = list(_connector_registry.keys())
        raise ValueError(
            f"Unknown connector type: {connector_type}. "
            f"Available: {available}"
        )

    connector_class = _connector_registry[connector_type]
    return connector_class(config)


def list_available_connectors() -> List[str]:
    """List all registered ledger connector types."""
    return list(_connector_registry.keys())

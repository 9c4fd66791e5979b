"""Prokip data models.

These are Prokip-specific models that map to the Prokip connector API schema.
They are separate from the normalized models in connectors/ledger_base.py.
"""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from connectors.ledger_base import LedgerProduct, StockRow


# =============================================================================
# Prokip API Models
# =============================================================================

class ProkipBaseModel(BaseModel):
    """Base model for Prokip API entities."""

    class Config:
        populate_by_name = True
        extra = "ignore"


class ProkipVariation(ProkipBaseModel):
    """A sellable variation.

    Maps to: product.product_variations[].variations[]
    """
    id: Optional[int] = None
    variation_id: Optional[int] = None
    sub_sku: Optional[str] = None
    default_sell_price: Optional[Decimal] = None
    sell_price_inc_tax: Optional[Decimal] = None


class ProkipProductVariation(ProkipBaseModel):
    """A variation group (e.g. "DUMMY" for single products)."""
    id: Optional[int] = None
    name: Optional[str] = None
    variations: List[ProkipVariation] = Field(default_factory=list)


class ProkipProduct(ProkipBaseModel):
    """Prokip product.

    Maps to: /connector/api/product
    """
    id: int
    name: Optional[str] = ""
    sku: Optional[str] = None
    type: Optional[str] = None
    product_description: Optional[str] = None
    product_variations: List[ProkipProductVariation] = Field(default_factory=list)


class ProkipStockReportRow(ProkipBaseModel):
    """Row from /connector/api/product-stock-report."""
    sku: Optional[str] = None
    product_id: Optional[int] = None
    product: Optional[str] = None
    stock: Optional[Decimal] = None
    qty_available: Optional[Decimal] = None
    location_id: Optional[int] = None


# =============================================================================
# Conversion helpers
# =============================================================================

def resolve_variation_id(product: ProkipProduct) -> int:
    """Pick the variation the ledger expects on sale lines.

    Rule: the first variation (in catalog order) carrying a variation_id,
    else the base product id. Applied the same way to single and variable
    products; there are no per-SKU exceptions.
    """
    for group in product.product_variations:
        for variation in group.variations:
            if variation.variation_id is not None:
                return variation.variation_id
    return product.id


def _first_price(product: ProkipProduct) -> Decimal:
    for group in product.product_variations:
        for variation in group.variations:
            price = variation.sell_price_inc_tax or variation.default_sell_price
            if price is not None:
                return Decimal(str(price))
    return Decimal("0")


def to_ledger_product(product: ProkipProduct) -> LedgerProduct:
    """Convert a Prokip product to the normalized LedgerProduct."""
    return LedgerProduct(
        product_id=str(product.id),
        variation_id=str(resolve_variation_id(product)),
        sku=product.sku or "",
        name=product.name or "",
        price=_first_price(product),
        description=product.product_description,
        metadata={"type": product.type} if product.type else {},
    )


def to_stock_row(row: ProkipStockReportRow, location_id: Optional[str] = None) -> Optional[StockRow]:
    """Convert a stock report row; rows without a SKU are dropped.

    A negative report figure is clamped to zero.
    """
    if not row.sku:
        return None
    raw: Any = row.stock if row.stock is not None else row.qty_available
    quantity = int(Decimal(str(raw))) if raw is not None else 0
    return StockRow(
        sku=row.sku,
        quantity=max(0, quantity),
        product_id=str(row.product_id) if row.product_id is not None else None,
        name=row.product,
        location_id=str(row.location_id) if row.location_id is not None else location_id,
    )

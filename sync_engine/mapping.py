"""Shared mapping helpers: storefront lines to ledger requests.

SKU resolution goes through LedgerConnector.find_product_by_sku only; there
are no per-SKU special cases. The variation rule ("first variation, else base
product") is applied by the ledger connector when it builds LedgerProduct.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Generic, List, Optional, Sequence, TypeVar

from connectors.ledger_base import (
    LedgerConnector,
    LedgerProduct,
    ReturnLine,
    ReturnRequest,
    SaleLine,
    SaleRequest,
)
from core.observability.logging import get_logger
from sync_engine.models import NormalizedOrder, OrderLine, RefundEvent, RefundLine

logger = get_logger(__name__)

LineT = TypeVar("LineT", OrderLine, RefundLine)


@dataclass
class ResolvedLine(Generic[LineT]):
    line: LineT
    product: LedgerProduct


@dataclass
class MappingOutcome(Generic[LineT]):
    """Lines split into resolved and unresolved."""
    resolved: List[ResolvedLine] = field(default_factory=list)
    unmapped_skus: List[str] = field(default_factory=list)
    skipped_without_sku: int = 0

    @property
    def all_mapped(self) -> bool:
        return not self.unmapped_skus and self.skipped_without_sku == 0


def external_reference(platform: str, external_order_id: str) -> str:
    """Deterministic ledger reference for a storefront order."""
    return f"{platform}-{external_order_id}"


async def resolve_products(
    ledger: LedgerConnector,
    lines: Sequence[LineT],
) -> MappingOutcome:
    """Resolve each line's SKU to a ledger product, in line order.

    Lines without a SKU and lines whose SKU the ledger does not know are
    dropped and logged. Each distinct SKU is looked up once.

    Raises:
        ConnectorError: The ledger lookup itself failed
    """
    outcome = MappingOutcome()
    cache: Dict[str, Optional[LedgerProduct]] = {}

    for line in lines:
        sku = (line.sku or "").strip()
        if not sku:
            outcome.skipped_without_sku += 1
            logger.warning("Dropping line without SKU", extra_fields={"name": line.name})
            continue
        if sku not in cache:
            cache[sku] = await ledger.find_product_by_sku(sku)
        product = cache[sku]
        if product is None:
            outcome.unmapped_skus.append(sku)
            logger.warning(f"SKU {sku} not found in ledger, dropping line")
            continue
        outcome.resolved.append(ResolvedLine(line=line, product=product))

    return outcome


def build_sale_request(
    order: NormalizedOrder,
    outcome: MappingOutcome,
    location_id: Optional[str],
    contact_id: Optional[int],
    payment_method: str = "cash",
) -> SaleRequest:
    """Build the ledger sale for the resolved lines of an order.

    The sale total is the order total when every line mapped; otherwise it
    is the sum of the mapped lines so the ledger never books unsold goods.
    """
    lines = [
        SaleLine(
            product_id=r.product.product_id,
            variation_id=r.product.variation_id,
            sku=r.product.sku,
            quantity=r.line.quantity,
            unit_price=r.line.unit_price,
        )
        for r in outcome.resolved
    ]
    if outcome.all_mapped and order.total > 0:
        total = order.total
    else:
        total = sum(
            (r.line.line_total or r.line.unit_price * r.line.quantity for r in outcome.resolved),
            Decimal("0"),
        )

    return SaleRequest(
        location_id=location_id,
        contact_id=contact_id,
        external_reference=external_reference(order.platform, order.external_order_id),
        transaction_date=order.created_at,
        lines=lines,
        total=total,
        currency=order.currency,
        payment_method=payment_method,
        payment_amount=total,
    )


def build_return_request(
    transaction_id: str,
    event: RefundEvent,
    outcome: MappingOutcome,
) -> ReturnRequest:
    """Build the ledger return for the resolved lines of a refund/cancellation."""
    return ReturnRequest(
        transaction_id=transaction_id,
        external_reference=(
            f"{external_reference(event.platform, event.external_order_id)}-{event.compensation_key}"
        ),
        transaction_date=event.created_at,
        lines=[
            ReturnLine(
                product_id=r.product.product_id,
                variation_id=r.product.variation_id,
                sku=r.product.sku,
                quantity=r.line.quantity,
                unit_price=r.line.unit_price,
            )
            for r in outcome.resolved
        ],
    )

"""Prokip Ledger Connector.

Implements the LedgerConnector interface for the Prokip connector API
(``{PROKIP_API_URL}/connector/api/``).
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from connectors.http_client import ConfigurationError, ConnectorError, RestClient
from connectors.ledger_base import (
    LedgerConfig,
    LedgerConnector,
    LedgerProduct,
    ReturnRequest,
    ReturnResult,
    SaleRequest,
    SaleResult,
    StockRow,
    register_connector,
)
from connectors.prokip.prokip_auth import ProkipAuthConfig, ProkipAuthProvider
from connectors.prokip.prokip_models import (
    ProkipProduct,
    ProkipStockReportRow,
    to_ledger_product,
    to_stock_row,
)
from core.config import SyncSettings
from core.observability.logging import get_logger

logger = get_logger(__name__)

PROKIP_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _money(value: Decimal) -> float:
    return float(Decimal(value).quantize(Decimal("0.01")))


def _unwrap(payload: Any) -> Any:
    """Prokip wraps most list responses in {"data": [...]}."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


@register_connector("prokip")
class ProkipConnector(LedgerConnector):
    """Prokip connector implementation.

    Required configuration:
    - base_url: Prokip API URL
    - auth_config.client_id / client_secret / username / password
    - location_id: business location for stock reports and sales

    Optional configuration:
    - contact_id: counterparty for storefront sales (PROKIP_CONTACT_ID, walk-in customer 1)
    - payment_method: payment method recorded on sales (default: "cash")
    """

    def __init__(self, config: LedgerConfig):
        super().__init__(config)
        if not config.base_url:
            raise ConfigurationError("Prokip configuration error: PROKIP_API_URL is not set")

        self._auth_provider = ProkipAuthProvider(ProkipAuthConfig(
            api_url=config.base_url,
            client_id=config.auth_config.get("client_id", ""),
            client_secret=config.auth_config.get("client_secret", ""),
            username=config.auth_config.get("username", ""),
            password=config.auth_config.get("password", ""),
            timeout_seconds=config.timeout_seconds,
        ))
        self._client = RestClient(
            f"{config.base_url.rstrip('/')}/connector/api/",
            headers_provider=self._auth_provider.get_headers,
            on_unauthorized=self.refresh_auth,
            timeout_seconds=config.timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "ProkipConnector":
        """Build a connector from process settings."""
        return cls(LedgerConfig(
            connector_type="prokip",
            base_url=settings.prokip_api_url,
            location_id=settings.prokip_location_id,
            contact_id=settings.prokip_contact_id,
            payment_method=settings.payment_method,
            timeout_seconds=settings.http_timeout_seconds,
            auth_config={
                "client_id": settings.prokip_client_id,
                "client_secret": settings.prokip_client_secret,
                "username": settings.prokip_username,
                "password": settings.prokip_password,
            },
        ))

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> bool:
        await self._auth_provider.ensure_valid_token()
        return True

    async def disconnect(self) -> None:
        await self._client.close()
        self._auth_provider.clear()

    async def refresh_auth(self) -> bool:
        try:
            return await self._auth_provider.refresh()
        except ConnectorError as e:
            logger.warning(f"Prokip token refresh failed: {e}")
            return False

    def _location(self, location_id: Optional[str]) -> str:
        location = location_id or self.config.location_id
        if not location:
            raise ConfigurationError("Prokip configuration error: PROKIP_LOCATION_ID is not set")
        return str(location)

    # =========================================================================
    # Stock & Catalog
    # =========================================================================

    async def list_stock(self, location_id: Optional[str] = None) -> List[StockRow]:
        location = self._location(location_id)
        payload = await self._client.get(
            "product-stock-report",
            params={"location_id": location, "per_page": "-1"},
        )
        rows = []
        for raw in _unwrap(payload) or []:
            row = to_stock_row(ProkipStockReportRow.model_validate(raw), location)
            if row is not None:
                rows.append(row)
        logger.debug(f"Prokip stock report returned {len(rows)} rows")
        return rows

    async def list_products(self, location_id: Optional[str] = None) -> List[LedgerProduct]:
        location = self._location(location_id)
        payload = await self._client.get(
            "product",
            params={"per_page": "-1", "location_id": location},
        )
        products = []
        for raw in _unwrap(payload) or []:
            product = ProkipProduct.model_validate(raw)
            if product.sku:
                products.append(to_ledger_product(product))
        return products

    async def find_product_by_sku(self, sku: str) -> Optional[LedgerProduct]:
        payload = await self._client.get("product", params={"sku": sku, "per_page": "-1"})
        for raw in _unwrap(payload) or []:
            product = ProkipProduct.model_validate(raw)
            # The endpoint filters loosely; only an exact SKU counts
            if product.sku == sku:
                return to_ledger_product(product)
        return None

    # =========================================================================
    # Transactions
    # =========================================================================

    def _build_sell_body(self, request: SaleRequest) -> Dict[str, Any]:
        transaction_date = request.transaction_date.strftime(PROKIP_DATE_FORMAT)
        location = request.location_id or self._location(None)
        contact_id = request.contact_id or self.config.contact_id
        if not contact_id:
            raise ConfigurationError("Prokip configuration error: PROKIP_CONTACT_ID is not set")
        return {
            "sells": [{
                "location_id": int(location),
                "contact_id": contact_id,
                "transaction_date": transaction_date,
                "invoice_no": request.external_reference,
                "status": "final",
                "type": "sell",
                "payment_status": "paid",
                "final_total": _money(request.total),
                "discount_amount": 0,
                "discount_type": "fixed",
                "products": [
                    {
                        "product_id": int(line.product_id),
                        "variation_id": int(line.variation_id),
                        "quantity": line.quantity,
                        "unit_price": _money(line.unit_price),
                        "unit_price_inc_tax": _money(line.unit_price),
                    }
                    for line in request.lines
                ],
                "payments": [{
                    "method": request.payment_method or self.config.payment_method,
                    "amount": _money(request.payment_amount),
                    "paid_on": transaction_date,
                }],
            }]
        }

    async def record_sale(self, request: SaleRequest) -> SaleResult:
        body = self._build_sell_body(request)
        payload = await self._client.post("sell", body)

        transactions = _unwrap(payload)
        if isinstance(transactions, dict):
            transactions = [transactions]
        transaction = next(
            (t for t in transactions or [] if isinstance(t, dict) and t.get("id") is not None),
            None,
        )
        if transaction is None:
            # Prokip answers 200 with an error object when validation fails
            raise ConnectorError(
                f"Prokip sell response carried no transaction for {request.external_reference}",
                response_body=str(payload)[:500],
            )

        logger.info(
            f"Recorded Prokip sale {transaction['id']} for {request.external_reference}",
            extra_fields={"lines": len(request.lines)},
        )
        return SaleResult(
            transaction_id=str(transaction["id"]),
            external_reference=request.external_reference,
            invoice_no=transaction.get("invoice_no"),
            raw=transaction,
        )

    async def record_return(self, request: ReturnRequest) -> ReturnResult:
        body = {
            "transaction_id": int(request.transaction_id),
            "transaction_date": request.transaction_date.strftime(PROKIP_DATE_FORMAT),
            "products": [
                {
                    "product_id": int(line.product_id),
                    "variation_id": int(line.variation_id),
                    "quantity": line.quantity,
                    "unit_price_inc_tax": _money(line.unit_price),
                }
                for line in request.lines
            ],
            "discount_amount": 0,
            "discount_type": "fixed",
        }
        payload = await self._client.post("sell-return", body)
        data = _unwrap(payload)
        return_id = data.get("id") if isinstance(data, dict) else None

        logger.info(f"Recorded Prokip sell return for transaction {request.transaction_id}")
        return ReturnResult(
            return_id=str(return_id) if return_id is not None else None,
            transaction_id=request.transaction_id,
            raw=data if isinstance(data, dict) else {"response": data},
        )

    async def find_sale_by_reference(self, reference: str) -> Optional[SaleResult]:
        params = {"per_page": "-1"}
        if self.config.location_id:
            params["location_id"] = str(self.config.location_id)
        payload = await self._client.get("sell", params=params)
        for sale in _unwrap(payload) or []:
            if sale.get("invoice_no") == reference:
                return SaleResult(
                    transaction_id=str(sale["id"]),
                    external_reference=reference,
                    invoice_no=reference,
                    raw=sale,
                )
        return None

"""Prokip Connector Package.

Implements the LedgerConnector interface for the Prokip connector API.
"""

from connectors.prokip.prokip_connector import ProkipConnector
from connectors.prokip.prokip_auth import ProkipAuthProvider, ProkipAuthConfig, ProkipToken
from connectors.prokip.prokip_models import (
    ProkipProduct,
    ProkipStockReportRow,
    resolve_variation_id,
)

__all__ = [
    # Connector
    "ProkipConnector",
    # Auth
    "ProkipAuthProvider",
    "ProkipAuthConfig",
    "ProkipToken",
    # Models
    "ProkipProduct",
    "ProkipStockReportRow",
    "resolve_variation_id",
]

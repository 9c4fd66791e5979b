"""Sync engine exceptions and failure classification.

classify_failure() inspects the exception type, HTTP status and message of a
failed operation and returns its ErrorCategory. Anything that matches no
heuristic keeps the tag of the processor that recorded it
(OrderProcessingError, InventorySyncError, RefundFailed, ...).
"""

import asyncio
from typing import List, Optional

from connectors.http_client import (
    AuthenticationError,
    ConnectorError,
    ConnectorTimeoutError,
    NotFoundError,
    RateLimitError,
)
from sync_engine.models import ErrorCategory


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base class for sync engine errors."""
    pass


class MappingFailed(SyncError):
    """No line item of an order resolved to a ledger product."""
    def __init__(self, external_order_id: str, unmapped_skus: List[str]):
        self.external_order_id = external_order_id
        self.unmapped_skus = unmapped_skus
        skus = ", ".join(unmapped_skus) if unmapped_skus else "no SKUs on order"
        super().__init__(
            f"Order {external_order_id}: none of the line items map to a ledger product ({skus})"
        )


class ConnectionNotFound(SyncError):
    """No connection with the given id."""
    def __init__(self, connection_id: int):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} not found")


class RecoveryActionError(SyncError):
    """A failure record carries no replayable operation."""
    pass


# =============================================================================
# Classification
# =============================================================================

TIMEOUT_MARKERS = ("timeout", "timed out", "network error", "econnrefused", "econnreset", "connection reset")
RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit")
AUTH_MARKERS = ("401", "unauthorized", "invalid credentials", "token expired")
NOT_FOUND_MARKERS = ("404", "sku not found", "product not found")

# A failure whose message carries one of these cannot be fixed by retrying
MANUAL_INTERVENTION_MARKERS = (
    "invalid credentials",
    "account suspended",
    "api key revoked",
    "store not found",
    "permission denied",
    "configuration error",
)

# Categories escalated without any retry
NON_RETRYABLE_CATEGORIES = {ErrorCategory.MAPPING_FAILED, ErrorCategory.UNKNOWN}

NEXT_STEPS = {
    ErrorCategory.AUTH_ERROR: "Please re-authenticate the store connection in Settings",
    ErrorCategory.PRODUCT_NOT_FOUND: "Verify the product exists in both systems or create it manually",
    ErrorCategory.RATE_LIMIT: "Wait for rate limit to reset or contact platform support",
    ErrorCategory.NETWORK_TIMEOUT: "Check network connectivity and firewall settings",
    ErrorCategory.INVENTORY_SYNC_ERROR: "Verify product SKUs match between systems",
    ErrorCategory.ORDER_PROCESSING_ERROR: "Check order data format and required fields",
    ErrorCategory.MAPPING_FAILED: "Create the missing SKUs in the ledger or fix the storefront SKUs, then resolve the failure",
    ErrorCategory.REFUND_FAILED: "Verify the original sale exists in the ledger, then record the return manually",
    ErrorCategory.CANCELLATION_FAILED: "Verify the original sale exists in the ledger, then record the return manually",
}
DEFAULT_NEXT_STEP = "Review error details and contact support if needed"


def _has_marker(message: str, markers) -> bool:
    return any(marker in message for marker in markers)


def status_code_of(error: BaseException) -> Optional[int]:
    """HTTP status attached to a connector error, if any."""
    status = getattr(error, "status_code", None)
    return status or None


def classify_failure(
    error: BaseException,
    default: ErrorCategory = ErrorCategory.UNKNOWN,
) -> ErrorCategory:
    """Classify a failed operation.

    Args:
        error: The exception raised by the operation
        default: The recording processor's tag, used when nothing more
            specific matches

    Returns:
        ErrorCategory
    """
    if isinstance(error, MappingFailed):
        return ErrorCategory.MAPPING_FAILED

    message = str(error).lower()
    status = status_code_of(error)

    if (
        isinstance(error, (ConnectorTimeoutError, asyncio.TimeoutError))
        or _has_marker(message, TIMEOUT_MARKERS)
    ):
        return ErrorCategory.NETWORK_TIMEOUT
    if isinstance(error, RateLimitError) or status == 429 or _has_marker(message, RATE_LIMIT_MARKERS):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, AuthenticationError) or status in (401, 403) or _has_marker(message, AUTH_MARKERS):
        return ErrorCategory.AUTH_ERROR
    if isinstance(error, NotFoundError) or status == 404 or _has_marker(message, NOT_FOUND_MARKERS):
        return ErrorCategory.PRODUCT_NOT_FOUND

    return default


def requires_manual_intervention(category: ErrorCategory, message: Optional[str]) -> bool:
    """Whether retries cannot fix this failure."""
    if category in NON_RETRYABLE_CATEGORIES:
        return True
    text = (message or "").lower()
    return _has_marker(text, MANUAL_INTERVENTION_MARKERS)


def next_step_for(category: ErrorCategory) -> str:
    """Human-readable next step for an escalated failure."""
    return NEXT_STEPS.get(category, DEFAULT_NEXT_STEP)


def describe_error(error: BaseException) -> str:
    """One-line message for a failure record."""
    text = str(error) or error.__class__.__name__
    if isinstance(error, ConnectorError) and error.status_code and str(error.status_code) not in text:
        text = f"{text} (HTTP {error.status_code})"
    return text

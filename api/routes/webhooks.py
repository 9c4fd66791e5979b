"""Storefront webhook endpoints.

Each delivery is authenticated (HMAC over the raw body), normalized by the
platform adapter, handed to a Temporal workflow and answered with 200
immediately. Processing never happens on the request path.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from api.dependencies import WorkflowDispatcher, get_app_settings, get_dispatcher, get_sync_engine
from connectors.shopify import shopify_adapter as shopify
from connectors.woocommerce import woo_adapter as woo
from core.config import SyncSettings
from core.observability.logging import get_logger, with_correlation
from sync_engine import SyncEngine, db
from sync_engine.models import NormalizedOrder, RefundEvent


router = APIRouter()
logger = get_logger(__name__)


class WebhookAck(BaseModel):
    """Webhook acknowledgement."""
    status: str                         # accepted | ignored
    workflow_id: Optional[str] = None
    reason: Optional[str] = None


def _webhook_secret(settings: SyncSettings, platform: str, credentials: Dict[str, Any]) -> Optional[str]:
    if credentials.get("webhook_secret"):
        return credentials["webhook_secret"]
    if platform == "shopify":
        return settings.shopify_webhook_secret
    return settings.woo_webhook_secret


async def _accept(
    platform: str,
    store: Optional[str],
    topic: Optional[str],
    signature: Optional[str],
    body: bytes,
    engine: SyncEngine,
    dispatcher: WorkflowDispatcher,
    settings: SyncSettings,
) -> WebhookAck:
    if not store:
        raise HTTPException(status_code=400, detail="Missing store header")

    connection = db.find_connection_by_store(platform, store, db_path=engine.db_path)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"No {platform} connection for {store}")

    adapter = engine.adapter_for(platform)
    secret = _webhook_secret(settings, platform, connection.credentials)
    if not secret or not adapter.verify_webhook(body, signature, secret):
        logger.warning(f"Rejected {platform} webhook for {store}: bad signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    with with_correlation(connection_id=connection.id, platform=platform):
        if not connection.enabled:
            return WebhookAck(status="ignored", reason="connection_disabled")

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            # WooCommerce sends a form-encoded ping when a webhook is created
            return WebhookAck(status="ignored", reason="not_json")
        if not isinstance(payload, dict):
            return WebhookAck(status="ignored", reason="not_json")

        event = adapter.normalize_webhook(connection, topic or "", payload)
        if event is None:
            logger.info(f"Ignoring {platform} webhook topic {topic}")
            return WebhookAck(status="ignored", reason="unhandled_topic")

        if isinstance(event, RefundEvent):
            workflow_id = await dispatcher.start_compensation(connection.id, event)
        elif isinstance(event, NormalizedOrder):
            workflow_id = await dispatcher.start_order_event(connection.id, event)
        else:
            return WebhookAck(status="ignored", reason="unhandled_topic")

    return WebhookAck(status="accepted", workflow_id=workflow_id)


@router.post("/shopify", response_model=WebhookAck)
async def shopify_webhook(
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
    dispatcher: WorkflowDispatcher = Depends(get_dispatcher),
    settings: SyncSettings = Depends(get_app_settings),
) -> WebhookAck:
    """Receive a Shopify order or refund webhook."""
    headers = request.headers
    return await _accept(
        "shopify",
        headers.get(shopify.SHOP_HEADER),
        headers.get(shopify.TOPIC_HEADER),
        headers.get(shopify.SIGNATURE_HEADER),
        await request.body(),
        engine,
        dispatcher,
        settings,
    )


@router.post("/woocommerce", response_model=WebhookAck)
async def woocommerce_webhook(
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
    dispatcher: WorkflowDispatcher = Depends(get_dispatcher),
    settings: SyncSettings = Depends(get_app_settings),
) -> WebhookAck:
    """Receive a WooCommerce order webhook."""
    headers = request.headers
    return await _accept(
        "woocommerce",
        headers.get(woo.SOURCE_HEADER),
        headers.get(woo.TOPIC_HEADER),
        headers.get(woo.SIGNATURE_HEADER),
        await request.body(),
        engine,
        dispatcher,
        settings,
    )

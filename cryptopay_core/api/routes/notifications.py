"""Real-time notification socket and webhook registration."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from cryptopay_core.api.dependencies import get_current_identity, get_hub, get_websocket_identity
from cryptopay_core.api.responses import ok
from cryptopay_core.api.schemas import WebhookCreate
from cryptopay_core.exceptions import NotFoundError, ValidationError
from cryptopay_core.models import Identity
from cryptopay_core.notifications import EventName, NotificationHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])
ws_router = APIRouter(tags=["notifications"])

KEEPALIVE_SECONDS = 30.0


@ws_router.websocket("/ws/notifications")
async def notifications_socket(
    websocket: WebSocket,
    identity: Optional[Identity] = Depends(get_websocket_identity),
    hub: NotificationHub = Depends(get_hub),
):
    if identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = hub.subscribe(identity.user_id)
    logger.info(f"User {identity.user_id} connected to notifications")
    try:
        await websocket.send_json({"event": "connected", "data": {"userId": identity.user_id}})
        while True:
            try:
                event = await subscription.next_event(timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_json({"event": "ping", "data": {}})
                continue
            await websocket.send_text(event.to_json())
    except WebSocketDisconnect:
        logger.info(f"User {identity.user_id} disconnected from notifications")
    finally:
        hub.unsubscribe(subscription)


@router.post("/webhooks", summary="Register a webhook endpoint")
async def create_webhook(
    body: WebhookCreate,
    identity: Identity = Depends(get_current_identity),
    hub: NotificationHub = Depends(get_hub),
):
    if not body.url.startswith(("http://", "https://")):
        raise ValidationError("Webhook URL must be http or https", field="url")
    events = None
    if body.events:
        try:
            events = [EventName(e) for e in body.events]
        except ValueError as e:
            raise ValidationError(f"Invalid event type: {e}", field="events")
    endpoint = hub.register_webhook(identity.user_id, body.url, events)
    return ok("Webhook registered", {"webhook": endpoint.to_dict(include_secret=True)}, status_code=201)


@router.get("/webhooks", summary="List the caller's webhooks")
async def list_webhooks(
    identity: Identity = Depends(get_current_identity),
    hub: NotificationHub = Depends(get_hub),
):
    return ok("Webhooks", {"webhooks": [w.to_dict() for w in hub.list_webhooks(identity.user_id)]})


@router.delete("/webhooks/{endpoint_id}", summary="Remove a webhook")
async def delete_webhook(
    endpoint_id: str,
    identity: Identity = Depends(get_current_identity),
    hub: NotificationHub = Depends(get_hub),
):
    if not hub.unregister_webhook(endpoint_id, identity_id=identity.user_id):
        raise NotFoundError("Webhook", endpoint_id)
    return ok("Webhook removed", {"id": endpoint_id})

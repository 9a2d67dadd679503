"""Webhook endpoints for relay events."""
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError as PayloadValidationError

from relaygate.adapters.relay import RelayClient
from relaygate.api.deps import get_relay_client, get_webhook_handler
from relaygate.schemas.webhook import WebhookEnvelope
from relaygate.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/whatsapp")
async def whatsapp_webhook(
    request: Request,
    webhook_handler: WebhookHandler = Depends(get_webhook_handler),
    relay: RelayClient = Depends(get_relay_client),
    x_webhook_signature: str | None = Header(None),
):
    """
    Receive events from the relay.

    The signature is checked over the raw body before anything is parsed.
    Once it is valid the relay always gets a 2xx, so it does not redeliver.
    """
    body = await request.body()
    if not relay.validate_webhook_signature(x_webhook_signature, body):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        envelope = WebhookEnvelope.model_validate(json.loads(body))
    except (ValueError, PayloadValidationError) as e:
        logger.error(f"Failed to parse webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload") from e

    try:
        result = await webhook_handler.handle_webhook(envelope)
    except Exception as e:
        logger.error(f"Webhook processing error: {e}", exc_info=True)
        return {"success": False, "received": True, "error": str(e)}
    return {"success": True, "received": True, "result": result}


@router.get("/whatsapp")
async def verify_webhook(challenge: str | None = None):
    """Some relays probe the endpoint with a challenge before registering it."""
    if challenge:
        return PlainTextResponse(challenge)
    return {"status": "ok", "endpoint": "WhatsApp webhook"}


@router.get("/whatsapp/health")
async def webhook_health():
    """Health check endpoint for webhook service."""
    return {"status": "healthy", "service": "webhook_handler"}

"""Inbound gateway webhooks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.services.billing.errors import WebhookSignatureError
from app.services.billing.webhooks import (
    AsaasWebhookProcessor,
    StripeWebhookProcessor,
    WebhookPayloadError,
    get_asaas_webhook_processor,
    get_stripe_webhook_processor,
    parse_payload,
    verify_stripe_event,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    processor: StripeWebhookProcessor = Depends(get_stripe_webhook_processor),
):
    """Receive Stripe events; always 200 once the payload is accepted."""
    payload = await request.body()
    try:
        event = verify_stripe_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except (WebhookPayloadError, WebhookSignatureError) as exc:
        logger.warning("stripe.webhook.rejected", extra={"code": exc.code})
        return JSONResponse(status_code=400, content={"error": str(exc)})
    processor.process(event)
    return {"received": True}


@router.post("/asaas-webhook")
async def asaas_webhook(
    request: Request,
    asaas_access_token: str | None = Header(default=None, alias="asaas-access-token"),
    processor: AsaasWebhookProcessor = Depends(get_asaas_webhook_processor),
):
    """Receive ASAAS payment notifications guarded by the shared access token."""
    try:
        processor.verify_token(asaas_access_token)
    except WebhookSignatureError as exc:
        return JSONResponse(status_code=401, content={"error": str(exc)})
    try:
        outcome = processor.process(parse_payload(await request.body()))
    except WebhookPayloadError as exc:
        logger.warning("asaas.webhook.rejected", extra={"code": exc.code})
        return JSONResponse(status_code=400, content={"error": str(exc)})
    if outcome.warning:
        return {"received": True, "warning": outcome.warning}
    return {"received": True}

"""Inbound billing provider webhook endpoint."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse

from ... import app_context
from ..billing import WebhookSignatureError
from ..schemas.billing import WebhookReceivedResponse
from ..services.billing import get_billing_service

logger = logging.getLogger("billing.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookReceivedResponse)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
):
    config = app_context.get_billing_config()
    if not config.stripe_webhook_secret:
        logger.error("Stripe webhook secret is not configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook secret not configured"},
        )
    if not stripe_signature:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Missing signature"})

    payload = await request.body()
    service = get_billing_service()
    try:
        service.reconciler.handle_payload(payload, stripe_signature)
    except WebhookSignatureError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid signature"})
    except Exception:
        logger.exception("Webhook processing failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )
    return WebhookReceivedResponse()

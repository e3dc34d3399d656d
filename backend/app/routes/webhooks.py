"""Inbound payment provider webhooks."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..billing.exceptions import WebhookPayloadError, WebhookSignatureError
from ..schemas.billing import WebhookAckResponse
from ..services.billing import get_subscription_service

logger = logging.getLogger("billing.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAckResponse)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAckResponse:
    """Acknowledge with 2xx unless the provider should retry the delivery."""

    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")

    body = await request.body()
    service = get_subscription_service()
    try:
        result = await run_in_threadpool(service.handle_webhook, body, stripe_signature)
    except WebhookSignatureError as exc:
        logger.warning("Rejected webhook delivery with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature") from exc
    except WebhookPayloadError as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Webhook processing failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    if not result.success and result.retryable:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    if not result.success:
        # Retrying a malformed event cannot succeed; acknowledge it.
        logger.warning("Acknowledging unprocessable webhook %s: %s", result.event_id, result.error)
    return WebhookAckResponse(
        event_id=result.event_id,
        outcome=result.outcome.value,
        error=result.error,
    )

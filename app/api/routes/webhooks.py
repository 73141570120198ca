"""Provider webhook endpoint — thin HTTP adapter over the EventDispatcher."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.api.deps import get_dispatcher
from app.webhooks.dispatcher import EventDispatcher, Outcome

logger = structlog.get_logger(__name__)

router = APIRouter()


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False


@router.post("/webhooks/provider", response_model=WebhookAck)
async def provider_webhook(request: Request, dispatcher: EventDispatcher = Depends(get_dispatcher)):
    """Receive a Stripe event.

    200 acknowledges (including duplicates), 400 rejects a bad signature or
    payload, 500 asks the provider to redeliver later.
    """
    body = await request.body()
    result = await dispatcher.handle(body, request.headers.get("stripe-signature"))

    if result.outcome is Outcome.REJECTED_BAD_SIGNATURE:
        # Reason stays in the logs; callers only learn verification failed
        raise HTTPException(status_code=400, detail="Webhook signature verification failed")
    if result.outcome is Outcome.PROCESSING_FAILED:
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return WebhookAck(received=True, duplicate=result.outcome is Outcome.DUPLICATE_IGNORED)

"""Stripe webhook route."""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from inbox.billing.stripe_service import StripeService
from inbox.billing.webhook_processor import WebhookProcessor
from inboxcore.db import get_db
from inboxcore.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])


@router.post("")
async def receive_stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Verify and process a Stripe event.

    A bad signature answers 400. Failures that may succeed on redelivery
    answer 500 so Stripe retries; everything else answers 200.
    """
    payload = await request.body()
    try:
        StripeService.construct_event(payload, request.headers.get("Stripe-Signature"))
    except ValidationError as exc:
        return JSONResponse(status_code=400, content=exc.to_dict())

    event = json.loads(payload)
    result = WebhookProcessor(db).process(event, signature_verified=True)

    if result["status"] == "failed" and result.get("retryable"):
        return JSONResponse(status_code=500, content=result)
    return result

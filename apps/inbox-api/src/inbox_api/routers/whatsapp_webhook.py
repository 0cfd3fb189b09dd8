"""
WhatsApp Webhook Routes

Receives webhooks from the Meta Cloud API.

Responsibilities:
- Answer the verification challenge
- Verify the X-Hub-Signature-256 signature
- Resolve the organization from phone_number_id
- Publish messages and statuses to the inbound stream
- Return 200 quickly (Meta times out after 20s and retries on errors)
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from inbox.contracts.payloads import DeliveryStatusPayload, InboundMessagePayload
from inbox.providers import DeliveryState, DeliveryStatus, InboundMessage, get_provider
from inbox.providers.meta_cloud.webhook import extract_phone_number_id
from inbox.routing.organization_resolver import OrganizationResolver
from inbox.streams.producer import InboxStreamProducer
from inbox_api.deps import get_producer
from inboxcore.db import get_db
from inboxcore.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])


@router.get("")
def verify_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    """
    Handle Meta webhook verification.

    Meta sends a GET request with hub.mode, hub.verify_token and hub.challenge;
    the challenge is echoed back when the token matches.
    """
    logger.info("Webhook verification request", extra={"mode": hub_mode, "token_received": bool(hub_verify_token)})

    challenge = get_provider().verify_webhook_challenge(
        mode=hub_mode or "",
        token=hub_verify_token or "",
        challenge=hub_challenge or "",
        verify_token=get_settings().WHATSAPP_VERIFY_TOKEN,
    )
    if challenge:
        return Response(content=challenge, media_type="text/plain")

    logger.warning("Webhook verification failed")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("")
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    producer: InboxStreamProducer = Depends(get_producer),
):
    body = await request.body()

    app_secret = get_settings().WHATSAPP_APP_SECRET
    provider = get_provider()
    if app_secret:
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not provider.validate_webhook_signature(body, signature, app_secret):
            logger.warning("Invalid webhook signature")
            raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        phone_number_id = extract_phone_number_id(payload) or payload.get("phone_number_id")
        if not phone_number_id:
            return {"status": "ignored", "reason": "no_phone_number_id"}

        organization = OrganizationResolver(db).resolve_from_phone_number_id(phone_number_id)
        if not organization:
            return {"status": "ignored", "reason": "unknown_phone_number"}

        messages, statuses = provider.parse_webhook(payload)

        for message in messages:
            producer.publish_inbound(
                organization_id=organization.id,
                payload=message_to_payload(message),
                correlation_id=message.message_id,
            )
            logger.info(
                "Published inbound message",
                extra={"message_id": message.message_id, "type": message.message_type.value},
            )

        published_statuses = 0
        for status in statuses:
            status_payload = status_to_payload(status)
            if status_payload is None:
                continue
            producer.publish_status(
                organization_id=organization.id,
                payload=status_payload,
                correlation_id=status.message_id,
            )
            published_statuses += 1

        return {"status": "accepted", "messages": len(messages), "statuses": published_statuses}

    except Exception as e:
        logger.error(f"Error processing webhook: {e}", exc_info=True)
        # Still 200 so Meta does not retry a payload we cannot handle
        return {"status": "error", "message": str(e)}


def message_to_payload(message: InboundMessage) -> dict[str, Any]:
    return InboundMessagePayload(
        from_phone=message.from_phone,
        phone_number_id=message.phone_number_id,
        message_id=message.message_id,
        message_type=message.message_type,
        text=message.text or message.caption,
        media_id=message.media_id,
        media_mime_type=message.media_mime_type,
        button_payload=message.button_payload,
        contact_name=message.contact_name,
        timestamp=message.timestamp,
        context_message_id=message.context_message_id,
        raw_payload=message.raw_payload,
    ).model_dump(mode="json")


def status_to_payload(status: DeliveryStatus) -> dict[str, Any] | None:
    """Stream payload for a status update; None for statuses we do not track."""
    try:
        state = DeliveryState(status.status)
    except ValueError:
        logger.debug(f"Ignoring delivery status {status.status}")
        return None

    return DeliveryStatusPayload(
        provider_message_id=status.message_id,
        status=state,
        timestamp=status.timestamp,
        recipient_phone=status.recipient_phone,
        error_code=status.error_code,
        error_message=status.error_message,
    ).model_dump(mode="json")

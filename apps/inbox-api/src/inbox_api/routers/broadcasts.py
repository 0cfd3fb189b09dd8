"""Broadcast routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox.service.broadcasts import BroadcastService
from inbox.streams.producer import InboxStreamProducer
from inbox_api.deps import get_current_organization, get_producer, rate_limit, require_permission
from inbox_api.schemas import BroadcastRequest, BroadcastResult
from inboxcore.db import get_db

router = APIRouter(prefix="/broadcasts", tags=["broadcasts"])


@router.post(
    "",
    response_model=BroadcastResult,
    status_code=202,
    dependencies=[Depends(rate_limit("broadcast"))],
)
def send_broadcast(
    body: BroadcastRequest,
    user: UserClaims = Depends(require_permission(Resource.BROADCASTS, Action.CREATE)),
    organization: Organization = Depends(get_current_organization),
    producer: InboxStreamProducer = Depends(get_producer),
    db: Session = Depends(get_db),
):
    """Queue one message per eligible contact; the worker sends them."""
    return BroadcastService(db, producer).send(
        organization,
        sender_id=user.id,
        text=body.text,
        template_id=body.template_id,
        variables=body.variables,
        segment_id=body.segment_id,
        tags=body.tags,
        contact_ids=body.contact_ids,
    )

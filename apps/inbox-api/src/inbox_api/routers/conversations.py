"""Conversation routes: inbox listing, assignment, status and agent replies."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox.service.conversations import ConversationService
from inbox.service.messages import MessageService
from inbox.streams.producer import InboxStreamProducer
from inbox_api.deps import get_current_organization, get_producer, rate_limit, require_permission
from inbox_api.schemas import (
    AssignRequest,
    ContactOut,
    ConversationDetail,
    ConversationListItem,
    ConversationOut,
    MessageOut,
    PriorityRequest,
    SendMessageRequest,
    StatusRequest,
)
from inboxcore.db import get_db

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=list[ConversationListItem])
def list_conversations(
    status: str | None = None,
    assigned_to: UUID | None = None,
    priority: str | None = None,
    search: str | None = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: UserClaims = Depends(require_permission(Resource.CONVERSATIONS, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    rows = ConversationService(db).list_conversations(
        organization.id,
        status=status,
        assigned_to=assigned_to,
        priority=priority,
        search=search,
        limit=limit,
        offset=offset,
    )
    return [
        ConversationListItem(
            conversation=ConversationOut.model_validate(conversation),
            contact=ContactOut.model_validate(contact),
        )
        for conversation, contact in rows
    ]


@router.get("/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    conversation_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    before: datetime | None = None,
    user: UserClaims = Depends(require_permission(Resource.CONVERSATIONS, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    conversation, contact, messages = ConversationService(db).get_with_messages(
        organization.id, conversation_id, limit=limit, before=before
    )
    return ConversationDetail(
        conversation=ConversationOut.model_validate(conversation),
        contact=ContactOut.model_validate(contact) if contact else None,
        messages=[MessageOut.model_validate(m) for m in messages],
    )


@router.post("/{conversation_id}/assign", response_model=ConversationOut)
def assign_conversation(
    conversation_id: UUID,
    body: AssignRequest,
    user: UserClaims = Depends(require_permission(Resource.CONVERSATIONS, Action.ASSIGN)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ConversationService(db).assign(organization.id, conversation_id, body.assignee_id, actor=user)


@router.patch("/{conversation_id}/status", response_model=ConversationOut)
def update_status(
    conversation_id: UUID,
    body: StatusRequest,
    user: UserClaims = Depends(require_permission(Resource.CONVERSATIONS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ConversationService(db).update_status(organization.id, conversation_id, body.status)


@router.patch("/{conversation_id}/priority", response_model=ConversationOut)
def set_priority(
    conversation_id: UUID,
    body: PriorityRequest,
    user: UserClaims = Depends(require_permission(Resource.CONVERSATIONS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ConversationService(db).set_priority(organization.id, conversation_id, body.priority)


@router.post("/{conversation_id}/read")
def mark_read(
    conversation_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.CONVERSATIONS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ConversationService(db).mark_read(organization.id, conversation_id)


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageOut,
    status_code=202,
    dependencies=[Depends(rate_limit("send_message"))],
)
def send_message(
    conversation_id: UUID,
    body: SendMessageRequest,
    user: UserClaims = Depends(require_permission(Resource.MESSAGES, Action.CREATE)),
    organization: Organization = Depends(get_current_organization),
    producer: InboxStreamProducer = Depends(get_producer),
    db: Session = Depends(get_db),
):
    """Store the reply as pending and queue it; the worker sends it."""
    return MessageService(db, producer).send_message(
        organization,
        conversation_id,
        sender_id=user.id,
        text=body.text,
        template_id=body.template_id,
        variables=body.variables,
    )

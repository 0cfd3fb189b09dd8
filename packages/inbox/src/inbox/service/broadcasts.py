"""
Broadcasts

Send one message to many contacts: a saved segment, contacts carrying all of
the given tags, or an explicit list of contact ids. Each recipient gets a
pending outbound message in their conversation and the worker sends them
through the outbound stream like any other reply.

Blocked and opted-out contacts are skipped, as are recipients past the plan's
monthly message allowance.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.billing.plans import PLANS
from inbox.persistence.models import Contact, Conversation, ConversationStatus, Organization, SenderType
from inbox.persistence.repo import InboxRepository
from inbox.service.messages import MessageService
from inbox.service.segments import SegmentService, validate_criteria
from inbox.streams.producer import InboxStreamProducer
from inboxcore.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_RECIPIENTS = 5000


def remaining_allowance(organization: Organization) -> int | None:
    """Messages left this month, None when the plan is unlimited."""
    plan = PLANS.get(organization.subscription_tier)
    if plan is None or plan.message_limit is None:
        return None
    return max(0, plan.message_limit - (organization.messages_sent_this_month or 0))


class BroadcastService:
    def __init__(self, db: Session, producer: InboxStreamProducer):
        self.db = db
        self.repo = InboxRepository(db)
        self.messages = MessageService(db, producer)
        self.segments = SegmentService(db)

    def resolve_audience(
        self,
        organization_id: UUID,
        segment_id: UUID | None = None,
        tags: list[str] | None = None,
        contact_ids: list[UUID] | None = None,
    ) -> list[Contact]:
        sources = [s for s in (segment_id, tags, contact_ids) if s]
        if len(sources) != 1:
            raise ValidationError("Choose exactly one audience: a segment, tags or contact ids")

        if contact_ids:
            if len(contact_ids) > MAX_RECIPIENTS:
                raise ValidationError(f"A broadcast can reach at most {MAX_RECIPIENTS} contacts")
            return self.repo.list_contacts_by_ids(organization_id, list(dict.fromkeys(contact_ids)))

        if segment_id:
            segment = self.segments.get_segment(organization_id, segment_id)
            conditions = (segment.criteria or {}).get("conditions", [])
        else:
            conditions = validate_criteria(
                {"conditions": [{"field": "tags", "operator": "has_tag", "value": tag} for tag in tags]}
            )["conditions"]

        if self.repo.count_contacts_matching(organization_id, conditions) > MAX_RECIPIENTS:
            raise ValidationError(f"A broadcast can reach at most {MAX_RECIPIENTS} contacts")
        return list(self.segments.iter_contacts(organization_id, conditions))

    def _conversation_for(self, organization_id: UUID, contact: Contact) -> Conversation:
        conversation = self.repo.get_latest_conversation_for_contact(organization_id, contact.id)
        if conversation is None or conversation.status == ConversationStatus.CLOSED.value:
            conversation = self.repo.create_conversation(organization_id, contact.id)
            self.db.flush()
        return conversation

    def send(
        self,
        organization: Organization,
        sender_id: UUID,
        text: str | None = None,
        template_id: UUID | None = None,
        variables: dict[str, Any] | None = None,
        segment_id: UUID | None = None,
        tags: list[str] | None = None,
        contact_ids: list[UUID] | None = None,
    ) -> dict[str, Any]:
        """
        Queue a message for every eligible contact in the audience.

        Returns:
            Counts of the audience, queued messages and skipped contacts by reason
        """
        text, template_name, template_language, template_variables = self.messages.prepare_content(
            organization.id, text, template_id, variables
        )
        audience = self.resolve_audience(organization.id, segment_id=segment_id, tags=tags, contact_ids=contact_ids)

        allowance = remaining_allowance(organization)
        skipped = {"blocked": 0, "opted_out": 0, "message_limit": 0}
        payloads = []

        for contact in audience:
            if contact.is_blocked:
                skipped["blocked"] += 1
                continue
            if contact.opted_out_at is not None:
                skipped["opted_out"] += 1
                continue
            if allowance is not None and len(payloads) >= allowance:
                skipped["message_limit"] += 1
                continue

            _, payload = self.messages.create_outbound(
                organization.id,
                self._conversation_for(organization.id, contact),
                contact,
                text,
                sender_type=SenderType.SYSTEM,
                sender_id=sender_id,
                template_name=template_name,
                template_language=template_language,
                template_variables=template_variables,
            )
            payloads.append(payload)

        self.db.commit()

        for payload in payloads:
            self.messages.enqueue(organization.id, payload)

        result = {"audience": len(audience), "queued": len(payloads), "skipped": skipped}
        logger.info(
            f"Broadcast queued {len(payloads)} of {len(audience)} messages",
            extra={"organization_id": str(organization.id), "sender_id": str(sender_id), **skipped},
        )
        if skipped["message_limit"]:
            logger.warning(
                f"Broadcast hit the monthly message limit, {skipped['message_limit']} contacts not messaged",
                extra={"organization_id": str(organization.id)},
            )
        return result

"""
Inbox Repository

Repository pattern for inbox database operations.
Every tenant-scoped query filters on organization_id in addition to the
database row-level security policies.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, not_, or_, text
from sqlalchemy.orm import Session

from inbox.persistence.models import (
    Contact,
    ContactSegment,
    Conversation,
    ConversationStatus,
    InvitationStatus,
    Message,
    MessageDirection,
    MessageStatus,
    MessageTemplate,
    Organization,
    Profile,
    SenderType,
    TeamInvitation,
)


SEGMENT_DATE_FIELDS = {"created_at", "updated_at", "last_message_at", "opted_out_at"}


def segment_clause(condition: dict[str, Any], now: datetime | None = None):
    """
    SQL filter for one segment condition.

    Conditions are validated by the segment service before they get here;
    unknown operators match nothing.
    """
    field, operator, value = condition["field"], condition["operator"], condition.get("value")
    column = getattr(Contact, field)
    now = now or datetime.utcnow()

    if field in SEGMENT_DATE_FIELDS and isinstance(value, str):
        value = datetime.fromisoformat(value)

    if operator == "equals":
        return column == value
    if operator == "not_equals":
        return or_(column != value, column.is_(None))
    if operator == "contains":
        return column.ilike(f"%{value}%")
    if operator == "not_contains":
        return or_(not_(column.ilike(f"%{value}%")), column.is_(None))
    if operator == "starts_with":
        return column.ilike(f"{value}%")
    if operator == "ends_with":
        return column.ilike(f"%{value}")
    if operator == "is_null":
        return column.is_(None)
    if operator == "is_not_null":
        return column.isnot(None)
    if operator == "greater_than":
        return column > value
    if operator == "less_than":
        return column < value
    if operator == "greater_than_or_equal":
        return column >= value
    if operator == "less_than_or_equal":
        return column <= value
    if operator == "in":
        return column.in_(value)
    if operator == "not_in":
        return or_(column.notin_(value), column.is_(None))
    if operator == "has_tag":
        return Contact.tags.any(value)
    if operator == "not_has_tag":
        return not_(Contact.tags.any(value))
    if operator == "within_days":
        return column >= now - timedelta(days=value)
    if operator == "older_than_days":
        # Never messaged counts as inactive
        return or_(column < now - timedelta(days=value), column.is_(None))
    return text("false")


class InboxRepository:
    """Repository for inbox database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Organizations
    # =========================================================================

    def get_organization(self, organization_id: UUID) -> Organization | None:
        return self.db.query(Organization).filter(Organization.id == organization_id).first()

    def get_organization_by_slug(self, slug: str) -> Organization | None:
        return self.db.query(Organization).filter(Organization.slug == slug).first()

    def get_organization_by_phone_number_id(self, phone_number_id: str) -> Organization | None:
        """Get the active organization bound to a WhatsApp phone number ID."""
        return (
            self.db.query(Organization)
            .filter(
                Organization.whatsapp_phone_number_id == phone_number_id,
                Organization.is_active == True,  # noqa: E712
            )
            .first()
        )

    def get_organization_by_stripe_customer(self, customer_id: str) -> Organization | None:
        return (
            self.db.query(Organization)
            .filter(Organization.stripe_customer_id == customer_id)
            .first()
        )

    def get_organization_by_stripe_subscription(self, subscription_id: str) -> Organization | None:
        return (
            self.db.query(Organization)
            .filter(Organization.stripe_subscription_id == subscription_id)
            .first()
        )

    def create_organization(
        self,
        name: str,
        slug: str,
        trial_ends_at: datetime | None = None,
    ) -> Organization:
        organization = Organization(
            name=name,
            slug=slug,
            is_active=True,
            subscription_status="trial",
            subscription_tier="starter",
            trial_ends_at=trial_ends_at,
            cancel_at_period_end=False,
            messages_sent_this_month=0,
            settings={},
        )
        self.db.add(organization)
        return organization

    def list_organizations(
        self,
        search: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Organization]:
        query = self.db.query(Organization)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Organization.name.ilike(pattern), Organization.slug.ilike(pattern)))
        if status:
            query = query.filter(Organization.subscription_status == status)
        return query.order_by(Organization.created_at.desc()).offset(offset).limit(limit).all()

    def count_organizations_by(self, column: str) -> dict[str, int]:
        """Count organizations grouped by subscription_status or subscription_tier."""
        attr = getattr(Organization, column)
        rows = self.db.query(attr, func.count(Organization.id)).group_by(attr).all()
        return {key: count for key, count in rows}

    # =========================================================================
    # Profiles
    # =========================================================================

    def get_profile(self, profile_id: UUID) -> Profile | None:
        return self.db.query(Profile).filter(Profile.id == profile_id).first()

    def get_profile_by_email(self, email: str) -> Profile | None:
        return self.db.query(Profile).filter(func.lower(Profile.email) == email.lower()).first()

    def get_member(self, organization_id: UUID, profile_id: UUID) -> Profile | None:
        """Get an active member of an organization."""
        return (
            self.db.query(Profile)
            .filter(
                Profile.id == profile_id,
                Profile.organization_id == organization_id,
                Profile.is_active == True,  # noqa: E712
            )
            .first()
        )

    def list_members(self, organization_id: UUID, include_inactive: bool = False) -> list[Profile]:
        query = self.db.query(Profile).filter(Profile.organization_id == organization_id)
        if not include_inactive:
            query = query.filter(Profile.is_active == True)  # noqa: E712
        return query.order_by(Profile.created_at).all()

    def count_members(self, organization_id: UUID) -> int:
        return (
            self.db.query(func.count(Profile.id))
            .filter(
                Profile.organization_id == organization_id,
                Profile.is_active == True,  # noqa: E712
            )
            .scalar()
            or 0
        )

    def count_owners(self, organization_id: UUID) -> int:
        return (
            self.db.query(func.count(Profile.id))
            .filter(
                Profile.organization_id == organization_id,
                Profile.role == "owner",
                Profile.is_active == True,  # noqa: E712
            )
            .scalar()
            or 0
        )

    def create_profile(
        self,
        email: str,
        role: str,
        organization_id: UUID | None = None,
        full_name: str | None = None,
        password_hash: str | None = None,
    ) -> Profile:
        profile = Profile(
            organization_id=organization_id,
            email=email.lower(),
            full_name=full_name,
            role=role,
            password_hash=password_hash,
            is_active=True,
        )
        self.db.add(profile)
        return profile

    # =========================================================================
    # Contacts
    # =========================================================================

    def get_contact(self, organization_id: UUID, contact_id: UUID) -> Contact | None:
        return (
            self.db.query(Contact)
            .filter(Contact.organization_id == organization_id, Contact.id == contact_id)
            .first()
        )

    def get_contact_by_whatsapp_id(self, organization_id: UUID, whatsapp_id: str) -> Contact | None:
        return (
            self.db.query(Contact)
            .filter(
                Contact.organization_id == organization_id,
                Contact.whatsapp_id == whatsapp_id,
            )
            .first()
        )

    def create_contact(
        self,
        organization_id: UUID,
        whatsapp_id: str,
        phone_number: str,
        name: str | None = None,
        email: str | None = None,
        tags: list[str] | None = None,
        notes: str | None = None,
    ) -> Contact:
        contact = Contact(
            organization_id=organization_id,
            whatsapp_id=whatsapp_id,
            phone_number=phone_number,
            name=name,
            email=email,
            tags=tags or [],
            notes=notes,
            is_blocked=False,
            metadata_={},
        )
        self.db.add(contact)
        return contact

    def get_or_create_contact(
        self,
        organization_id: UUID,
        whatsapp_id: str,
        phone_number: str,
        name: str | None = None,
    ) -> tuple[Contact, bool]:
        """
        Get existing contact or create a new one.

        Returns:
            Tuple of (contact, created) where created is True if new.
        """
        contact = self.get_contact_by_whatsapp_id(organization_id, whatsapp_id)
        if contact:
            return contact, False
        contact = self.create_contact(organization_id, whatsapp_id, phone_number, name=name)
        self.db.flush()
        return contact, True

    def list_contacts(
        self,
        organization_id: UUID,
        search: str | None = None,
        tag: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Contact]:
        query = self.db.query(Contact).filter(Contact.organization_id == organization_id)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Contact.name.ilike(pattern),
                    Contact.phone_number.ilike(pattern),
                    Contact.email.ilike(pattern),
                )
            )
        if tag:
            query = query.filter(Contact.tags.any(tag))
        return (
            query.order_by(Contact.last_message_at.desc().nullslast(), Contact.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_new_contacts(self, organization_id: UUID, since: datetime, until: datetime) -> int:
        return (
            self.db.query(func.count(Contact.id))
            .filter(
                Contact.organization_id == organization_id,
                Contact.created_at >= since,
                Contact.created_at < until,
            )
            .scalar()
            or 0
        )

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(self, organization_id: UUID, conversation_id: UUID) -> Conversation | None:
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.organization_id == organization_id,
                Conversation.id == conversation_id,
            )
            .first()
        )

    def get_latest_conversation_for_contact(
        self, organization_id: UUID, contact_id: UUID
    ) -> Conversation | None:
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.organization_id == organization_id,
                Conversation.contact_id == contact_id,
            )
            .order_by(Conversation.created_at.desc())
            .first()
        )

    def create_conversation(self, organization_id: UUID, contact_id: UUID) -> Conversation:
        conversation = Conversation(
            organization_id=organization_id,
            contact_id=contact_id,
            status=ConversationStatus.OPEN.value,
            priority="medium",
            unread_count=0,
        )
        self.db.add(conversation)
        return conversation

    def list_conversations(
        self,
        organization_id: UUID,
        status: str | None = None,
        assigned_to: UUID | None = None,
        priority: str | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[Conversation, Contact]]:
        """List conversations with their contact, most recent activity first."""
        query = (
            self.db.query(Conversation, Contact)
            .join(Contact, Contact.id == Conversation.contact_id)
            .filter(Conversation.organization_id == organization_id)
        )
        if status:
            query = query.filter(Conversation.status == status)
        if assigned_to:
            query = query.filter(Conversation.assigned_to == assigned_to)
        if priority:
            query = query.filter(Conversation.priority == priority)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(Contact.name.ilike(pattern), Contact.phone_number.ilike(pattern))
            )
        return (
            query.order_by(Conversation.last_message_at.desc().nullslast())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_conversations_by_status(
        self, organization_id: UUID, since: datetime, until: datetime
    ) -> dict[str, int]:
        rows = (
            self.db.query(Conversation.status, func.count(Conversation.id))
            .filter(
                Conversation.organization_id == organization_id,
                Conversation.created_at >= since,
                Conversation.created_at < until,
            )
            .group_by(Conversation.status)
            .all()
        )
        return {status: count for status, count in rows}

    def average_first_response_seconds(
        self, organization_id: UUID, since: datetime, until: datetime
    ) -> float | None:
        value = (
            self.db.query(
                func.avg(
                    func.extract("epoch", Conversation.first_response_at - Conversation.created_at)
                )
            )
            .filter(
                Conversation.organization_id == organization_id,
                Conversation.first_response_at.isnot(None),
                Conversation.created_at >= since,
                Conversation.created_at < until,
            )
            .scalar()
        )
        return float(value) if value is not None else None

    def agent_conversation_counts(
        self, organization_id: UUID, since: datetime, until: datetime
    ) -> list[tuple[UUID, int, int]]:
        """Per agent: (profile id, assigned count, resolved count)."""
        rows = (
            self.db.query(
                Conversation.assigned_to,
                func.count(Conversation.id),
                func.count(Conversation.resolved_at),
            )
            .filter(
                Conversation.organization_id == organization_id,
                Conversation.assigned_to.isnot(None),
                Conversation.created_at >= since,
                Conversation.created_at < until,
            )
            .group_by(Conversation.assigned_to)
            .all()
        )
        return [(agent_id, assigned, done) for agent_id, assigned, done in rows]

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message(self, organization_id: UUID, message_id: UUID) -> Message | None:
        return (
            self.db.query(Message)
            .filter(Message.organization_id == organization_id, Message.id == message_id)
            .first()
        )

    def get_message_by_whatsapp_id(self, whatsapp_message_id: str) -> Message | None:
        """Get message by provider message ID (delivery status updates)."""
        return (
            self.db.query(Message)
            .filter(Message.whatsapp_message_id == whatsapp_message_id)
            .first()
        )

    def is_message_processed(self, whatsapp_message_id: str) -> bool:
        """Check if a message has already been stored (idempotency)."""
        result = self.db.execute(
            text("SELECT 1 FROM messages WHERE whatsapp_message_id = :id LIMIT 1"),
            {"id": whatsapp_message_id},
        )
        return result.fetchone() is not None

    def create_message(
        self,
        organization_id: UUID,
        conversation_id: UUID,
        direction: MessageDirection,
        sender_type: SenderType,
        message_type: str = "text",
        content: str | None = None,
        sender_id: UUID | None = None,
        whatsapp_message_id: str | None = None,
        status: MessageStatus = MessageStatus.PENDING,
        media_url: str | None = None,
        media_mime_type: str | None = None,
        template_name: str | None = None,
        raw_payload: dict[str, Any] | None = None,
    ) -> Message:
        message = Message(
            organization_id=organization_id,
            conversation_id=conversation_id,
            direction=direction.value,
            sender_type=sender_type.value,
            sender_id=sender_id,
            message_type=message_type,
            content=content,
            whatsapp_message_id=whatsapp_message_id,
            status=status.value,
            media_url=media_url,
            media_mime_type=media_mime_type,
            template_name=template_name,
            is_read=direction == MessageDirection.OUTBOUND,
            raw_payload=raw_payload or {},
        )
        self.db.add(message)
        return message

    def list_messages(
        self,
        organization_id: UUID,
        conversation_id: UUID,
        limit: int = 100,
        before: datetime | None = None,
    ) -> list[Message]:
        """Messages of a conversation, oldest first."""
        query = self.db.query(Message).filter(
            Message.organization_id == organization_id,
            Message.conversation_id == conversation_id,
        )
        if before:
            query = query.filter(Message.created_at < before)
        rows = query.order_by(Message.created_at.desc()).limit(limit).all()
        return list(reversed(rows))

    def mark_conversation_messages_read(self, organization_id: UUID, conversation_id: UUID) -> int:
        now = datetime.utcnow()
        return (
            self.db.query(Message)
            .filter(
                Message.organization_id == organization_id,
                Message.conversation_id == conversation_id,
                Message.direction == MessageDirection.INBOUND.value,
                Message.is_read == False,  # noqa: E712
            )
            .update({"is_read": True, "read_at": now}, synchronize_session=False)
        )

    def count_messages_by_direction(
        self, organization_id: UUID, since: datetime, until: datetime
    ) -> dict[str, int]:
        rows = (
            self.db.query(Message.direction, func.count(Message.id))
            .filter(
                Message.organization_id == organization_id,
                Message.created_at >= since,
                Message.created_at < until,
            )
            .group_by(Message.direction)
            .all()
        )
        return {direction: count for direction, count in rows}

    def daily_message_volume(
        self, organization_id: UUID, since: datetime, until: datetime
    ) -> list[tuple[datetime, str, int]]:
        day = func.date_trunc("day", Message.created_at)
        return (
            self.db.query(day, Message.direction, func.count(Message.id))
            .filter(
                Message.organization_id == organization_id,
                Message.created_at >= since,
                Message.created_at < until,
            )
            .group_by(day, Message.direction)
            .order_by(day)
            .all()
        )

    # =========================================================================
    # Templates
    # =========================================================================

    def get_template(self, organization_id: UUID, template_id: UUID) -> MessageTemplate | None:
        return (
            self.db.query(MessageTemplate)
            .filter(
                MessageTemplate.organization_id == organization_id,
                MessageTemplate.id == template_id,
            )
            .first()
        )

    def get_template_by_name(self, organization_id: UUID, name: str) -> MessageTemplate | None:
        return (
            self.db.query(MessageTemplate)
            .filter(
                MessageTemplate.organization_id == organization_id,
                MessageTemplate.name == name,
            )
            .first()
        )

    def list_templates(
        self,
        organization_id: UUID,
        category: str | None = None,
        active_only: bool = False,
    ) -> list[MessageTemplate]:
        query = self.db.query(MessageTemplate).filter(
            MessageTemplate.organization_id == organization_id
        )
        if category:
            query = query.filter(MessageTemplate.category == category)
        if active_only:
            query = query.filter(MessageTemplate.is_active == True)  # noqa: E712
        return query.order_by(MessageTemplate.name).all()

    # =========================================================================
    # Team invitations
    # =========================================================================

    def get_invitation_by_token(self, token: str) -> TeamInvitation | None:
        return self.db.query(TeamInvitation).filter(TeamInvitation.token == token).first()

    def get_invitation(self, organization_id: UUID, invitation_id: UUID) -> TeamInvitation | None:
        return (
            self.db.query(TeamInvitation)
            .filter(
                TeamInvitation.organization_id == organization_id,
                TeamInvitation.id == invitation_id,
            )
            .first()
        )

    def get_pending_invitation(self, organization_id: UUID, email: str) -> TeamInvitation | None:
        return (
            self.db.query(TeamInvitation)
            .filter(
                TeamInvitation.organization_id == organization_id,
                func.lower(TeamInvitation.email) == email.lower(),
                TeamInvitation.status == InvitationStatus.PENDING.value,
            )
            .first()
        )

    def list_invitations(self, organization_id: UUID, status: str | None = None) -> list[TeamInvitation]:
        query = self.db.query(TeamInvitation).filter(
            TeamInvitation.organization_id == organization_id
        )
        if status:
            query = query.filter(TeamInvitation.status == status)
        return query.order_by(TeamInvitation.created_at.desc()).all()

    def create_invitation(
        self,
        organization_id: UUID,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
        invited_by: UUID | None = None,
    ) -> TeamInvitation:
        invitation = TeamInvitation(
            organization_id=organization_id,
            email=email.lower(),
            role=role,
            token=token,
            invited_by=invited_by,
            status=InvitationStatus.PENDING.value,
            expires_at=expires_at,
        )
        self.db.add(invitation)
        return invitation

    # =========================================================================
    # Segments
    # =========================================================================

    def _segment_query(self, query, organization_id: UUID, conditions: list[dict[str, Any]]):
        now = datetime.utcnow()
        query = query.filter(Contact.organization_id == organization_id)
        if conditions:
            query = query.filter(and_(*[segment_clause(c, now) for c in conditions]))
        return query

    def count_contacts_matching(self, organization_id: UUID, conditions: list[dict[str, Any]]) -> int:
        query = self._segment_query(self.db.query(func.count(Contact.id)), organization_id, conditions)
        return query.scalar() or 0

    def list_contacts_matching(
        self,
        organization_id: UUID,
        conditions: list[dict[str, Any]],
        limit: int = 50,
        offset: int = 0,
    ) -> list[Contact]:
        query = self._segment_query(self.db.query(Contact), organization_id, conditions)
        return query.order_by(Contact.created_at, Contact.id).offset(offset).limit(limit).all()

    def list_contacts_by_ids(self, organization_id: UUID, contact_ids: list[UUID]) -> list[Contact]:
        return (
            self.db.query(Contact)
            .filter(Contact.organization_id == organization_id, Contact.id.in_(contact_ids))
            .all()
        )

    def tag_counts(self, organization_id: UUID) -> list[tuple[str, int]]:
        """(tag, contact count) pairs, most used first."""
        tag = func.unnest(Contact.tags).label("tag")
        rows = (
            self.db.query(tag, func.count())
            .filter(Contact.organization_id == organization_id)
            .group_by("tag")
            .order_by(func.count().desc(), text("tag"))
            .all()
        )
        return [(row[0], row[1]) for row in rows]

    def get_segment(self, organization_id: UUID, segment_id: UUID) -> ContactSegment | None:
        return (
            self.db.query(ContactSegment)
            .filter(ContactSegment.organization_id == organization_id, ContactSegment.id == segment_id)
            .first()
        )

    def get_segment_by_name(self, organization_id: UUID, name: str) -> ContactSegment | None:
        return (
            self.db.query(ContactSegment)
            .filter(ContactSegment.organization_id == organization_id, ContactSegment.name == name)
            .first()
        )

    def list_segments(self, organization_id: UUID) -> list[ContactSegment]:
        return (
            self.db.query(ContactSegment)
            .filter(ContactSegment.organization_id == organization_id, ContactSegment.is_active.is_(True))
            .order_by(ContactSegment.created_at.desc())
            .all()
        )

    def create_segment(self, organization_id: UUID, **fields: Any) -> ContactSegment:
        segment = ContactSegment(organization_id=organization_id, is_active=True, **fields)
        self.db.add(segment)
        return segment

    # =========================================================================
    # Usage
    # =========================================================================

    def count_contacts(self, organization_id: UUID) -> int:
        return (
            self.db.query(func.count(Contact.id))
            .filter(Contact.organization_id == organization_id)
            .scalar()
            or 0
        )

    def count_conversations(self, organization_id: UUID, status: str | None = None) -> int:
        query = self.db.query(func.count(Conversation.id)).filter(
            Conversation.organization_id == organization_id
        )
        if status:
            query = query.filter(Conversation.status == status)
        return query.scalar() or 0

"""
Contact Service

Contacts are identified by whatsapp_id, the digits of their E.164 number.
"""

import csv
import io
import logging
import re
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.models import Contact
from inbox.persistence.repo import InboxRepository
from inboxcore.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_TAGS = 20
MAX_TAG_LENGTH = 50
UPDATABLE_FIELDS = {"name", "email", "notes", "tags"}
CSV_COLUMNS = ["id", "name", "phone_number", "email", "tags", "is_blocked", "opted_out_at", "last_message_at", "created_at"]


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number to E.164 digits (no "+").

    Accepts spaces, dashes, dots, parentheses, a leading "+" or "00".
    """
    if not phone:
        raise ValidationError("Phone number is required")

    digits = re.sub(r"[\s\-().]", "", phone.strip())
    if digits.startswith("+"):
        digits = digits[1:]
    elif digits.startswith("00"):
        digits = digits[2:]

    if not digits.isdigit():
        raise ValidationError(f"Invalid phone number: {phone}", code="INVALID_PHONE")
    if not 8 <= len(digits) <= 15 or digits.startswith("0"):
        raise ValidationError(f"Invalid phone number: {phone}", code="INVALID_PHONE")
    return digits


def normalize_tags(tags: list[str] | None) -> list[str]:
    result: list[str] = []
    for tag in tags or []:
        tag = tag.strip().lower()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tag exceeds {MAX_TAG_LENGTH} characters: {tag[:20]}...")
        if tag not in result:
            result.append(tag)
    if len(result) > MAX_TAGS:
        raise ValidationError(f"A contact can have at most {MAX_TAGS} tags")
    return result


class ContactService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = InboxRepository(db)

    def get_contact(self, organization_id: UUID, contact_id: UUID) -> Contact:
        contact = self.repo.get_contact(organization_id, contact_id)
        if not contact:
            raise NotFoundError("Contact not found")
        return contact

    def list_contacts(
        self,
        organization_id: UUID,
        search: str | None = None,
        tag: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Contact]:
        return self.repo.list_contacts(
            organization_id,
            search=search,
            tag=tag.lower() if tag else None,
            limit=min(limit, 500),
            offset=offset,
        )

    def create_contact(
        self,
        organization_id: UUID,
        phone_number: str,
        name: str | None = None,
        email: str | None = None,
        tags: list[str] | None = None,
        notes: str | None = None,
    ) -> Contact:
        whatsapp_id = normalize_phone(phone_number)
        if self.repo.get_contact_by_whatsapp_id(organization_id, whatsapp_id):
            raise ConflictError(
                "A contact with this phone number already exists",
                details={"whatsapp_id": whatsapp_id},
            )

        contact = self.repo.create_contact(
            organization_id=organization_id,
            whatsapp_id=whatsapp_id,
            phone_number=f"+{whatsapp_id}",
            name=name,
            email=email,
            tags=normalize_tags(tags),
            notes=notes,
        )
        self.db.commit()
        logger.info("Created contact", extra={"organization_id": str(organization_id), "contact_id": str(contact.id)})
        return contact

    def update_contact(self, organization_id: UUID, contact_id: UUID, **changes: Any) -> Contact:
        contact = self.get_contact(organization_id, contact_id)
        for field, value in changes.items():
            if field not in UPDATABLE_FIELDS or value is None:
                continue
            if field == "tags":
                value = normalize_tags(value)
            setattr(contact, field, value)
        self.db.commit()
        return contact

    def delete_contact(self, organization_id: UUID, contact_id: UUID) -> None:
        contact = self.get_contact(organization_id, contact_id)
        self.db.delete(contact)
        self.db.commit()
        logger.info("Deleted contact", extra={"organization_id": str(organization_id), "contact_id": str(contact_id)})

    def add_tags(self, organization_id: UUID, contact_id: UUID, tags: list[str]) -> Contact:
        contact = self.get_contact(organization_id, contact_id)
        contact.tags = normalize_tags(list(contact.tags or []) + list(tags))
        self.db.commit()
        return contact

    def remove_tags(self, organization_id: UUID, contact_id: UUID, tags: list[str]) -> Contact:
        contact = self.get_contact(organization_id, contact_id)
        removed = {t.strip().lower() for t in tags}
        contact.tags = [t for t in contact.tags or [] if t not in removed]
        self.db.commit()
        return contact

    def set_blocked(self, organization_id: UUID, contact_id: UUID, blocked: bool) -> Contact:
        contact = self.get_contact(organization_id, contact_id)
        contact.is_blocked = blocked
        self.db.commit()
        logger.info(
            f"Contact {'blocked' if blocked else 'unblocked'}",
            extra={"organization_id": str(organization_id), "contact_id": str(contact_id)},
        )
        return contact

    def export_csv(self, organization_id: UUID, search: str | None = None, tag: str | None = None) -> str:
        """All matching contacts as CSV text."""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)

        offset = 0
        batch = 500
        while True:
            contacts = self.list_contacts(organization_id, search=search, tag=tag, limit=batch, offset=offset)
            for contact in contacts:
                writer.writerow([_csv_value(contact, column) for column in CSV_COLUMNS])
            if len(contacts) < batch:
                break
            offset += batch

        return buffer.getvalue()


def _csv_value(contact: Contact, column: str) -> str:
    value = getattr(contact, column)
    if value is None:
        return ""
    if isinstance(value, list):
        return ";".join(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)

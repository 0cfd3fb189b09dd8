"""
Organization Resolver

Resolves the organization of an incoming WhatsApp webhook from its
phone_number_id, and the sending credentials of an organization.
"""

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.persistence.repo import InboxRepository
from inbox.providers.meta_cloud.webhook import extract_phone_number_id
from inboxcore.crypto import EncryptionError, FieldEncryptor, get_field_encryptor

logger = logging.getLogger(__name__)


@dataclass
class SendingCredentials:
    """What the outbound worker needs to send for an organization."""

    organization_id: UUID
    phone_number_id: str
    access_token: str


class OrganizationResolver:
    """Resolves organizations from WhatsApp webhook data."""

    def __init__(self, db: Session, encryptor: FieldEncryptor | None = None):
        self.db = db
        self.repo = InboxRepository(db)
        self._encryptor = encryptor

    def resolve_from_phone_number_id(self, phone_number_id: str) -> Organization | None:
        """Active organization bound to a WhatsApp phone number ID."""
        organization = self.repo.get_organization_by_phone_number_id(phone_number_id)

        if organization:
            logger.debug(
                "Resolved organization from phone_number_id",
                extra={"phone_number_id": phone_number_id, "organization_id": str(organization.id)},
            )
        else:
            logger.warning(f"No organization bound to phone_number_id: {phone_number_id}")

        return organization

    def resolve_from_webhook_payload(self, payload: dict[str, Any]) -> Organization | None:
        phone_number_id = extract_phone_number_id(payload)
        if not phone_number_id:
            logger.warning("Webhook payload has no phone_number_id")
            return None
        return self.resolve_from_phone_number_id(phone_number_id)

    def get_access_token(self, organization: Organization) -> str | None:
        """
        Decrypt the organization's WhatsApp access token.

        Tokens stored without the encryption prefix (stub mode, legacy rows)
        are returned as-is.
        """
        token = organization.whatsapp_access_token_encrypted
        if not token:
            return None
        if not FieldEncryptor.is_encrypted(token):
            return token

        try:
            encryptor = self._encryptor or get_field_encryptor()
            return encryptor.decrypt(token)
        except EncryptionError as e:
            logger.error(
                f"Failed to decrypt access token: {e.code}",
                extra={"organization_id": str(organization.id)},
            )
            return None

    def get_sending_credentials(self, organization_id: UUID) -> SendingCredentials | None:
        organization = self.repo.get_organization(organization_id)
        if not organization or not organization.is_active or not organization.whatsapp_phone_number_id:
            return None

        access_token = self.get_access_token(organization)
        if not access_token:
            return None

        return SendingCredentials(
            organization_id=organization.id,
            phone_number_id=organization.whatsapp_phone_number_id,
            access_token=access_token,
        )

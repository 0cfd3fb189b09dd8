"""
Message Templates

Canned replies with {{variable}} placeholders.
"""

import logging
import re
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.models import MessageTemplate
from inbox.persistence.repo import InboxRepository
from inboxcore.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")

MAX_TEMPLATE_LENGTH = 4096
UPDATABLE_FIELDS = {"name", "content", "category", "language", "is_active", "whatsapp_template_name"}


def extract_variables(content: str) -> list[str]:
    """Variable names in order of first appearance."""
    seen: list[str] = []
    for name in VARIABLE_PATTERN.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


def render_template(content: str, values: dict[str, Any]) -> str:
    """
    Substitute {{variables}} in content.

    Raises:
        ValidationError: if any variable has no value
    """
    missing = [name for name in extract_variables(content) if values.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing template variables: {', '.join(missing)}",
            code="MISSING_TEMPLATE_VARIABLES",
            details={"missing": missing},
        )
    return VARIABLE_PATTERN.sub(lambda m: str(values[m.group(1)]), content)


class TemplateService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = InboxRepository(db)

    def get_template(self, organization_id: UUID, template_id: UUID) -> MessageTemplate:
        template = self.repo.get_template(organization_id, template_id)
        if not template:
            raise NotFoundError("Template not found")
        return template

    def list_templates(
        self,
        organization_id: UUID,
        category: str | None = None,
        active_only: bool = False,
    ) -> list[MessageTemplate]:
        return self.repo.list_templates(organization_id, category=category, active_only=active_only)

    def _validate_content(self, content: str) -> None:
        if not content or not content.strip():
            raise ValidationError("Template content is required")
        if len(content) > MAX_TEMPLATE_LENGTH:
            raise ValidationError(f"Template content exceeds {MAX_TEMPLATE_LENGTH} characters")

    def create_template(
        self,
        organization_id: UUID,
        name: str,
        content: str,
        created_by: UUID | None = None,
        category: str = "general",
        language: str = "en",
        whatsapp_template_name: str | None = None,
    ) -> MessageTemplate:
        self._validate_content(content)
        if self.repo.get_template_by_name(organization_id, name):
            raise ConflictError(f"A template named '{name}' already exists")

        template = MessageTemplate(
            organization_id=organization_id,
            name=name,
            content=content,
            category=category,
            language=language,
            variables=extract_variables(content),
            is_active=True,
            created_by=created_by,
            whatsapp_template_name=whatsapp_template_name,
        )
        self.db.add(template)
        self.db.commit()

        logger.info(
            f"Created template {name}",
            extra={"organization_id": str(organization_id), "variables": template.variables},
        )
        return template

    def update_template(self, organization_id: UUID, template_id: UUID, **changes: Any) -> MessageTemplate:
        template = self.get_template(organization_id, template_id)

        new_name = changes.get("name")
        if new_name and new_name != template.name:
            if self.repo.get_template_by_name(organization_id, new_name):
                raise ConflictError(f"A template named '{new_name}' already exists")

        if changes.get("content") is not None:
            self._validate_content(changes["content"])
            template.variables = extract_variables(changes["content"])

        for field, value in changes.items():
            if field in UPDATABLE_FIELDS and value is not None:
                setattr(template, field, value)

        self.db.commit()
        return template

    def delete_template(self, organization_id: UUID, template_id: UUID) -> None:
        template = self.get_template(organization_id, template_id)
        self.db.delete(template)
        self.db.commit()
        logger.info(f"Deleted template {template.name}", extra={"organization_id": str(organization_id)})

    def render(self, organization_id: UUID, template_id: UUID, values: dict[str, Any]) -> str:
        template = self.get_template(organization_id, template_id)
        if not template.is_active:
            raise ValidationError("Template is inactive", code="TEMPLATE_INACTIVE")
        return render_template(template.content, values)

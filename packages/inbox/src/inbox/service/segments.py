"""
Contact Segments

Audiences for broadcasts. A segment is a list of conditions on contact fields
that must all match, e.g.

    {"conditions": [
        {"field": "tags", "operator": "has_tag", "value": "vip"},
        {"field": "last_message_at", "operator": "within_days", "value": 30},
    ]}

Built-in segments (all, active, inactive, new, vip, blocked) and one segment
per tag are computed on the fly; custom segments are stored per organization.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.models import Contact, ContactSegment
from inbox.persistence.repo import SEGMENT_DATE_FIELDS, InboxRepository
from inboxcore.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_CONDITIONS = 20
MAX_NAME_LENGTH = 100

TEXT_FIELDS = {"name", "phone_number", "email", "notes"}
BOOLEAN_FIELDS = {"is_blocked"}
SEGMENT_FIELDS = TEXT_FIELDS | BOOLEAN_FIELDS | SEGMENT_DATE_FIELDS | {"tags"}

NO_VALUE_OPERATORS = {"is_null", "is_not_null"}
TEXT_OPERATORS = {"contains", "not_contains", "starts_with", "ends_with"}
COMPARISON_OPERATORS = {"greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal"}
LIST_OPERATORS = {"in", "not_in"}
TAG_OPERATORS = {"has_tag", "not_has_tag"}
DAYS_OPERATORS = {"within_days", "older_than_days"}
SEGMENT_OPERATORS = (
    {"equals", "not_equals"}
    | NO_VALUE_OPERATORS
    | TEXT_OPERATORS
    | COMPARISON_OPERATORS
    | LIST_OPERATORS
    | TAG_OPERATORS
    | DAYS_OPERATORS
)

BUILTIN_SEGMENTS: dict[str, tuple[str, list[dict[str, Any]]]] = {
    "all": ("All contacts", []),
    "active": ("Active (last 30 days)", [{"field": "last_message_at", "operator": "within_days", "value": 30}]),
    "inactive": ("Inactive (30+ days)", [{"field": "last_message_at", "operator": "older_than_days", "value": 30}]),
    "new": ("New (last 7 days)", [{"field": "created_at", "operator": "within_days", "value": 7}]),
    "vip": ("VIP contacts", [{"field": "tags", "operator": "has_tag", "value": "vip"}]),
    "blocked": ("Blocked contacts", [{"field": "is_blocked", "operator": "equals", "value": True}]),
}


def _invalid(index: int, message: str) -> ValidationError:
    return ValidationError(f"Condition {index}: {message}", code="INVALID_SEGMENT_CRITERIA", details={"index": index})


def _normalize_condition(index: int, condition: Any) -> dict[str, Any]:
    if not isinstance(condition, dict):
        raise _invalid(index, "must be an object")

    field = condition.get("field")
    operator = condition.get("operator")
    value = condition.get("value")

    if field not in SEGMENT_FIELDS:
        raise _invalid(index, f"unknown field {field!r}")
    if operator not in SEGMENT_OPERATORS:
        raise _invalid(index, f"unknown operator {operator!r}")

    if operator in NO_VALUE_OPERATORS:
        return {"field": field, "operator": operator}
    if value is None:
        raise _invalid(index, f"{operator} needs a value")

    if (field == "tags") != (operator in TAG_OPERATORS):
        raise _invalid(index, "tags only support has_tag and not_has_tag")

    if operator in TAG_OPERATORS:
        if not isinstance(value, str) or not value.strip():
            raise _invalid(index, "tag must be a non-empty string")
        value = value.strip().lower()
    elif operator in DAYS_OPERATORS:
        if field not in SEGMENT_DATE_FIELDS:
            raise _invalid(index, f"{operator} only applies to date fields")
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise _invalid(index, "days must be a positive integer")
    elif operator in TEXT_OPERATORS:
        if field not in TEXT_FIELDS:
            raise _invalid(index, f"{operator} only applies to text fields")
        value = str(value)
    elif operator in LIST_OPERATORS:
        if field not in TEXT_FIELDS:
            raise _invalid(index, f"{operator} only applies to text fields")
        value = [str(v) for v in (value if isinstance(value, list) else [value])]
    elif field in BOOLEAN_FIELDS:
        if not isinstance(value, bool) or operator not in {"equals", "not_equals"}:
            raise _invalid(index, f"{field} only supports equals/not_equals with true or false")
    elif field in SEGMENT_DATE_FIELDS:
        try:
            value = datetime.fromisoformat(str(value)).isoformat()
        except ValueError:
            raise _invalid(index, f"{value!r} is not an ISO date")
    elif operator in COMPARISON_OPERATORS:
        raise _invalid(index, f"{operator} only applies to date fields")
    else:
        value = str(value)

    return {"field": field, "operator": operator, "value": value}


def validate_criteria(criteria: Any) -> dict[str, Any]:
    """
    Validate segment criteria and return a normalized copy.

    Raises:
        ValidationError: INVALID_SEGMENT_CRITERIA naming the bad condition
    """
    if not isinstance(criteria, dict) or not isinstance(criteria.get("conditions"), list):
        raise ValidationError("Criteria must be an object with a conditions list", code="INVALID_SEGMENT_CRITERIA")
    conditions = criteria["conditions"]
    if len(conditions) > MAX_CONDITIONS:
        raise ValidationError(f"A segment can have at most {MAX_CONDITIONS} conditions", code="INVALID_SEGMENT_CRITERIA")
    return {"conditions": [_normalize_condition(i, c) for i, c in enumerate(conditions)]}


class SegmentService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = InboxRepository(db)

    def get_segment(self, organization_id: UUID, segment_id: UUID) -> ContactSegment:
        segment = self.repo.get_segment(organization_id, segment_id)
        if not segment or not segment.is_active:
            raise NotFoundError("Segment not found")
        return segment

    def count(self, organization_id: UUID, criteria: dict[str, Any]) -> int:
        return self.repo.count_contacts_matching(organization_id, validate_criteria(criteria)["conditions"])

    def preview(self, organization_id: UUID, criteria: dict[str, Any], limit: int = 20) -> dict[str, Any]:
        """Count plus the first few matching contacts, for the segment builder."""
        conditions = validate_criteria(criteria)["conditions"]
        return {
            "count": self.repo.count_contacts_matching(organization_id, conditions),
            "contacts": self.repo.list_contacts_matching(organization_id, conditions, limit=min(limit, 100)),
        }

    def overview(self, organization_id: UUID) -> dict[str, Any]:
        """Built-in, per-tag and saved segments with their current counts."""
        builtin = [
            {
                "key": key,
                "name": name,
                "count": self.repo.count_contacts_matching(organization_id, conditions),
                "criteria": {"conditions": conditions},
            }
            for key, (name, conditions) in BUILTIN_SEGMENTS.items()
        ]
        tags = [
            {"key": f"tag:{tag}", "name": f"Tagged: {tag}", "tag": tag, "count": count}
            for tag, count in self.repo.tag_counts(organization_id)
        ]

        custom = []
        for segment in self.repo.list_segments(organization_id):
            segment.contact_count = self.repo.count_contacts_matching(
                organization_id, (segment.criteria or {}).get("conditions", [])
            )
            custom.append(segment)
        self.db.commit()

        counts = {s["key"]: s["count"] for s in builtin}
        return {
            "builtin": builtin,
            "tags": tags,
            "custom": custom,
            "summary": {
                "total": counts["all"],
                "active": counts["active"],
                "new": counts["new"],
                "blocked": counts["blocked"],
            },
        }

    def create_segment(
        self,
        organization_id: UUID,
        name: str,
        criteria: dict[str, Any],
        description: str | None = None,
        created_by: UUID | None = None,
    ) -> ContactSegment:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Segment name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Segment name exceeds {MAX_NAME_LENGTH} characters")
        criteria = validate_criteria(criteria)
        if self.repo.get_segment_by_name(organization_id, name):
            raise ConflictError(f"A segment named '{name}' already exists")

        segment = self.repo.create_segment(
            organization_id,
            name=name,
            description=description,
            criteria=criteria,
            contact_count=self.repo.count_contacts_matching(organization_id, criteria["conditions"]),
            created_by=created_by,
        )
        self.db.commit()

        logger.info(
            f"Created segment {name} matching {segment.contact_count} contacts",
            extra={"organization_id": str(organization_id)},
        )
        return segment

    def delete_segment(self, organization_id: UUID, segment_id: UUID) -> None:
        segment = self.get_segment(organization_id, segment_id)
        segment.is_active = False
        self.db.commit()
        logger.info(f"Archived segment {segment.name}", extra={"organization_id": str(organization_id)})

    def iter_contacts(self, organization_id: UUID, conditions: list[dict[str, Any]], batch: int = 500):
        """All contacts matching already validated conditions, fetched in pages."""
        offset = 0
        while True:
            contacts: list[Contact] = self.repo.list_contacts_matching(
                organization_id, conditions, limit=batch, offset=offset
            )
            yield from contacts
            if len(contacts) < batch:
                return
            offset += batch

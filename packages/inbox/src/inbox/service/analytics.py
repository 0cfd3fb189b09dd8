"""
Analytics

Dashboard aggregates for one organization over a date range.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.persistence.models import ConversationStatus, MessageDirection
from inbox.persistence.repo import InboxRepository
from inboxcore.errors import ValidationError

DEFAULT_RANGE_DAYS = 30
MAX_RANGE_DAYS = 366


def resolve_range(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
    end = end or datetime.utcnow()
    start = start or end - timedelta(days=DEFAULT_RANGE_DAYS)
    if start >= end:
        raise ValidationError("start must be before end")
    if end - start > timedelta(days=MAX_RANGE_DAYS):
        raise ValidationError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")
    return start, end


def resolution_rate(by_status: dict[str, int]) -> float:
    total = sum(by_status.values())
    if not total:
        return 0.0
    done = by_status.get(ConversationStatus.RESOLVED.value, 0) + by_status.get(ConversationStatus.CLOSED.value, 0)
    return round(done / total * 100, 1)


class AnalyticsService:
    def __init__(self, db: Session):
        self.repo = InboxRepository(db)

    def dashboard(
        self,
        organization_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = resolve_range(start, end)

        by_status = self.repo.count_conversations_by_status(organization_id, start, end)
        by_direction = self.repo.count_messages_by_direction(organization_id, start, end)
        avg_response = self.repo.average_first_response_seconds(organization_id, start, end)

        members = {m.id: m for m in self.repo.list_members(organization_id, include_inactive=True)}
        agents = []
        for agent_id, assigned, resolved in self.repo.agent_conversation_counts(organization_id, start, end):
            member = members.get(agent_id)
            agents.append(
                {
                    "agent_id": str(agent_id),
                    "name": (member.full_name or member.email) if member else None,
                    "assigned": assigned,
                    "resolved": resolved,
                }
            )

        daily: dict[str, dict[str, int]] = {}
        for day, direction, count in self.repo.daily_message_volume(organization_id, start, end):
            bucket = daily.setdefault(day.date().isoformat(), {"inbound": 0, "outbound": 0})
            bucket[direction] = count

        return {
            "range": {"start": start.isoformat(), "end": end.isoformat()},
            "conversations": {
                "total": sum(by_status.values()),
                "by_status": {s.value: by_status.get(s.value, 0) for s in ConversationStatus},
                "resolution_rate": resolution_rate(by_status),
            },
            "contacts": {"new": self.repo.count_new_contacts(organization_id, start, end)},
            "messages": {
                "inbound": by_direction.get(MessageDirection.INBOUND.value, 0),
                "outbound": by_direction.get(MessageDirection.OUTBOUND.value, 0),
            },
            "avg_first_response_seconds": round(avg_response, 1) if avg_response is not None else None,
            "agents": agents,
            "daily_volume": [{"date": day, **counts} for day, counts in sorted(daily.items())],
        }

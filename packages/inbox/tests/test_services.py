"""
Tests for the team, conversation, message, contact, template, admin and
analytics services, plus segments and broadcasts.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from inbox.persistence.repo import segment_clause
from inbox.security.auth import UserClaims, verify_password
from inbox.service import admin
from inbox.service.admin import AdminService
from inbox.service.analytics import AnalyticsService, resolution_rate, resolve_range
from inbox.service.broadcasts import MAX_RECIPIENTS, BroadcastService
from inbox.service.contacts import CSV_COLUMNS, ContactService
from inbox.service.conversations import ConversationService
from inbox.service.messages import MessageService
from inbox.service.segments import BUILTIN_SEGMENTS, SegmentService, validate_criteria
from inbox.service.team import TeamService
from inbox.service.templates import TemplateService
from inboxcore.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError


def claims(organization_id, role):
    return UserClaims(id=uuid4(), organization_id=organization_id, email=f"{role}@example.com", role=role)


def with_mock_repo(service):
    service.repo = MagicMock()
    return service


class TestTeamInvitations:
    @pytest.fixture
    def service(self, organization_id):
        service = with_mock_repo(TeamService(MagicMock()))
        service.repo.get_profile_by_email.return_value = None
        service.repo.get_pending_invitation.return_value = None
        service.repo.get_organization.return_value = SimpleNamespace(id=organization_id, subscription_tier="starter")
        service.repo.count_members.return_value = 1
        service.repo.list_invitations.return_value = []
        service.repo.create_invitation.side_effect = lambda **kwargs: SimpleNamespace(**kwargs)
        return service

    def test_invite(self, service, organization_id):
        actor = claims(organization_id, "admin")
        invitation = service.invite(organization_id, " New@Example.com ", "agent", actor)

        assert invitation.email == "new@example.com"
        assert invitation.role == "agent"
        assert invitation.invited_by == actor.id
        assert len(invitation.token) >= 32
        assert invitation.expires_at > datetime.now(timezone.utc) + timedelta(days=6)

    def test_cannot_invite_higher_role(self, service, organization_id):
        with pytest.raises(PermissionDeniedError):
            service.invite(organization_id, "a@example.com", "owner", claims(organization_id, "admin"))

    def test_cannot_invite_super_admin(self, service, organization_id):
        with pytest.raises(ValidationError):
            service.invite(organization_id, "a@example.com", "super_admin", claims(organization_id, "owner"))

    def test_duplicate_pending_invitation(self, service, organization_id):
        service.repo.get_pending_invitation.return_value = SimpleNamespace()
        with pytest.raises(ConflictError):
            service.invite(organization_id, "a@example.com", "agent", claims(organization_id, "owner"))

    def test_seat_limit_counts_pending_invitations(self, service, organization_id):
        service.repo.count_members.return_value = 2
        service.repo.list_invitations.return_value = [SimpleNamespace()]

        with pytest.raises(ValidationError) as exc_info:
            service.invite(organization_id, "a@example.com", "agent", claims(organization_id, "owner"))

        assert exc_info.value.code == "SEAT_LIMIT_REACHED"
        assert exc_info.value.details == {"limit": 3, "used": 3}


class TestAcceptInvitation:
    @pytest.fixture
    def invitation(self, organization_id):
        return SimpleNamespace(
            id=uuid4(),
            organization_id=organization_id,
            email="new@example.com",
            role="agent",
            status="pending",
            expires_at=datetime.utcnow() + timedelta(days=1),
            accepted_at=None,
        )

    @pytest.fixture
    def service(self, invitation):
        service = with_mock_repo(TeamService(MagicMock()))
        service.repo.get_invitation_by_token.return_value = invitation
        service.repo.get_profile_by_email.return_value = None
        service.repo.create_profile.side_effect = lambda **kwargs: SimpleNamespace(**kwargs)
        return service

    def test_new_user_account(self, service, invitation, organization_id):
        profile = service.accept("token", password="s3cret-pass", full_name="New Agent")

        assert profile.organization_id == organization_id
        assert profile.role == "agent"
        assert verify_password("s3cret-pass", profile.password_hash)
        assert invitation.status == "accepted"

    def test_new_user_needs_password(self, service):
        with pytest.raises(ValidationError):
            service.accept("token")

    def test_existing_user_moves_organization(self, service, invitation, organization_id):
        existing = SimpleNamespace(role="viewer", organization_id=uuid4(), is_active=False, full_name=None)
        service.repo.get_profile_by_email.return_value = existing

        profile = service.accept("token")

        assert profile is existing
        assert existing.organization_id == organization_id
        assert existing.role == "agent"
        assert existing.is_active is True

    def test_last_owner_elsewhere_cannot_leave(self, service, invitation):
        """Joining another organization must not orphan the one the user owns."""
        previous_organization = uuid4()
        existing = SimpleNamespace(role="owner", organization_id=previous_organization, is_active=True, full_name=None)
        service.repo.get_profile_by_email.return_value = existing
        service.repo.count_owners.return_value = 1

        with pytest.raises(ValidationError) as exc_info:
            service.accept("token")

        assert exc_info.value.code == "LAST_OWNER"
        assert existing.organization_id == previous_organization
        assert invitation.status == "pending"
        service.repo.count_owners.assert_called_once_with(previous_organization)

    def test_owner_with_co_owner_can_leave(self, service, invitation, organization_id):
        existing = SimpleNamespace(role="owner", organization_id=uuid4(), is_active=True, full_name=None)
        service.repo.get_profile_by_email.return_value = existing
        service.repo.count_owners.return_value = 2

        service.accept("token")

        assert existing.organization_id == organization_id
        assert existing.role == "agent"

    def test_expired(self, service, invitation):
        invitation.expires_at = datetime.utcnow() - timedelta(minutes=1)
        with pytest.raises(ValidationError) as exc_info:
            service.accept("token", password="x")
        assert exc_info.value.code == "INVITATION_EXPIRED"
        assert invitation.status == "expired"

    def test_already_accepted(self, service, invitation):
        invitation.status = "accepted"
        with pytest.raises(ValidationError) as exc_info:
            service.accept("token", password="x")
        assert exc_info.value.code == "INVITATION_NOT_PENDING"

    def test_unknown_token(self, service):
        service.repo.get_invitation_by_token.return_value = None
        with pytest.raises(NotFoundError):
            service.accept("nope")


class TestMemberManagement:
    @pytest.fixture
    def service(self):
        return with_mock_repo(TeamService(MagicMock()))

    def test_last_owner_cannot_be_demoted(self, service, organization_id):
        actor = claims(organization_id, "owner")
        service.repo.get_member.return_value = SimpleNamespace(role="owner", is_active=True)
        service.repo.count_owners.return_value = 1

        with pytest.raises(ValidationError) as exc_info:
            service.change_role(organization_id, uuid4(), "admin", actor)
        assert exc_info.value.code == "LAST_OWNER"

    def test_cannot_change_own_role(self, service, organization_id):
        actor = claims(organization_id, "owner")
        with pytest.raises(ValidationError):
            service.change_role(organization_id, actor.id, "agent", actor)

    def test_admin_cannot_deactivate_owner(self, service, organization_id):
        service.repo.get_member.return_value = SimpleNamespace(role="owner", is_active=True)
        with pytest.raises(PermissionDeniedError):
            service.deactivate(organization_id, uuid4(), claims(organization_id, "admin"))

    def test_deactivate_agent(self, service, organization_id):
        member = SimpleNamespace(role="agent", is_active=True)
        service.repo.get_member.return_value = member
        service.deactivate(organization_id, uuid4(), claims(organization_id, "admin"))
        assert member.is_active is False


class TestConversationService:
    @pytest.fixture
    def conversation(self):
        return SimpleNamespace(id=uuid4(), status="open", assigned_to=None, resolved_at=None, priority="medium")

    @pytest.fixture
    def service(self, conversation):
        service = with_mock_repo(ConversationService(MagicMock()))
        service.repo.get_conversation.return_value = conversation
        return service

    def test_agent_assigns_self(self, service, conversation, organization_id):
        agent = claims(organization_id, "agent")
        service.repo.get_member.return_value = SimpleNamespace(role="agent")
        service.assign(organization_id, conversation.id, agent.id, agent)
        assert conversation.assigned_to == agent.id

    def test_agent_cannot_assign_others(self, service, conversation, organization_id):
        with pytest.raises(PermissionDeniedError):
            service.assign(organization_id, conversation.id, uuid4(), claims(organization_id, "agent"))

    def test_viewer_cannot_be_assignee(self, service, conversation, organization_id):
        service.repo.get_member.return_value = SimpleNamespace(role="viewer")
        with pytest.raises(ValidationError):
            service.assign(organization_id, conversation.id, uuid4(), claims(organization_id, "admin"))

    def test_resolve_sets_timestamp(self, service, conversation, organization_id):
        service.update_status(organization_id, conversation.id, "resolved")
        assert conversation.status == "resolved"
        assert conversation.resolved_at is not None

    def test_invalid_transition(self, service, conversation, organization_id):
        conversation.status = "closed"
        with pytest.raises(ValidationError) as exc_info:
            service.update_status(organization_id, conversation.id, "resolved")
        assert exc_info.value.code == "INVALID_STATUS_TRANSITION"

    def test_invalid_priority(self, service, conversation, organization_id):
        with pytest.raises(ValidationError):
            service.set_priority(organization_id, conversation.id, "critical")

    def test_missing_conversation(self, service, organization_id):
        service.repo.get_conversation.return_value = None
        with pytest.raises(NotFoundError):
            service.mark_read(organization_id, uuid4())


class TestMessageService:
    @pytest.fixture
    def contact(self):
        return SimpleNamespace(id=uuid4(), whatsapp_id="15557654321", is_blocked=False, opted_out_at=None)

    @pytest.fixture
    def conversation(self, contact):
        return SimpleNamespace(
            id=uuid4(), contact_id=contact.id, status="open", last_message_at=None, first_response_at=None
        )

    @pytest.fixture
    def producer(self):
        return MagicMock()

    @pytest.fixture
    def service(self, producer, contact, conversation):
        service = with_mock_repo(MessageService(MagicMock(), producer))
        service.repo.get_conversation.return_value = conversation
        service.repo.get_contact.return_value = contact
        service.repo.create_message.side_effect = lambda **kwargs: SimpleNamespace(id=uuid4(), **kwargs)
        return service

    def test_create_outbound_sets_first_response(self, service, conversation, contact, organization_id):
        message, payload = service.create_outbound(organization_id, conversation, contact, "Hi!")

        assert message.status.value == "pending"
        assert payload.to_phone == "15557654321"
        assert payload.message_id == message.id
        assert conversation.first_response_at is not None

    def test_opted_out_contact(self, service, contact, conversation, organization_id):
        contact.opted_out_at = datetime.utcnow()
        organization = SimpleNamespace(id=organization_id)
        with pytest.raises(ValidationError) as exc_info:
            service.send_message(organization, conversation.id, uuid4(), text="Hello")
        assert exc_info.value.code == "CONTACT_OPTED_OUT"

    def test_closed_conversation(self, service, conversation, organization_id):
        conversation.status = "closed"
        with pytest.raises(ValidationError) as exc_info:
            service.send_message(SimpleNamespace(id=organization_id), conversation.id, uuid4(), text="Hello")
        assert exc_info.value.code == "CONVERSATION_CLOSED"

    def test_enqueue_publishes_json_payload(self, service, producer, conversation, contact, organization_id):
        _, payload = service.create_outbound(organization_id, conversation, contact, "Hi!")
        service.enqueue(organization_id, payload)

        kwargs = producer.publish_outbound.call_args.kwargs
        assert kwargs["organization_id"] == organization_id
        assert kwargs["payload"]["message_id"] == str(payload.message_id)


class TestAnalyticsHelpers:
    def test_resolution_rate(self):
        assert resolution_rate({"open": 5, "resolved": 3, "closed": 2}) == 50.0
        assert resolution_rate({}) == 0.0

    def test_default_range(self):
        start, end = resolve_range(None, None)
        assert end - start == timedelta(days=30)

    def test_range_validation(self):
        now = datetime.utcnow()
        with pytest.raises(ValidationError):
            resolve_range(now, now - timedelta(days=1))
        with pytest.raises(ValidationError):
            resolve_range(now - timedelta(days=400), now)


class TestContactService:
    @pytest.fixture
    def service(self):
        service = with_mock_repo(ContactService(MagicMock()))
        service.repo.get_contact_by_whatsapp_id.return_value = None
        service.repo.create_contact.side_effect = lambda **kwargs: SimpleNamespace(id=uuid4(), **kwargs)
        return service

    def test_create_normalizes_phone(self, service, organization_id):
        contact = service.create_contact(organization_id, "+1 (555) 765-4321", tags=["VIP", "vip "])

        assert contact.whatsapp_id == "15557654321"
        assert contact.phone_number == "+15557654321"
        assert contact.tags == ["vip"]
        service.db.commit.assert_called_once()

    def test_duplicate_phone(self, service, organization_id):
        service.repo.get_contact_by_whatsapp_id.return_value = SimpleNamespace(id=uuid4())

        with pytest.raises(ConflictError) as exc_info:
            service.create_contact(organization_id, "+15557654321")

        assert exc_info.value.details == {"whatsapp_id": "15557654321"}
        service.repo.create_contact.assert_not_called()

    def test_export_csv(self, service, organization_id):
        created = datetime(2024, 1, 2, 3, 4, 5)
        service.repo.list_contacts.return_value = [
            SimpleNamespace(
                id="c1",
                name="Jane",
                phone_number="+15557654321",
                email=None,
                tags=["vip", "lead"],
                is_blocked=False,
                opted_out_at=None,
                last_message_at=None,
                created_at=created,
            )
        ]

        lines = service.export_csv(organization_id, tag="VIP").splitlines()

        assert lines[0] == ",".join(CSV_COLUMNS)
        assert lines[1] == "c1,Jane,+15557654321,,vip;lead,False,,,2024-01-02T03:04:05"
        assert service.repo.list_contacts.call_args.kwargs["tag"] == "vip"

    def test_export_pages_through_contacts(self, service, organization_id):
        page = [SimpleNamespace(**{column: None for column in CSV_COLUMNS}) for _ in range(500)]
        service.repo.list_contacts.side_effect = [page, page[:3]]

        lines = service.export_csv(organization_id).splitlines()

        assert len(lines) == 1 + 503
        assert service.repo.list_contacts.call_args.kwargs["offset"] == 500


class TestTemplateService:
    @pytest.fixture
    def service(self):
        service = with_mock_repo(TemplateService(MagicMock()))
        service.repo.get_template_by_name.return_value = None
        return service

    def test_create_extracts_variables(self, service, organization_id):
        template = service.create_template(organization_id, "greeting", "Hi {{name}}, order {{ order_id }} ships {{name}}")

        assert template.variables == ["name", "order_id"]
        service.db.add.assert_called_once_with(template)

    def test_duplicate_name(self, service, organization_id):
        service.repo.get_template_by_name.return_value = SimpleNamespace(id=uuid4(), name="greeting")

        with pytest.raises(ConflictError):
            service.create_template(organization_id, "greeting", "Hello")
        service.db.add.assert_not_called()

    def test_rename_to_existing_name(self, service, organization_id):
        service.repo.get_template.return_value = SimpleNamespace(id=uuid4(), name="old", content="Hi")
        service.repo.get_template_by_name.return_value = SimpleNamespace(id=uuid4(), name="greeting")

        with pytest.raises(ConflictError):
            service.update_template(organization_id, uuid4(), name="greeting")

    def test_inactive_template_not_rendered(self, service, organization_id):
        service.repo.get_template.return_value = SimpleNamespace(content="Hi {{name}}", is_active=False)

        with pytest.raises(ValidationError) as exc_info:
            service.render(organization_id, uuid4(), {"name": "Jane"})
        assert exc_info.value.code == "TEMPLATE_INACTIVE"

    def test_render(self, service, organization_id):
        service.repo.get_template.return_value = SimpleNamespace(content="Hi {{name}}", is_active=True)
        assert service.render(organization_id, uuid4(), {"name": "Jane"}) == "Hi Jane"


class TestAdminService:
    @pytest.fixture
    def service(self, monkeypatch):
        processor_class = MagicMock()
        processor_class.return_value.get_statistics.return_value = {"total": 4, "failed": 1}
        monkeypatch.setattr(admin, "WebhookProcessor", processor_class)

        service = with_mock_repo(AdminService(MagicMock(), claims(None, "super_admin")))
        service.repo.count_organizations_by.side_effect = lambda field: (
            {"starter": 2, "professional": 2}
            if field == "subscription_tier"
            else {"active": 3, "cancelled": 1}
        )
        return service

    def test_requires_super_admin(self, organization_id):
        with pytest.raises(PermissionDeniedError):
            AdminService(MagicMock(), claims(organization_id, "owner"))

    def test_platform_stats(self, service):
        service.repo.list_organizations.return_value = [
            SimpleNamespace(subscription_tier="professional", is_active=True),
            SimpleNamespace(subscription_tier="professional", is_active=True),
            SimpleNamespace(subscription_tier="starter", is_active=True),
            # Suspended organizations are not billed
            SimpleNamespace(subscription_tier="enterprise", is_active=False),
        ]

        stats = service.platform_stats()

        assert stats["mrr_cents"] == 2 * 7900 + 2900
        assert stats["organizations"]["total"] == 4
        assert stats["organizations"]["by_tier"] == {"starter": 2, "professional": 2}
        assert stats["webhooks"] == {"total": 4, "failed": 1}
        assert service.repo.list_organizations.call_args.kwargs["status"] == "active"

    def test_suspend(self, service, organization_id):
        organization = SimpleNamespace(id=organization_id, is_active=True)
        service.repo.get_organization.return_value = organization

        service.suspend(organization_id, reason="chargeback")

        assert organization.is_active is False
        service.db.commit.assert_called_once()


class TestAnalyticsService:
    @pytest.fixture
    def agent(self):
        return SimpleNamespace(id=uuid4(), full_name=None, email="agent@example.com")

    @pytest.fixture
    def service(self, agent):
        service = with_mock_repo(AnalyticsService(MagicMock()))
        service.repo.count_conversations_by_status.return_value = {"open": 5, "resolved": 3, "closed": 2}
        service.repo.count_messages_by_direction.return_value = {"inbound": 40, "outbound": 25}
        service.repo.average_first_response_seconds.return_value = 93.456
        service.repo.list_members.return_value = [agent]
        service.repo.agent_conversation_counts.return_value = [(agent.id, 6, 4), (uuid4(), 1, 0)]
        service.repo.daily_message_volume.return_value = [
            (datetime(2024, 1, 2), "inbound", 7),
            (datetime(2024, 1, 1), "outbound", 3),
            (datetime(2024, 1, 1), "inbound", 5),
        ]
        service.repo.count_new_contacts.return_value = 12
        return service

    def test_dashboard(self, service, agent, organization_id):
        start = datetime(2024, 1, 1)
        end = datetime(2024, 1, 31)

        dashboard = service.dashboard(organization_id, start, end)

        assert dashboard["conversations"]["total"] == 10
        assert dashboard["conversations"]["by_status"] == {"open": 5, "pending": 0, "resolved": 3, "closed": 2}
        assert dashboard["conversations"]["resolution_rate"] == 50.0
        assert dashboard["messages"] == {"inbound": 40, "outbound": 25}
        assert dashboard["contacts"] == {"new": 12}
        assert dashboard["avg_first_response_seconds"] == 93.5
        assert dashboard["agents"][0] == {"agent_id": str(agent.id), "name": "agent@example.com", "assigned": 6, "resolved": 4}
        assert dashboard["agents"][1]["name"] is None
        assert dashboard["daily_volume"] == [
            {"date": "2024-01-01", "inbound": 5, "outbound": 3},
            {"date": "2024-01-02", "inbound": 7, "outbound": 0},
        ]
        service.repo.list_members.assert_called_once_with(organization_id, include_inactive=True)

    def test_no_response_data(self, service, organization_id):
        service.repo.average_first_response_seconds.return_value = None
        assert service.dashboard(organization_id)["avg_first_response_seconds"] is None


class TestSegmentCriteria:
    def test_normalizes_conditions(self):
        criteria = validate_criteria(
            {
                "conditions": [
                    {"field": "tags", "operator": "has_tag", "value": " VIP "},
                    {"field": "created_at", "operator": "greater_than", "value": "2024-01-01"},
                    {"field": "email", "operator": "is_null", "value": "ignored"},
                ]
            }
        )

        assert criteria["conditions"] == [
            {"field": "tags", "operator": "has_tag", "value": "vip"},
            {"field": "created_at", "operator": "greater_than", "value": "2024-01-01T00:00:00"},
            {"field": "email", "operator": "is_null"},
        ]

    @pytest.mark.parametrize(
        "condition",
        [
            {"field": "password_hash", "operator": "equals", "value": "x"},
            {"field": "name", "operator": "matches", "value": "x"},
            {"field": "name", "operator": "equals"},
            {"field": "name", "operator": "has_tag", "value": "vip"},
            {"field": "tags", "operator": "contains", "value": "vip"},
            {"field": "last_message_at", "operator": "within_days", "value": -1},
            {"field": "last_message_at", "operator": "within_days", "value": True},
            {"field": "name", "operator": "within_days", "value": 7},
            {"field": "is_blocked", "operator": "equals", "value": "yes"},
            {"field": "created_at", "operator": "after", "value": "2024-01-01"},
            {"field": "created_at", "operator": "equals", "value": "last tuesday"},
            {"field": "name", "operator": "greater_than", "value": "m"},
        ],
    )
    def test_invalid_condition(self, condition):
        with pytest.raises(ValidationError) as exc_info:
            validate_criteria({"conditions": [{"field": "name", "operator": "is_not_null"}, condition]})
        assert exc_info.value.code == "INVALID_SEGMENT_CRITERIA"
        assert exc_info.value.details == {"index": 1}

    def test_conditions_must_be_a_list(self):
        with pytest.raises(ValidationError):
            validate_criteria({"conditions": "tags=vip"})


class TestSegmentClause:
    NOW = datetime(2024, 3, 1, 12, 0, 0)

    @staticmethod
    def compiled(condition, now=None):
        return segment_clause(condition, now).compile(dialect=postgresql.dialect())

    def test_has_tag(self):
        compiled = self.compiled({"field": "tags", "operator": "has_tag", "value": "vip"})
        assert "ANY (contacts.tags)" in str(compiled)
        assert "vip" in compiled.params.values()

    def test_contains_is_case_insensitive(self):
        compiled = self.compiled({"field": "name", "operator": "contains", "value": "acme"})
        assert "ILIKE" in str(compiled)
        assert "%acme%" in compiled.params.values()

    def test_older_than_days_includes_never_messaged(self):
        compiled = self.compiled({"field": "last_message_at", "operator": "older_than_days", "value": 30}, self.NOW)
        sql = str(compiled)
        assert "contacts.last_message_at <" in sql
        assert "contacts.last_message_at IS NULL" in sql
        assert self.NOW - timedelta(days=30) in compiled.params.values()

    def test_date_values_are_parsed(self):
        compiled = self.compiled({"field": "created_at", "operator": "less_than", "value": "2024-01-01T00:00:00"})
        assert datetime(2024, 1, 1) in compiled.params.values()


class TestSegmentService:
    @pytest.fixture
    def service(self):
        service = with_mock_repo(SegmentService(MagicMock()))
        service.repo.get_segment_by_name.return_value = None
        service.repo.count_contacts_matching.return_value = 7
        service.repo.create_segment.side_effect = lambda organization_id, **fields: SimpleNamespace(
            id=uuid4(), organization_id=organization_id, **fields
        )
        return service

    def test_create_segment(self, service, organization_id):
        criteria = {"conditions": [{"field": "tags", "operator": "has_tag", "value": "VIP"}]}

        segment = service.create_segment(organization_id, " VIPs ", criteria, created_by=uuid4())

        assert segment.name == "VIPs"
        assert segment.criteria == {"conditions": [{"field": "tags", "operator": "has_tag", "value": "vip"}]}
        assert segment.contact_count == 7
        service.db.commit.assert_called_once()

    def test_duplicate_name(self, service, organization_id):
        service.repo.get_segment_by_name.return_value = SimpleNamespace(id=uuid4())

        with pytest.raises(ConflictError):
            service.create_segment(organization_id, "VIPs", {"conditions": []})
        service.repo.create_segment.assert_not_called()

    def test_invalid_criteria_not_saved(self, service, organization_id):
        with pytest.raises(ValidationError):
            service.create_segment(organization_id, "Bad", {"conditions": [{"field": "name"}]})
        service.db.commit.assert_not_called()

    def test_overview(self, service, organization_id):
        service.repo.count_contacts_matching.side_effect = lambda organization_id, conditions: 100 + len(conditions)
        service.repo.tag_counts.return_value = [("vip", 4), ("lead", 2)]
        saved = SimpleNamespace(
            id=uuid4(),
            name="Leads",
            criteria={"conditions": [{"field": "tags", "operator": "has_tag", "value": "lead"}]},
            contact_count=0,
        )
        service.repo.list_segments.return_value = [saved]

        overview = service.overview(organization_id)

        assert [s["key"] for s in overview["builtin"]] == list(BUILTIN_SEGMENTS)
        assert overview["summary"] == {"total": 100, "active": 101, "new": 101, "blocked": 101}
        assert overview["tags"][0] == {"key": "tag:vip", "name": "Tagged: vip", "tag": "vip", "count": 4}
        assert saved.contact_count == 101
        service.db.commit.assert_called_once()

    def test_delete_archives(self, service, organization_id):
        segment = SimpleNamespace(id=uuid4(), name="Leads", is_active=True)
        service.repo.get_segment.return_value = segment

        service.delete_segment(organization_id, segment.id)

        assert segment.is_active is False

    def test_archived_segment_not_found(self, service, organization_id):
        service.repo.get_segment.return_value = SimpleNamespace(id=uuid4(), is_active=False)
        with pytest.raises(NotFoundError):
            service.get_segment(organization_id, uuid4())

    def test_iter_contacts_pages(self, service, organization_id):
        service.repo.list_contacts_matching.side_effect = [[1, 2], [3]]

        assert list(service.iter_contacts(organization_id, [], batch=2)) == [1, 2, 3]
        assert service.repo.list_contacts_matching.call_args.kwargs["offset"] == 2


class TestBroadcastService:
    @staticmethod
    def contact(**overrides):
        fields = {"id": uuid4(), "whatsapp_id": "1555000" + str(len(overrides)), "is_blocked": False, "opted_out_at": None}
        fields.update(overrides)
        return SimpleNamespace(**fields)

    @pytest.fixture
    def producer(self):
        return MagicMock()

    @pytest.fixture
    def organization(self, organization_id):
        return SimpleNamespace(id=organization_id, subscription_tier="enterprise", messages_sent_this_month=0)

    @pytest.fixture
    def service(self, producer):
        service = BroadcastService(MagicMock(), producer)
        repo = MagicMock()
        service.repo = service.messages.repo = service.segments.repo = repo
        repo.get_latest_conversation_for_contact.return_value = None
        repo.create_conversation.side_effect = lambda organization_id, contact_id: SimpleNamespace(
            id=uuid4(), contact_id=contact_id, status="open", last_message_at=None, first_response_at=None
        )
        repo.create_message.side_effect = lambda **kwargs: SimpleNamespace(id=uuid4(), **kwargs)
        return service

    def test_skips_blocked_and_opted_out(self, service, producer, organization):
        audience = [
            self.contact(),
            self.contact(name="second"),
            self.contact(is_blocked=True),
            self.contact(opted_out_at=datetime(2024, 1, 1)),
        ]
        service.repo.list_contacts_by_ids.return_value = audience
        committed_before_enqueue = []
        producer.publish_outbound.side_effect = lambda **kwargs: committed_before_enqueue.append(
            service.db.commit.called
        )

        result = service.send(organization, uuid4(), text="Spring sale!", contact_ids=[c.id for c in audience])

        assert result == {"audience": 4, "queued": 2, "skipped": {"blocked": 1, "opted_out": 1, "message_limit": 0}}
        assert committed_before_enqueue == [True, True]
        service.db.commit.assert_called_once()
        assert service.repo.create_message.call_args.kwargs["sender_type"].value == "system"
        assert service.repo.create_conversation.call_count == 2

    def test_stops_at_monthly_allowance(self, service, producer, organization):
        organization.subscription_tier = "starter"
        organization.messages_sent_this_month = 999
        service.repo.list_contacts_by_ids.return_value = [self.contact(), self.contact(name="second")]

        result = service.send(organization, uuid4(), text="Hi", contact_ids=[uuid4(), uuid4()])

        assert result["queued"] == 1
        assert result["skipped"]["message_limit"] == 1
        assert producer.publish_outbound.call_count == 1

    def test_tag_audience(self, service, organization, organization_id):
        service.repo.count_contacts_matching.return_value = 1
        service.repo.list_contacts_matching.return_value = [self.contact()]

        result = service.send(organization, uuid4(), text="Hi", tags=["VIP"])

        assert result["queued"] == 1
        conditions = service.repo.list_contacts_matching.call_args.args[1]
        assert conditions == [{"field": "tags", "operator": "has_tag", "value": "vip"}]

    def test_closed_conversation_gets_a_new_one(self, service, organization):
        contact = self.contact()
        service.repo.list_contacts_by_ids.return_value = [contact]
        service.repo.get_latest_conversation_for_contact.return_value = SimpleNamespace(id=uuid4(), status="closed")

        service.send(organization, uuid4(), text="Hi", contact_ids=[contact.id])

        service.repo.create_conversation.assert_called_once_with(organization.id, contact.id)

    def test_audience_too_large(self, service, organization):
        service.repo.count_contacts_matching.return_value = MAX_RECIPIENTS + 1
        with pytest.raises(ValidationError):
            service.send(organization, uuid4(), text="Hi", tags=["vip"])
        service.db.commit.assert_not_called()

    @pytest.mark.parametrize("audience", [{}, {"tags": ["vip"], "contact_ids": [uuid4()]}])
    def test_exactly_one_audience(self, service, organization, audience):
        with pytest.raises(ValidationError):
            service.send(organization, uuid4(), text="Hi", **audience)

    def test_message_text_required(self, service, producer, organization):
        with pytest.raises(ValidationError):
            service.send(organization, uuid4(), text="  ", tags=["vip"])
        producer.publish_outbound.assert_not_called()

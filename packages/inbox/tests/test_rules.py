"""
Tests for the pure business rules: phone and tag normalization, template
rendering, conversation transitions, delivery status ordering and plans.
"""

import pytest

from inbox.billing.plans import get_all_plans, get_plan, is_upgrade, usage_violations
from inbox.service.contacts import normalize_phone, normalize_tags
from inbox.service.conversations import can_transition
from inbox.service.inbound_handler import should_apply_status
from inbox.service.templates import extract_variables, render_template
from inboxcore.errors import ValidationError


class TestPhoneNormalization:
    @pytest.mark.parametrize(
        "raw",
        ["+1 (555) 123-4567", "15551234567", "001 555 123 4567", "1.555.123.4567"],
    )
    def test_formats(self, raw):
        assert normalize_phone(raw) == "15551234567"

    @pytest.mark.parametrize("raw", ["", "abc", "12345", "0555123456", "+1234567890123456"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)


class TestTagNormalization:
    def test_lowercases_and_dedupes(self):
        assert normalize_tags(["VIP", " vip ", "Lead", ""]) == ["vip", "lead"]

    def test_none(self):
        assert normalize_tags(None) == []

    def test_too_many_tags(self):
        with pytest.raises(ValidationError):
            normalize_tags([f"tag{i}" for i in range(100)])


class TestTemplates:
    def test_extract_variables_in_order(self):
        content = "Hi {{name}}, your order {{ order_id }} ships {{date}}. Thanks {{name}}!"
        assert extract_variables(content) == ["name", "order_id", "date"]

    def test_render(self):
        assert render_template("Hi {{name}}!", {"name": "Ana"}) == "Hi Ana!"

    def test_render_missing_variables(self):
        with pytest.raises(ValidationError) as exc_info:
            render_template("Hi {{name}}, code {{code}}", {"name": "Ana", "code": ""})
        assert exc_info.value.code == "MISSING_TEMPLATE_VARIABLES"
        assert exc_info.value.details == {"missing": ["code"]}

    def test_render_without_variables(self):
        assert render_template("Thanks!", {}) == "Thanks!"


class TestConversationTransitions:
    def test_allowed(self):
        assert can_transition("open", "pending")
        assert can_transition("resolved", "open")
        assert can_transition("closed", "open")

    def test_disallowed(self):
        assert not can_transition("closed", "resolved")
        assert not can_transition("resolved", "pending")
        assert not can_transition("open", "open")
        assert not can_transition("archived", "open")


class TestDeliveryStatusOrdering:
    def test_forward_progress(self):
        assert should_apply_status("pending", "sent")
        assert should_apply_status("sent", "read")

    def test_no_regression(self):
        """A late 'delivered' never overwrites 'read'."""
        assert not should_apply_status("read", "delivered")
        assert not should_apply_status("delivered", "delivered")

    def test_failed(self):
        assert should_apply_status("sent", "failed")
        assert not should_apply_status("delivered", "failed")
        assert not should_apply_status("failed", "read")


class TestPlans:
    def test_ordering(self):
        assert [p.id for p in get_all_plans()] == ["starter", "professional", "enterprise"]

    def test_upgrade(self):
        assert is_upgrade("starter", "enterprise")
        assert not is_upgrade("enterprise", "professional")

    def test_unknown_plan(self):
        with pytest.raises(ValidationError) as exc_info:
            get_plan("platinum")
        assert exc_info.value.code == "INVALID_PLAN"

    def test_usage_violations(self):
        starter = get_plan("starter")
        assert usage_violations(starter, seats=2, contacts=10, messages=10) == []
        assert usage_violations(starter, seats=5, contacts=2000, messages=10) == [
            "Users (5/3)",
            "Contacts (2000/1000)",
        ]

    def test_enterprise_unlimited(self):
        assert usage_violations(get_plan("enterprise"), 500, 10**6, 10**7) == []

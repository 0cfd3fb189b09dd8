"""
Tests for Stripe webhook processing, refunds and status mapping.

Stripe SDK calls are monkeypatched; repositories are mocked.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import stripe
from sqlalchemy.exc import IntegrityError

from inbox.billing import payment_intents, webhook_processor
from inbox.billing.payment_intents import PaymentIntentService, map_stripe_status
from inbox.billing.refunds import RefundRequest, RefundService, prorate
from inbox.billing.stripe_service import StripeService, stripe_field
from inbox.billing.webhook_processor import WebhookProcessor, map_subscription_status
from inbox.security.auth import UserClaims
from inboxcore.errors import ExternalServiceError, PermissionDeniedError, ValidationError


@pytest.fixture
def super_admin():
    return UserClaims(id=uuid4(), organization_id=None, email="root@example.com", role="super_admin")


@pytest.fixture
def owner(organization_id):
    return UserClaims(id=uuid4(), organization_id=organization_id, email="owner@example.com", role="owner")


@pytest.fixture
def billing_organization(organization_id):
    return SimpleNamespace(
        id=organization_id,
        stripe_customer_id="cus_123",
        stripe_subscription_id="sub_123",
        subscription_status="active",
        subscription_tier="professional",
        messages_sent_this_month=42,
        cancel_at_period_end=False,
        current_period_start=None,
        current_period_end=None,
    )


class TestStatusMapping:
    def test_subscription_statuses(self):
        assert map_subscription_status("active") == "active"
        assert map_subscription_status("trialing") == "trial"
        assert map_subscription_status("canceled") == "cancelled"
        assert map_subscription_status("unpaid") == "past_due"
        assert map_subscription_status("paused") == "incomplete"
        assert map_subscription_status(None) == "incomplete"

    def test_payment_intent_statuses(self):
        assert map_stripe_status("canceled") == "cancelled"
        assert map_stripe_status("requires_action") == "requires_action"
        assert map_stripe_status("something_new") == "created"
        assert map_stripe_status(None) == "created"

    def test_stripe_field(self):
        assert stripe_field({"a": 1}, "a") == 1
        assert stripe_field({"a": None}, "a", "default") == "default"
        assert stripe_field(None, "a", []) == []


class TestConstructEvent:
    def test_requires_configured_secret(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
        with pytest.raises(ExternalServiceError) as exc_info:
            StripeService.construct_event(b"{}", "t=1,v1=abc")
        assert exc_info.value.code == "STRIPE_NOT_CONFIGURED"

    def test_missing_signature(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
        with pytest.raises(ValidationError) as exc_info:
            StripeService.construct_event(b"{}", None)
        assert exc_info.value.code == "INVALID_SIGNATURE"

    def test_bad_signature(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
        with pytest.raises(ValidationError) as exc_info:
            StripeService.construct_event(b'{"id": "evt_1"}', "t=1,v1=deadbeef")
        assert exc_info.value.code == "INVALID_SIGNATURE"


class TestWebhookProcessor:
    @pytest.fixture
    def record(self):
        return SimpleNamespace(
            stripe_event_id="evt_1",
            event_type="customer.subscription.deleted",
            status="pending",
            retry_count=0,
            max_retries=3,
            event_data={},
            processing_started_at=None,
        )

    @pytest.fixture
    def processor(self, record):
        processor = WebhookProcessor(MagicMock())
        processor.repo = MagicMock()
        processor.repo.get_webhook_event_by_stripe_id.return_value = None
        processor.repo.create_webhook_event.return_value = record
        processor.inbox_repo = MagicMock()
        return processor

    def event(self, event_type, obj):
        return {"id": "evt_1", "type": event_type, "data": {"object": obj}}

    def test_completed_event_not_reprocessed(self, processor, record):
        record.status = "completed"
        processor.repo.get_webhook_event_by_stripe_id.return_value = record

        result = processor.process(self.event("customer.subscription.deleted", {"id": "sub_123"}))

        assert result["status"] == "already_processed"
        processor.repo.create_webhook_event.assert_not_called()

    def test_in_progress_event(self, processor, record):
        record.status = "processing"
        record.processing_started_at = datetime.utcnow() - timedelta(seconds=30)
        processor.repo.get_webhook_event_by_stripe_id.return_value = record
        assert processor.process(self.event("invoice.paid", {}))["status"] == "in_progress"

    def test_stale_processing_event_is_reprocessed(self, processor, record, billing_organization):
        """A delivery that crashed mid-processing must not block the event forever."""
        record.status = "processing"
        record.processing_started_at = datetime.utcnow() - timedelta(minutes=10)
        processor.repo.get_webhook_event_by_stripe_id.return_value = record
        processor.inbox_repo.get_organization_by_stripe_subscription.return_value = billing_organization

        result = processor.process(self.event("customer.subscription.deleted", {"id": "sub_123"}))

        assert result["status"] == "completed"
        assert billing_organization.subscription_status == "cancelled"
        processor.repo.create_webhook_event.assert_not_called()

    def test_concurrent_insert_is_duplicate(self, processor):
        processor.repo.create_webhook_event.side_effect = IntegrityError(
            "INSERT", {}, Exception("duplicate key value violates unique constraint")
        )

        result = processor.process(self.event("invoice.paid", {"id": "in_1"}))

        assert result["status"] == "already_processed"
        processor.db.rollback.assert_called_once()
        processor.inbox_repo.get_organization.assert_not_called()

    def test_payment_failed_counts_attempt(self, processor, monkeypatch):
        service = MagicMock()
        monkeypatch.setattr(webhook_processor, "PaymentIntentService", service)
        intent = {"id": "pi_1", "status": "requires_payment_method"}

        processor.process(self.event("payment_intent.payment_failed", intent))

        service.return_value.sync_from_stripe.assert_called_once_with(intent, payment_failed=True)

    def test_subscription_deleted(self, processor, record, billing_organization):
        processor.inbox_repo.get_organization_by_stripe_subscription.return_value = billing_organization

        result = processor.process(self.event("customer.subscription.deleted", {"id": "sub_123"}))

        assert result["status"] == "completed"
        assert record.status == "completed"
        assert billing_organization.subscription_status == "cancelled"
        assert billing_organization.subscription_tier == "starter"
        assert billing_organization.stripe_subscription_id is None

    def test_subscription_updated(self, processor, billing_organization, organization_id):
        processor.inbox_repo.get_organization.return_value = billing_organization
        subscription = {
            "id": "sub_456",
            "status": "past_due",
            "metadata": {"organizationId": str(organization_id), "planId": "enterprise"},
            "current_period_start": 1704067200,
            "current_period_end": 1706745600,
            "cancel_at_period_end": True,
        }

        processor.process(self.event("customer.subscription.updated", subscription))

        assert billing_organization.stripe_subscription_id == "sub_456"
        assert billing_organization.subscription_status == "past_due"
        assert billing_organization.subscription_tier == "enterprise"
        assert billing_organization.current_period_end is not None
        assert billing_organization.cancel_at_period_end is True

    def test_invoice_paid_resets_usage_on_cycle(self, processor, billing_organization, monkeypatch):
        invoice_service = MagicMock()
        monkeypatch.setattr(webhook_processor, "InvoiceService", invoice_service)
        processor.inbox_repo.get_organization_by_stripe_customer.return_value = billing_organization
        billing_organization.subscription_status = "past_due"

        processor.process(
            self.event("invoice.paid", {"id": "in_1", "customer": "cus_123", "billing_reason": "subscription_cycle"})
        )

        assert billing_organization.messages_sent_this_month == 0
        assert billing_organization.subscription_status == "active"
        invoice_service.return_value.upsert_from_stripe.assert_called_once()

    def test_failure_is_recorded_and_retryable(self, processor, record):
        processor.inbox_repo.get_organization_by_stripe_customer.return_value = None

        result = processor.process(
            self.event("checkout.session.completed", {"id": "cs_1", "customer": "cus_unknown"})
        )

        assert result["status"] == "failed"
        assert result["retryable"] is True
        assert record.status == "failed"
        assert record.retry_count == 1
        assert record.error_details["type"] == "NotFoundError"

    def test_last_failure_not_retryable(self, processor, record):
        record.status = "failed"
        record.retry_count = 2
        processor.repo.get_webhook_event_by_stripe_id.return_value = record
        processor.inbox_repo.get_organization_by_stripe_customer.return_value = None

        result = processor.process(self.event("invoice.payment_failed", {"id": "in_1", "customer": "cus_x"}))

        assert result["retryable"] is False
        assert record.retry_count == 3

    def test_unhandled_type_completes(self, processor):
        assert processor.process(self.event("product.created", {"id": "prod_1"}))["status"] == "completed"

    def test_retry_failed_limits(self, processor, record):
        record.status = "failed"
        record.retry_count = 3
        processor.repo.get_webhook_event.return_value = record
        with pytest.raises(ValidationError) as exc_info:
            processor.retry_failed(uuid4())
        assert exc_info.value.code == "MAX_RETRIES_EXCEEDED"

    def test_statistics(self, processor):
        processor.repo.webhook_counts.return_value = [
            ("invoice.paid", "completed", 3, 10.0),
            ("invoice.paid", "failed", 1, None),
            ("charge.refunded", "completed", 1, 50.0),
        ]
        stats = processor.get_statistics()
        assert stats["total"] == 5
        assert stats["by_status"] == {"completed": 4, "failed": 1}
        assert stats["by_type"] == {"invoice.paid": 4, "charge.refunded": 1}
        assert stats["avg_processing_ms"] == 20.0


class TestProrate:
    def test_remaining_share(self):
        assert prorate(3000, period_start=0, period_end=100, now=25) == 2250

    def test_before_period_start_is_full_amount(self):
        assert prorate(3000, period_start=100, period_end=200, now=50) == 3000

    def test_period_ended(self):
        with pytest.raises(ValidationError) as exc_info:
            prorate(3000, period_start=0, period_end=100, now=100)
        assert exc_info.value.code == "PERIOD_ENDED"


class TestRefundService:
    @pytest.fixture
    def refund(self, organization_id):
        return SimpleNamespace(
            id=uuid4(),
            organization_id=organization_id,
            status="pending",
            amount_cents=2000,
            currency="usd",
            stripe_charge_id=None,
            stripe_refund_id=None,
        )

    @pytest.fixture
    def service(self, billing_organization, refund):
        service = RefundService(MagicMock())
        service.repo = MagicMock()
        service.repo.count_recent_completed_refunds.return_value = 0
        service.repo.has_open_refund.return_value = False
        service.repo.create_refund.return_value = refund
        service.inbox_repo = MagicMock()
        service.inbox_repo.get_organization.return_value = billing_organization
        return service

    @pytest.fixture
    def stripe_calls(self, monkeypatch):
        calls = SimpleNamespace(
            charges=MagicMock(return_value={"data": [{"id": "ch_1", "amount": 7900, "refunded": False}]}),
            refunds=MagicMock(return_value={"id": "re_1", "charge": "ch_1"}),
            cancel=MagicMock(),
        )
        monkeypatch.setattr(stripe.Charge, "list", calls.charges)
        monkeypatch.setattr(stripe.Refund, "create", calls.refunds)
        monkeypatch.setattr(stripe.Subscription, "cancel", calls.cancel)
        return calls

    def request(self, organization_id, **overrides):
        data = {
            "organization_id": organization_id,
            "amount_cents": 2000,
            "refund_type": "partial",
            "reason": "service_not_provided",
        }
        data.update(overrides)
        return RefundRequest(**data)

    def test_super_admin_only(self, service, owner, organization_id):
        with pytest.raises(PermissionDeniedError):
            service.process_refund(self.request(organization_id), owner)

    def test_invalid_reason(self, service, super_admin, organization_id):
        with pytest.raises(ValidationError):
            service.process_refund(self.request(organization_id, reason="felt_like_it"), super_admin)

    def test_not_eligible(self, service, super_admin, organization_id):
        service.repo.count_recent_completed_refunds.return_value = 3
        service.repo.has_open_refund.return_value = True

        with pytest.raises(ValidationError) as exc_info:
            service.process_refund(self.request(organization_id), super_admin)

        assert exc_info.value.code == "REFUND_NOT_ELIGIBLE"
        assert len(exc_info.value.details["reasons"]) == 2

    def test_completed_refund(self, service, super_admin, organization_id, refund, stripe_calls):
        result = service.process_refund(self.request(organization_id), super_admin)

        assert result["status"] == "completed"
        assert result["stripe_refund_id"] == "re_1"
        assert refund.status == "completed"
        assert refund.stripe_charge_id == "ch_1"
        stripe_calls.refunds.assert_called_once()
        assert stripe_calls.refunds.call_args.kwargs["amount"] == 2000
        statuses = [call.args[2] for call in service.repo.add_refund_history.call_args_list]
        assert statuses == ["pending", "processing", "completed"]

    def test_amount_exceeds_charge(self, service, super_admin, organization_id, refund, stripe_calls):
        result = service.process_refund(self.request(organization_id, amount_cents=10000), super_admin)

        assert result["status"] == "failed"
        assert refund.error_code == "AMOUNT_EXCEEDS_CHARGE"
        stripe_calls.refunds.assert_not_called()

    def test_cancel_subscription_after_refund(
        self, service, super_admin, organization_id, billing_organization, stripe_calls
    ):
        service.process_refund(self.request(organization_id, cancel_subscription=True), super_admin)

        stripe_calls.cancel.assert_called_once_with("sub_123")
        assert billing_organization.subscription_status == "cancelled"
        assert billing_organization.stripe_subscription_id is None

    def test_failed_cancellation_keeps_refund_completed(
        self, service, super_admin, organization_id, refund, billing_organization, stripe_calls
    ):
        committed = []
        service.db.commit.side_effect = lambda: committed.append(refund.status)
        stripe_calls.cancel.side_effect = stripe.APIConnectionError("connection reset")

        result = service.process_refund(self.request(organization_id, cancel_subscription=True), super_admin)

        assert result["status"] == "completed"
        assert result["stripe_refund_id"] == "re_1"
        assert result["subscription_cancelled"] is False
        assert "completed" in committed
        assert refund.stripe_refund_id == "re_1"
        assert refund.error_code == "SUBSCRIPTION_CANCEL_FAILED"
        assert billing_organization.subscription_status == "active"
        assert billing_organization.stripe_subscription_id == "sub_123"

    def test_cancel_only_pending(self, service, super_admin, refund):
        refund.status = "completed"
        service.repo.get_refund.return_value = refund
        with pytest.raises(ValidationError):
            service.cancel_refund(refund.id, super_admin)


class TestPaymentIntentService:
    @pytest.fixture
    def record(self, organization_id):
        return SimpleNamespace(
            id=uuid4(),
            organization_id=organization_id,
            stripe_payment_intent_id="pi_1",
            status="requires_payment_method",
            amount_cents=5000,
            currency="usd",
            attempt_count=0,
            max_attempts=3,
            authentication_required=False,
            authentication_status=None,
            next_action=None,
            client_secret="pi_1_secret",
            last_error=None,
            succeeded_at=None,
            cancelled_at=None,
        )

    @pytest.fixture
    def service(self, record):
        service = PaymentIntentService(MagicMock())
        service.repo = MagicMock()
        service.repo.get_payment_intent.return_value = record
        service.repo.get_payment_intent_by_stripe_id.return_value = record
        return service

    def test_create_requiring_authentication(self, service, billing_organization, monkeypatch):
        """3DS is left to Stripe.js: we keep next_action and hand back the client secret."""
        monkeypatch.setattr(
            payment_intents.StripeService, "get_or_create_customer", staticmethod(lambda organization, email: "cus_123")
        )
        create = MagicMock(
            return_value={
                "id": "pi_new",
                "status": "requires_action",
                "client_secret": "pi_new_secret",
                "next_action": {"type": "use_stripe_sdk"},
            }
        )
        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        view = service.create_payment_intent(billing_organization, 5000, "additional_charge", "owner@example.com")

        assert view["requires_action"] is True
        assert view["next_action"] == {"type": "use_stripe_sdk"}
        assert view["client_secret"] == "pi_new_secret"
        assert create.call_args.kwargs["customer"] == "cus_123"
        assert create.call_args.kwargs["automatic_payment_methods"] == {"enabled": True}
        stored = service.db.add.call_args.args[0]
        assert stored.stripe_payment_intent_id == "pi_new"
        assert stored.authentication_status == "pending"
        service.db.commit.assert_called_once()

    def test_amount_below_minimum(self, service, billing_organization):
        with pytest.raises(ValidationError):
            service.create_payment_intent(billing_organization, 10, "additional_charge", "owner@example.com")

    def test_invalid_purpose(self, service, billing_organization):
        with pytest.raises(ValidationError):
            service.create_payment_intent(billing_organization, 5000, "donation", "owner@example.com")

    def test_confirm_succeeds(self, service, record, organization_id, monkeypatch):
        monkeypatch.setattr(stripe.PaymentIntent, "confirm", MagicMock(return_value={"id": "pi_1", "status": "succeeded"}))

        view = service.confirm(organization_id, record.id, payment_method="pm_card_visa")

        assert view["status"] == "succeeded"
        assert record.succeeded_at is not None
        assert record.attempt_count == 1

    def test_confirm_terminal_intent(self, service, record, organization_id):
        record.status = "succeeded"
        with pytest.raises(ValidationError):
            service.confirm(organization_id, record.id)

    def test_declined_card_fails_at_max_attempts(self, service, record, organization_id, monkeypatch):
        record.attempt_count = 2
        declined = stripe.CardError("Your card was declined.", None, "card_declined")
        monkeypatch.setattr(stripe.PaymentIntent, "confirm", MagicMock(side_effect=declined))

        view = service.confirm(organization_id, record.id)

        assert view["status"] == "failed"
        assert record.attempt_count == 3
        assert record.last_error

    def test_record_attempt_below_cap(self, service, record):
        service.record_attempt(record, "insufficient funds")
        assert record.attempt_count == 1
        assert record.status == "requires_payment_method"

    def test_sync_requires_action(self, service, record):
        intent = {"id": "pi_1", "status": "requires_action", "next_action": {"type": "redirect_to_url"}}

        service.sync_from_stripe(intent)

        assert record.status == "requires_action"
        assert record.authentication_required is True
        assert record.next_action == {"type": "redirect_to_url"}

    def test_sync_unknown_intent(self, service):
        service.repo.get_payment_intent_by_stripe_id.return_value = None
        assert service.sync_from_stripe({"id": "pi_other", "status": "succeeded"}) is None

    def test_sync_keeps_capped_failure(self, service, record):
        record.status = "failed"
        record.attempt_count = 3

        service.sync_from_stripe({"id": "pi_1", "status": "requires_payment_method"})

        assert record.status == "failed"

    def test_sync_success_after_capped_failure(self, service, record):
        record.status = "failed"
        service.sync_from_stripe({"id": "pi_1", "status": "succeeded"})
        assert record.status == "succeeded"

    def test_failed_payment_webhook_counts_attempt(self, service, record):
        record.attempt_count = 2
        intent = {
            "id": "pi_1",
            "status": "requires_payment_method",
            "last_payment_error": {"message": "Your card has insufficient funds."},
        }

        service.sync_from_stripe(intent, payment_failed=True)

        assert record.attempt_count == 3
        assert record.status == "failed"
        assert record.last_error == "Your card has insufficient funds."

"""
Tests for Cloud API webhook parsing and signature validation.
"""

import asyncio
import hashlib
import hmac
from datetime import datetime

from inbox.providers.base import MessageType
from inbox.providers.meta_cloud import MetaCloudWhatsAppProvider
from inbox.providers.meta_cloud.webhook import (
    extract_phone_number_id,
    is_message_webhook,
    is_status_webhook,
    map_message_type,
    validate_signature,
)
from inbox.providers.stub import StubWhatsAppProvider


def sign(payload: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class TestSignatureValidation:
    def test_valid_signature(self):
        payload = b'{"object": "whatsapp_business_account"}'
        assert validate_signature(payload, sign(payload, "app_secret"), "app_secret") is True

    def test_wrong_secret_rejected(self):
        payload = b'{"object": "whatsapp_business_account"}'
        assert validate_signature(payload, sign(payload, "other_secret"), "app_secret") is False

    def test_tampered_body_rejected(self):
        signature = sign(b'{"amount": 1}', "app_secret")
        assert validate_signature(b'{"amount": 2}', signature, "app_secret") is False

    def test_missing_prefix_rejected(self):
        payload = b"payload"
        digest = hmac.new(b"app_secret", payload, hashlib.sha256).hexdigest()
        assert validate_signature(payload, digest, "app_secret") is False

    def test_empty_signature_rejected(self):
        assert validate_signature(b"payload", "", "secret") is False
        assert validate_signature(b"payload", None, "secret") is False

    def test_stub_accepts_anything(self):
        assert StubWhatsAppProvider().validate_webhook_signature(b"x", "garbage", "secret") is True


class TestWebhookHelpers:
    def test_extract_phone_number_id(self, meta_text_webhook):
        assert extract_phone_number_id(meta_text_webhook) == "PHONE_123"

    def test_extract_phone_number_id_missing(self):
        assert extract_phone_number_id({}) is None

    def test_message_and_status_detection(self, meta_text_webhook, meta_status_webhook):
        assert is_message_webhook(meta_text_webhook) is True
        assert is_message_webhook(meta_status_webhook) is False
        assert is_status_webhook(meta_status_webhook) is True
        assert is_status_webhook(meta_text_webhook) is False

    def test_unknown_type_maps_to_unknown(self):
        assert map_message_type("ephemeral") == MessageType.UNKNOWN
        assert map_message_type("image") == MessageType.IMAGE


class TestMetaCloudParsing:
    def test_parse_text_message(self, meta_text_webhook):
        messages, statuses = MetaCloudWhatsAppProvider().parse_webhook(meta_text_webhook)

        assert statuses == []
        assert len(messages) == 1
        msg = messages[0]
        assert msg.message_id == "wamid.TEXT1"
        assert msg.from_phone == "15557654321"
        assert msg.phone_number_id == "PHONE_123"
        assert msg.waba_id == "WABA_123456"
        assert msg.message_type == MessageType.TEXT
        assert msg.text == "Hi, what are your prices?"
        assert msg.contact_name == "Jane Customer"
        assert msg.timestamp == datetime.utcfromtimestamp(1704067200)

    def test_parse_button_reply(self, meta_button_webhook):
        messages, _ = MetaCloudWhatsAppProvider().parse_webhook(meta_button_webhook)

        msg = messages[0]
        assert msg.message_type == MessageType.INTERACTIVE
        assert msg.button_payload == "btn_human"
        assert msg.button_text == "Talk to us"
        assert msg.context_message_id == "wamid.prev"

    def test_parse_failed_status(self, meta_status_webhook):
        messages, statuses = MetaCloudWhatsAppProvider().parse_webhook(meta_status_webhook)

        assert messages == []
        status = statuses[0]
        assert status.message_id == "wamid.OUT1"
        assert status.status == "failed"
        assert status.recipient_phone == "15557654321"
        assert status.error_code == "131047"
        assert status.error_message == "Re-engagement message"

    def test_non_whatsapp_object_ignored(self):
        assert MetaCloudWhatsAppProvider().parse_webhook({"object": "page"}) == ([], [])

    def test_message_without_sender_skipped(self, meta_text_webhook):
        value = meta_text_webhook["entry"][0]["changes"][0]["value"]
        del value["messages"][0]["from"]
        messages, _ = MetaCloudWhatsAppProvider().parse_webhook(meta_text_webhook)
        assert messages == []


class TestVerificationChallenge:
    def test_meta_challenge_matches_token(self):
        provider = MetaCloudWhatsAppProvider()
        assert provider.verify_webhook_challenge("subscribe", "tok", "42", "tok") == "42"

    def test_meta_challenge_wrong_token(self):
        provider = MetaCloudWhatsAppProvider()
        assert provider.verify_webhook_challenge("subscribe", "nope", "42", "tok") is None

    def test_meta_challenge_wrong_mode(self):
        provider = MetaCloudWhatsAppProvider()
        assert provider.verify_webhook_challenge("unsubscribe", "tok", "42", "tok") is None


class TestStubProvider:
    def test_simplified_payload(self):
        messages, statuses = StubWhatsAppProvider().parse_webhook(
            {"from": "15557654321", "text": "hello", "phone_number_id": "PHONE_123"}
        )
        assert statuses == []
        assert messages[0].text == "hello"
        assert messages[0].phone_number_id == "PHONE_123"

    async def _send(self, provider):
        return await provider.send_text("PHONE_123", "token", "15557654321", "hi")

    def test_records_sends_and_simulates_failures(self):
        provider = StubWhatsAppProvider()
        ok = asyncio.run(self._send(provider))
        assert ok.success is True
        assert ok.message_id.startswith("stub_msg_")

        provider.fail_next = 1
        failed = asyncio.run(self._send(provider))
        assert failed.success is False
        assert failed.retryable is True
        assert len(provider.sent_messages) == 2

"""
Pytest fixtures for inbox tests.
"""

from uuid import UUID

import pytest

from inboxcore.settings import get_settings


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached; tests that patch the environment need a fresh copy."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def organization_id():
    return UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def meta_text_webhook():
    """Cloud API webhook carrying one text message."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_123456",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PHONE_123",
                            },
                            "contacts": [{"profile": {"name": "Jane Customer"}, "wa_id": "15557654321"}],
                            "messages": [
                                {
                                    "from": "15557654321",
                                    "id": "wamid.TEXT1",
                                    "timestamp": "1704067200",
                                    "text": {"body": "Hi, what are your prices?"},
                                    "type": "text",
                                }
                            ],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }


@pytest.fixture
def meta_button_webhook():
    """Cloud API webhook for an interactive button reply."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_123456",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PHONE_123",
                            },
                            "contacts": [{"profile": {"name": "Jane Customer"}, "wa_id": "15557654321"}],
                            "messages": [
                                {
                                    "context": {"from": "15550001111", "id": "wamid.prev"},
                                    "from": "15557654321",
                                    "id": "wamid.BUTTON1",
                                    "timestamp": "1704067200",
                                    "type": "interactive",
                                    "interactive": {
                                        "type": "button_reply",
                                        "button_reply": {"id": "btn_human", "title": "Talk to us"},
                                    },
                                }
                            ],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }


@pytest.fixture
def meta_status_webhook():
    """Cloud API webhook with a failed delivery status."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_123456",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PHONE_123",
                            },
                            "statuses": [
                                {
                                    "id": "wamid.OUT1",
                                    "status": "failed",
                                    "timestamp": "1704067260",
                                    "recipient_id": "15557654321",
                                    "errors": [{"code": 131047, "title": "Re-engagement message"}],
                                }
                            ],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }

"""
WhatsApp Automation Engine

Keyword automation for inbound messages:
- Opt-out and opt-in keywords
- Intent detection (talk to human, pricing, support)
- Auto-reply texts, customizable per organization through settings["auto_replies"]
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    TALK_TO_HUMAN = "talk_to_human"
    PRICING = "pricing"
    SUPPORT = "support"


class AutoReplyType(str, Enum):
    WELCOME = "welcome"
    OPT_OUT_CONFIRMED = "opt_out_confirmed"
    OPT_IN_CONFIRMED = "opt_in_confirmed"
    HUMAN_REQUESTED = "human_requested"


OPTOUT_KEYWORDS = {"stop", "unsubscribe", "opt out", "opt-out", "cancel", "quit", "end"}

OPTIN_KEYWORDS = {"start", "subscribe", "unstop"}

INTENT_KEYWORDS: dict[Intent, set[str]] = {
    Intent.TALK_TO_HUMAN: {
        "human",
        "agent",
        "person",
        "representative",
        "talk to someone",
        "speak to someone",
        "operator",
    },
    Intent.PRICING: {"price", "pricing", "cost", "how much", "quote", "plans"},
    Intent.SUPPORT: {"help", "support", "problem", "issue", "not working", "broken"},
}

BUTTON_INTENTS: dict[str, Intent] = {
    "btn_human": Intent.TALK_TO_HUMAN,
    "btn_pricing": Intent.PRICING,
    "btn_support": Intent.SUPPORT,
    "talk_to_human": Intent.TALK_TO_HUMAN,
    "pricing": Intent.PRICING,
    "support": Intent.SUPPORT,
}

DEFAULT_AUTO_REPLIES: dict[AutoReplyType, str] = {
    AutoReplyType.WELCOME: "Hi! Thanks for contacting {business_name}. How can we help you today?",
    AutoReplyType.OPT_OUT_CONFIRMED: (
        "You have been unsubscribed and will no longer receive messages from us. "
        "Reply START to resubscribe."
    ),
    AutoReplyType.OPT_IN_CONFIRMED: "Welcome back! You will receive messages from us again.",
    AutoReplyType.HUMAN_REQUESTED: "Got it! A member of our team will reply shortly.",
}


@dataclass
class DetectionResult:
    """Result of keyword/intent detection."""

    is_optout: bool = False
    is_optin: bool = False
    keyword: str | None = None
    intent: Intent | None = None
    confidence: float = 0.0


@dataclass
class AutoReply:
    reply_type: AutoReplyType
    text: str
    buttons: list[dict[str, str]] | None = None


class AutomationEngine:
    """
    Keyword automation for inbound WhatsApp messages.

    Opt-out/opt-in keywords must be the whole message; intents match on word
    boundaries anywhere in the text. Button payloads take priority over text.
    """

    def __init__(
        self,
        optout_keywords: set[str] | None = None,
        intent_keywords: dict[Intent, set[str]] | None = None,
        button_intents: dict[str, Intent] | None = None,
        auto_replies: dict[AutoReplyType, str] | None = None,
    ):
        self.optout_keywords = optout_keywords or OPTOUT_KEYWORDS
        self.optin_keywords = OPTIN_KEYWORDS
        self.intent_keywords = intent_keywords or INTENT_KEYWORDS
        self.button_intents = button_intents or BUTTON_INTENTS
        self.auto_replies = {**DEFAULT_AUTO_REPLIES, **(auto_replies or {})}

    @classmethod
    def for_organization(cls, organization_settings: dict[str, Any] | None) -> "AutomationEngine":
        """Engine with the organization's custom auto-reply texts."""
        custom: dict[AutoReplyType, str] = {}
        for key, text in ((organization_settings or {}).get("auto_replies") or {}).items():
            try:
                custom[AutoReplyType(key)] = text
            except ValueError:
                logger.warning(f"Ignoring unknown auto reply type: {key}")
        return cls(auto_replies=custom)

    def detect(self, text: str | None = None, button_payload: str | None = None) -> DetectionResult:
        result = DetectionResult()

        if button_payload:
            intent = self.button_intents.get(button_payload)
            if intent:
                result.intent = intent
                result.keyword = button_payload
                result.confidence = 1.0
                return result

        if not text:
            return result

        normalized = " ".join(text.lower().split()).strip(".!? ")

        if normalized in self.optout_keywords:
            result.is_optout = True
            result.keyword = normalized
            result.confidence = 1.0
            return result

        if normalized in self.optin_keywords:
            result.is_optin = True
            result.keyword = normalized
            result.confidence = 1.0
            return result

        for intent, keywords in self.intent_keywords.items():
            for keyword in keywords:
                if self._matches(normalized, keyword):
                    result.intent = intent
                    result.keyword = keyword
                    result.confidence = 0.8
                    return result

        return result

    @staticmethod
    def _matches(text: str, keyword: str) -> bool:
        pattern = r"\b" + re.escape(keyword) + r"\b"
        return bool(re.search(pattern, text, re.IGNORECASE))

    def get_auto_reply(self, reply_type: AutoReplyType, variables: dict[str, str] | None = None) -> AutoReply:
        text = self.auto_replies.get(reply_type, "")
        for key, value in (variables or {}).items():
            text = text.replace(f"{{{key}}}", value)
        return AutoReply(reply_type=reply_type, text=text)

    def should_auto_reply(
        self,
        is_new_contact: bool,
        detection: DetectionResult,
        organization_settings: dict[str, Any] | None = None,
    ) -> AutoReplyType | None:
        """
        Decide which auto-reply, if any, to send.

        Opt-out and opt-in confirmations are always sent. The welcome message
        only goes to first-time contacts when settings["welcome_message_enabled"] is on.
        """
        config = organization_settings or {}

        if detection.is_optout:
            return AutoReplyType.OPT_OUT_CONFIRMED
        if detection.is_optin:
            return AutoReplyType.OPT_IN_CONFIRMED
        if detection.intent == Intent.TALK_TO_HUMAN:
            return AutoReplyType.HUMAN_REQUESTED
        if is_new_contact and config.get("welcome_message_enabled", False):
            return AutoReplyType.WELCOME
        return None

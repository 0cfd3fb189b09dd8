"""
Tests for keyword automation.
"""

import pytest

from inbox.service.automation import AutomationEngine, AutoReplyType, DetectionResult, Intent


@pytest.fixture
def engine():
    return AutomationEngine()


class TestOptOutDetection:
    @pytest.mark.parametrize("text", ["STOP", "stop", "  Stop!  ", "unsubscribe.", "opt out", "Opt-Out"])
    def test_optout_keywords(self, engine, text):
        result = engine.detect(text=text)
        assert result.is_optout is True
        assert result.confidence == 1.0

    def test_keyword_inside_sentence_is_not_optout(self, engine):
        """Opt-out must be the whole message, not a word in it."""
        result = engine.detect(text="Please don't stop sending me offers")
        assert result.is_optout is False

    def test_optin(self, engine):
        result = engine.detect(text="START")
        assert result.is_optin is True
        assert result.is_optout is False


class TestIntentDetection:
    def test_talk_to_human(self, engine):
        result = engine.detect(text="Can I talk to a human please?")
        assert result.intent == Intent.TALK_TO_HUMAN
        assert result.keyword == "human"
        assert result.confidence == 0.8

    def test_pricing(self, engine):
        assert engine.detect(text="How much does it cost").intent == Intent.PRICING

    def test_word_boundaries(self, engine):
        """'humane' does not match 'human'."""
        assert engine.detect(text="humane society").intent is None

    def test_button_takes_priority_over_text(self, engine):
        result = engine.detect(text="stop", button_payload="btn_pricing")
        assert result.intent == Intent.PRICING
        assert result.is_optout is False
        assert result.confidence == 1.0

    def test_unknown_button_falls_back_to_text(self, engine):
        assert engine.detect(text="I need help", button_payload="btn_unknown").intent == Intent.SUPPORT

    def test_empty_message(self, engine):
        assert engine.detect() == DetectionResult()


class TestAutoReplies:
    def test_optout_always_confirmed(self, engine):
        detection = engine.detect(text="stop")
        assert engine.should_auto_reply(False, detection) == AutoReplyType.OPT_OUT_CONFIRMED

    def test_human_requested(self, engine):
        detection = engine.detect(text="agent")
        assert engine.should_auto_reply(False, detection) == AutoReplyType.HUMAN_REQUESTED

    def test_welcome_requires_setting(self, engine):
        detection = engine.detect(text="hello there")
        assert engine.should_auto_reply(True, detection) is None
        assert engine.should_auto_reply(True, detection, {"welcome_message_enabled": True}) == AutoReplyType.WELCOME
        assert engine.should_auto_reply(False, detection, {"welcome_message_enabled": True}) is None

    def test_welcome_variables(self, engine):
        reply = engine.get_auto_reply(AutoReplyType.WELCOME, {"business_name": "Acme"})
        assert "Acme" in reply.text
        assert "{business_name}" not in reply.text

    def test_organization_overrides(self):
        engine = AutomationEngine.for_organization(
            {"auto_replies": {"human_requested": "Hang tight!", "bogus": "ignored"}}
        )
        assert engine.get_auto_reply(AutoReplyType.HUMAN_REQUESTED).text == "Hang tight!"
        assert "unsubscribed" in engine.get_auto_reply(AutoReplyType.OPT_OUT_CONFIRMED).text

    def test_for_organization_without_settings(self):
        assert AutomationEngine.for_organization(None).auto_replies[AutoReplyType.WELCOME]

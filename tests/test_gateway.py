"""Tests for the intelligence gateway."""

import asyncio
import json

import pytest

from inboxkeeper.exceptions import (
    CredentialsMissing,
    InvalidRequest,
    ModelUnavailable,
    UnrecognizedResponse,
)
from inboxkeeper.gateway import NO_CREDENTIALS_MESSAGE, IntelligenceGateway
from inboxkeeper.llm_client import parse_priority_response
from inboxkeeper.models import (
    CustomFilterResult,
    Email,
    EmailAction,
    EmailPriority,
    EmailTone,
    Sentiment,
)
from inboxkeeper.structured_logger import StructuredLogger


class FakeLLM:
    """Stands in for LLMClient; answers or raises per task."""

    def __init__(self, answers=None, error=None):
        self.answers = answers or {}
        self.error = error
        self.calls = []

    async def _answer(self, task):
        self.calls.append(task)
        if self.error is not None:
            raise self.error
        answer = self.answers[task]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def analyze_priority(self, email):
        return await self._answer("priority")

    async def analyze_sentiment(self, email):
        return await self._answer("sentiment")

    async def classify(self, email):
        return await self._answer("classification")

    async def determine_action(self, email):
        return await self._answer("action")

    async def generate_reply(self, email, tone):
        return await self._answer("reply")

    async def generate_forward(self, email, tone):
        return await self._answer("forward")

    async def generate_email(self, prompt, tone):
        return await self._answer("compose")

    async def generate_custom_filter(self, request, emails):
        return await self._answer("custom_filter")

    async def complete(self, prompt, max_tokens):
        return await self._answer("complete")


def create_test_email(**kwargs) -> Email:
    """Helper to create test emails."""
    defaults = {
        "subject": "Flash sale ends tonight",
        "sender": "Deals",
        "sender_email": "deals@shop.com",
        "recipients": ["me@example.com"],
        "content": "Shop now, 50% off everything.",
        "message_id": "msg-1",
    }
    defaults.update(kwargs)
    return Email(**defaults)


def read_events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestAnalysisTasks:
    """Tests for model answers and heuristic fallback."""

    def test_model_answer_used(self):
        llm = FakeLLM({"priority": EmailPriority.HIGH})
        gateway = IntelligenceGateway(llm)

        assert asyncio.run(gateway.analyze_priority(create_test_email())) == EmailPriority.HIGH
        assert llm.calls == ["priority"]

    def test_unavailable_model_falls_back(self, tmp_path):
        audit_file = tmp_path / "audit.jsonl"
        llm = FakeLLM(error=ModelUnavailable("API error for model gpt-4: 500"))
        gateway = IntelligenceGateway(llm, audit=StructuredLogger(str(audit_file)))

        priority = asyncio.run(gateway.analyze_priority(create_test_email()))

        assert priority == EmailPriority.LOW
        events = read_events(audit_file)
        assert len(events) == 1
        assert events[0]["event_type"] == "fallback_used"
        assert events[0]["task"] == "priority"
        assert events[0]["message_id"] == "msg-1"
        assert "500" in events[0]["reason"]

    def test_unrecognized_answer_falls_back(self):
        async def unparseable(email):
            return parse_priority_response("It depends on the context")

        llm = FakeLLM()
        llm.analyze_priority = unparseable
        gateway = IntelligenceGateway(llm)

        assert asyncio.run(gateway.analyze_priority(create_test_email())) == EmailPriority.LOW

    def test_missing_credentials_fall_back(self):
        gateway = IntelligenceGateway(FakeLLM(error=CredentialsMissing("No API key configured")))
        sentiment = asyncio.run(
            gateway.analyze_sentiment(create_test_email(content="Thanks, great work!"))
        )
        assert sentiment == Sentiment.POSITIVE

    def test_invalid_request_falls_back(self):
        gateway = IntelligenceGateway(FakeLLM(error=InvalidRequest("bad request")))
        assert asyncio.run(gateway.classify(create_test_email())) == ["Marketing"]

    def test_no_client_uses_heuristics(self, tmp_path):
        audit_file = tmp_path / "audit.jsonl"
        gateway = IntelligenceGateway(None, audit=StructuredLogger(str(audit_file)))

        action = asyncio.run(gateway.determine_action(create_test_email()))

        assert action == EmailAction.DELETE
        assert read_events(audit_file)[0]["reason"] == "No LLM client configured"

    def test_non_model_errors_propagate(self):
        gateway = IntelligenceGateway(FakeLLM(error=RuntimeError("bug")))
        with pytest.raises(RuntimeError):
            asyncio.run(gateway.analyze_priority(create_test_email()))

    def test_each_task_answers_independently(self):
        llm = FakeLLM(
            {
                "priority": EmailPriority.URGENT,
                "sentiment": UnrecognizedResponse("sentiment", "meh"),
            }
        )
        gateway = IntelligenceGateway(llm)
        email = create_test_email()

        assert asyncio.run(gateway.analyze_priority(email)) == EmailPriority.URGENT
        assert asyncio.run(gateway.analyze_sentiment(email)) == Sentiment.NEUTRAL


class TestEnrich:
    """Tests for combined enrichment."""

    def test_action_then_priority(self):
        llm = FakeLLM({"action": EmailAction.REPLY, "priority": EmailPriority.HIGH})
        gateway = IntelligenceGateway(llm)
        email = create_test_email()

        enriched = asyncio.run(gateway.enrich(email))

        assert llm.calls == ["action", "priority"]
        assert enriched.suggested_action == EmailAction.REPLY
        assert enriched.requires_action is True
        assert enriched.priority == EmailPriority.HIGH
        assert email.priority == EmailPriority.MEDIUM

    def test_archive_does_not_require_action(self):
        llm = FakeLLM({"action": EmailAction.ARCHIVE, "priority": EmailPriority.LOW})
        enriched = asyncio.run(IntelligenceGateway(llm).enrich(create_test_email()))
        assert enriched.requires_action is False

    def test_heuristic_enrichment(self):
        enriched = asyncio.run(IntelligenceGateway(None).enrich(create_test_email()))
        assert enriched.suggested_action == EmailAction.DELETE
        assert enriched.priority == EmailPriority.LOW


class TestGeneration:
    """Tests for text generation."""

    def test_reply_from_model(self):
        gateway = IntelligenceGateway(FakeLLM({"reply": "Sounds good."}))
        assert asyncio.run(gateway.generate_reply(create_test_email())) == "Sounds good."

    def test_reply_template_fallback(self):
        gateway = IntelligenceGateway(FakeLLM(error=ModelUnavailable("down")))
        reply = asyncio.run(gateway.generate_reply(create_test_email(), EmailTone.FORMAL))
        assert reply.startswith("Dear Sir/Madam")

    def test_forward_template_fallback(self):
        gateway = IntelligenceGateway(None)
        note = asyncio.run(gateway.generate_forward(create_test_email(), EmailTone.URGENT))
        assert note.startswith("URGENT:")

    def test_generate_text(self):
        gateway = IntelligenceGateway(FakeLLM({"complete": "Summary."}))
        assert asyncio.run(gateway.generate_text("Summarize")) == "Summary."

    def test_generate_text_placeholder_without_credentials(self):
        gateway = IntelligenceGateway(FakeLLM(error=CredentialsMissing("LLM is disabled")))
        assert asyncio.run(gateway.generate_text("Summarize")) == NO_CREDENTIALS_MESSAGE
        assert asyncio.run(IntelligenceGateway(None).generate_text("Hi")) == NO_CREDENTIALS_MESSAGE

    def test_generate_text_propagates_model_errors(self):
        gateway = IntelligenceGateway(FakeLLM(error=ModelUnavailable("All configured models failed")))
        with pytest.raises(ModelUnavailable):
            asyncio.run(gateway.generate_text("Summarize"))

    def test_compose_from_model(self):
        gateway = IntelligenceGateway(FakeLLM({"compose": "Subject: Friday\n\nHi Sam,"}))
        draft = asyncio.run(gateway.generate_email_from_prompt("move the sync to Friday"))
        assert draft.startswith("Subject: Friday")

    def test_compose_fallback_is_audited(self, tmp_path):
        audit_file = tmp_path / "audit.jsonl"
        gateway = IntelligenceGateway(
            FakeLLM(error=ModelUnavailable("down")), audit=StructuredLogger(str(audit_file))
        )

        draft = asyncio.run(
            gateway.generate_email_from_prompt("move the sync to Friday", EmailTone.CASUAL)
        )

        assert draft.startswith("Hey! Subject: [Generated Email]")
        assert "based on: 'move the sync to Friday'" in draft
        events = read_events(audit_file)
        assert events[0]["task"] == "compose"
        assert events[0]["message_id"] is None

    def test_custom_filter_from_model(self):
        answer = CustomFilterResult("Travel", "subject:(flight)", "Trips", 0.9)
        gateway = IntelligenceGateway(FakeLLM({"custom_filter": answer}))
        assert asyncio.run(gateway.generate_custom_filter("my trips", [])) is answer

    def test_custom_filter_fallback(self, tmp_path):
        audit_file = tmp_path / "audit.jsonl"
        gateway = IntelligenceGateway(
            FakeLLM({"custom_filter": UnrecognizedResponse("custom filter", "no idea")}),
            audit=StructuredLogger(str(audit_file)),
        )

        result = asyncio.run(gateway.generate_custom_filter("my receipts", [create_test_email()]))

        assert result.query.startswith("subject:(purchase OR order OR receipt")
        assert result.title == "My Receipts"
        assert result.confidence == 0.6
        events = read_events(audit_file)
        assert events[0]["task"] == "custom_filter"
        assert events[0]["message_id"] is None

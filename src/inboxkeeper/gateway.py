"""Intelligence gateway: language model first, heuristics on any failure."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from inboxkeeper.exceptions import CredentialsMissing, LLMError
from inboxkeeper.heuristics import HeuristicClassifier
from inboxkeeper.llm_client import GENERATION_MAX_TOKENS
from inboxkeeper.models import (
    CustomFilterResult,
    Email,
    EmailAction,
    EmailPriority,
    EmailTone,
    Sentiment,
)

if TYPE_CHECKING:
    from inboxkeeper.llm_client import LLMClient
    from inboxkeeper.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_CREDENTIALS_MESSAGE = (
    "I'd be happy to help! However, AI features require an OpenAI API key to be "
    "configured. You can still use all the core email features like organizing, "
    "filtering, and managing your emails."
)

# Actions that mean the user has to do something
_ACTIONABLE = {EmailAction.REPLY, EmailAction.FORWARD}


class IntelligenceGateway:
    """Answers analysis tasks for emails.

    Every analysis task returns a result: when the model is unavailable,
    unconfigured, or answers with something unparseable, the heuristic
    classifier answers instead and the fallback is written to the audit
    trail.
    """

    def __init__(
        self,
        llm_client: LLMClient | None,
        classifier: HeuristicClassifier | None = None,
        audit: StructuredLogger | None = None,
    ):
        self.llm = llm_client
        self.classifier = classifier or HeuristicClassifier()
        self.audit = audit

    async def analyze_priority(self, email: Email) -> EmailPriority:
        return await self._with_fallback(
            "priority",
            email,
            lambda: self.llm.analyze_priority(email),
            lambda: self.classifier.analyze_priority(email),
        )

    async def analyze_sentiment(self, email: Email) -> Sentiment:
        return await self._with_fallback(
            "sentiment",
            email,
            lambda: self.llm.analyze_sentiment(email),
            lambda: self.classifier.analyze_sentiment(email),
        )

    async def classify(self, email: Email) -> list[str]:
        return await self._with_fallback(
            "classification",
            email,
            lambda: self.llm.classify(email),
            lambda: self.classifier.classify(email),
        )

    async def determine_action(self, email: Email) -> EmailAction | None:
        return await self._with_fallback(
            "action",
            email,
            lambda: self.llm.determine_action(email),
            lambda: self.classifier.infer_action(email),
        )

    async def enrich(self, email: Email) -> Email:
        """Return a copy with suggested action, requires_action and priority set.

        The action is determined first so the priority analysis sees it.
        """
        action = await self.determine_action(email)
        annotated = email.with_changes(
            suggested_action=action,
            requires_action=action in _ACTIONABLE,
        )
        priority = await self.analyze_priority(annotated)
        return annotated.with_changes(priority=priority)

    async def generate_reply(self, email: Email, tone: EmailTone = EmailTone.PROFESSIONAL) -> str:
        return await self._with_fallback(
            "reply",
            email,
            lambda: self.llm.generate_reply(email, tone),
            lambda: self.classifier.generate_reply(email, tone),
        )

    async def generate_forward(self, email: Email, tone: EmailTone = EmailTone.PROFESSIONAL) -> str:
        return await self._with_fallback(
            "forward",
            email,
            lambda: self.llm.generate_forward(email, tone),
            lambda: self.classifier.generate_forward(email, tone),
        )

    async def generate_email_from_prompt(
        self, prompt: str, tone: EmailTone = EmailTone.PROFESSIONAL
    ) -> str:
        """Compose a new email from a free-text request."""
        return await self._with_fallback(
            "compose",
            None,
            lambda: self.llm.generate_email(prompt, tone),
            lambda: self.classifier.generate_email_from_prompt(prompt, tone),
        )

    async def generate_custom_filter(self, request: str, emails: list[Email]) -> CustomFilterResult:
        """Turn a request such as "my receipts" into a Gmail search query."""
        return await self._with_fallback(
            "custom_filter",
            None,
            lambda: self.llm.generate_custom_filter(request, emails),
            lambda: self.classifier.generate_custom_filter(request, emails),
        )

    async def generate_text(self, prompt: str, max_tokens: int = GENERATION_MAX_TOKENS) -> str:
        """Free-text completion.

        Only missing credentials are answered with a placeholder; any other
        model error propagates to the caller.
        """
        if self.llm is None:
            return NO_CREDENTIALS_MESSAGE
        try:
            return await self.llm.complete(prompt, max_tokens)
        except CredentialsMissing:
            logger.info("No model credentials configured, returning placeholder text")
            return NO_CREDENTIALS_MESSAGE

    async def _with_fallback(
        self,
        task: str,
        email: Email | None,
        call: Callable[[], Awaitable[T]],
        fallback: Callable[[], T],
    ) -> T:
        if self.llm is None:
            self._record_fallback(task, email, "No LLM client configured")
            return fallback()
        try:
            return await call()
        except LLMError as e:
            self._record_fallback(task, email, str(e))
            return fallback()

    def _record_fallback(self, task: str, email: Email | None, reason: str) -> None:
        target = f" for '{email.subject[:60]}'" if email else ""
        logger.debug(f"Heuristic {task} fallback{target}: {reason}")
        if self.audit:
            self.audit.log_fallback(task, email.message_id if email else None, reason)

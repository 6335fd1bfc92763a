"""LLM client for an OpenAI-compatible chat completions API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

import httpx

from inboxkeeper.exceptions import (
    CredentialsMissing,
    InvalidRequest,
    ModelUnavailable,
    UnrecognizedResponse,
)
from inboxkeeper.heuristics import HeuristicClassifier
from inboxkeeper.models import (
    CustomFilterResult,
    Email,
    EmailAction,
    EmailPriority,
    EmailTone,
    Sentiment,
)

if TYPE_CHECKING:
    from inboxkeeper.config import LLMConfig

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are an expert email prioritization assistant. You analyze emails and "
    "answer concisely in exactly the format requested. You understand business "
    "context and can tell genuine urgency apart from marketing tactics."
)

# Completion budgets per task
PRIORITY_MAX_TOKENS = 50
SENTIMENT_MAX_TOKENS = 20
CLASSIFICATION_MAX_TOKENS = 100
ACTION_MAX_TOKENS = 20
GENERATION_MAX_TOKENS = 300
COMPOSE_MAX_TOKENS = 400
FILTER_MAX_TOKENS = 300

# Mailbox samples shown to the model when proposing a filter
FILTER_SAMPLE_SIZE = 20


class LLMClient:
    """Async client for the chat completions endpoint.

    The configured models are tried in order. A 404 means the model is not
    available to this key and advances to the next one; the first success
    or the first other failure ends the attempt.
    """

    def __init__(self, config: LLMConfig, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the LLM client."""
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_enabled(self) -> bool:
        """Check if the LLM is enabled and has credentials."""
        return self.config.enabled and self.config.get_api_key() is not None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()

    async def complete(self, prompt: str, max_tokens: int) -> str:
        """Return the completion text for a prompt.

        Raises:
            CredentialsMissing: LLM disabled or no API key configured.
            InvalidRequest: The provider rejected the request (HTTP 400).
            ModelUnavailable: Any other failure, or every model was missing.
        """
        api_key = self.config.get_api_key()
        if not self.config.enabled:
            raise CredentialsMissing("LLM is disabled")
        if not api_key:
            raise CredentialsMissing("No API key configured")

        client = self._get_client()
        headers = {"Authorization": f"Bearer {api_key}"}

        for model in self.config.models:
            payload = {
                "model": model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "max_tokens": max_tokens,
                "temperature": self.config.temperature,
            }

            logger.debug(f"Calling chat completions with model {model}")

            try:
                response = await client.post("/chat/completions", json=payload, headers=headers)
            except httpx.TimeoutException as e:
                raise ModelUnavailable(f"Request timed out for model {model}") from e
            except httpx.RequestError as e:
                raise ModelUnavailable(f"Request failed for model {model}: {e}") from e

            if response.status_code == 404:
                logger.info(f"Model {model} not found, trying next model")
                continue
            if response.status_code == 400:
                raise InvalidRequest(f"API rejected request for model {model}: {response.text}")
            if response.status_code != 200:
                raise ModelUnavailable(
                    f"API error for model {model}: {response.status_code} - {response.text}"
                )

            try:
                data = response.json()
                content = data["choices"][0]["message"]["content"] or ""
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise ModelUnavailable(f"Malformed completion from model {model}: {e}") from e

            logger.debug(f"Completion succeeded with model {model}")
            return content.strip()

        raise ModelUnavailable("All configured models failed")

    # ========================================
    # Task prompts
    # ========================================

    async def analyze_priority(self, email: Email) -> EmailPriority:
        response = await self.complete(build_priority_prompt(email), PRIORITY_MAX_TOKENS)
        return parse_priority_response(response)

    async def analyze_sentiment(self, email: Email) -> Sentiment:
        response = await self.complete(build_sentiment_prompt(email), SENTIMENT_MAX_TOKENS)
        return parse_sentiment_response(response)

    async def classify(self, email: Email) -> list[str]:
        response = await self.complete(build_classification_prompt(email), CLASSIFICATION_MAX_TOKENS)
        return parse_classification_response(response)

    async def determine_action(self, email: Email) -> EmailAction | None:
        response = await self.complete(build_action_prompt(email), ACTION_MAX_TOKENS)
        return parse_action_response(response)

    async def generate_reply(self, email: Email, tone: EmailTone) -> str:
        return await self.complete(build_reply_prompt(email, tone), GENERATION_MAX_TOKENS)

    async def generate_forward(self, email: Email, tone: EmailTone) -> str:
        return await self.complete(build_forward_prompt(email, tone), GENERATION_MAX_TOKENS)

    async def generate_email(self, prompt: str, tone: EmailTone) -> str:
        return await self.complete(build_compose_prompt(prompt, tone), COMPOSE_MAX_TOKENS)

    async def generate_custom_filter(self, request: str, emails: list[Email]) -> CustomFilterResult:
        response = await self.complete(build_custom_filter_prompt(request, emails), FILTER_MAX_TOKENS)
        return parse_custom_filter_response(response)


# ========================================
# Prompt builders
# ========================================


def _email_header_lines(email: Email, content_limit: int) -> list[str]:
    parts = [
        f"From: {email.sender} <{email.sender_email}>",
        f"Subject: {email.subject}",
    ]
    if email.recipients:
        parts.append(f"Recipients: {len(email.recipients)}")
    if email.content:
        parts.extend(["", "Content:", email.content[:content_limit]])
    return parts


def build_priority_prompt(email: Email, now: datetime | None = None) -> str:
    """Build the priority analysis prompt."""
    now = now or datetime.now()
    parts = [
        f"Analyze this email's priority. Current time: {now:%Y-%m-%d %H:%M}",
        "",
        *_email_header_lines(email, 1000),
        "",
        "Priority levels:",
        "- URGENT: needs a response within hours (outages, hard deadlines, executives)",
        "- HIGH: important and needs attention soon (meetings, clients, direct requests)",
        "- MEDIUM: regular correspondence",
        "- LOW: marketing, newsletters, promotions, informational mail",
        "- UPDATE: automated notifications and status reports",
        "",
        "Marketing urgency such as 'today only' or 'limited time' is LOW.",
        "",
        "Respond with ONLY one word: URGENT, HIGH, MEDIUM, LOW, or UPDATE",
    ]
    return "\n".join(parts)


def build_sentiment_prompt(email: Email) -> str:
    """Build the sentiment analysis prompt."""
    parts = [
        "Analyze the overall sentiment of this email:",
        "",
        *_email_header_lines(email, 1000),
        "",
        "- POSITIVE: appreciation, good news, enthusiasm",
        "- NEGATIVE: complaints, problems, disappointment",
        "- CRITICAL: escalations, emergencies, legal threats",
        "- NEUTRAL: factual or routine",
        "",
        "Respond with ONLY one word: POSITIVE, NEGATIVE, CRITICAL, or NEUTRAL",
    ]
    return "\n".join(parts)


def build_classification_prompt(email: Email) -> str:
    """Build the category classification prompt."""
    parts = [
        "Classify this email into up to 3 categories:",
        "",
        *_email_header_lines(email, 800),
        "",
        "Categories: Meeting, Project, Finance, Support, Client, HR, "
        "Newsletter, Marketing, Social, General",
        "",
        "Respond with ONLY the category names, comma separated, most relevant first.",
    ]
    return "\n".join(parts)


def build_action_prompt(email: Email) -> str:
    """Build the suggested action prompt."""
    parts = [
        "Determine the primary action required for this email:",
        "",
        *_email_header_lines(email, 1000),
        "",
        "- REPLY: a question is asked or a response is requested",
        "- FORWARD: asks to share the message with someone else",
        "- ARCHIVE: informational only, kept for reference",
        "- DELETE: spam, irrelevant or expired content",
        "- NONE: no clear action required",
        "",
        "Respond with ONLY one word: REPLY, FORWARD, ARCHIVE, DELETE, or NONE",
    ]
    return "\n".join(parts)


def build_reply_prompt(email: Email, tone: EmailTone) -> str:
    """Build the reply generation prompt."""
    parts = [
        "Write a reply to this email.",
        "",
        *_email_header_lines(email, 1500),
        "",
        f"Tone: {tone.value} ({tone.description})",
        "Keep it concise, address the main points and include a greeting and closing.",
        "Respond with the reply body only.",
    ]
    return "\n".join(parts)


def build_forward_prompt(email: Email, tone: EmailTone) -> str:
    """Build the forwarding note prompt."""
    parts = [
        "Write a short note to accompany forwarding this email.",
        "",
        *_email_header_lines(email, 1500),
        "",
        f"Tone: {tone.value} ({tone.description})",
        "Explain briefly why it is being forwarded. Respond with the note only.",
    ]
    return "\n".join(parts)


def build_compose_prompt(prompt: str, tone: EmailTone) -> str:
    """Build the prompt for composing a new email from a request."""
    parts = [
        f"Write an email for this request with a {tone.value} tone:",
        "",
        f"Request: {prompt}",
        f"Tone: {tone.description}",
        "",
        "Include a subject line and a body with a greeting and closing.",
        "Keep it clear and actionable. Respond with the email only.",
    ]
    return "\n".join(parts)


def build_custom_filter_prompt(request: str, emails: list[Email]) -> str:
    """Build the prompt for turning a request into a Gmail search query."""
    samples = []
    for email in emails[:FILTER_SAMPLE_SIZE]:
        samples.append(
            "\n".join(
                [
                    f"Subject: {email.subject}",
                    f"From: {email.sender} <{email.sender_email}>",
                    f"Content: {email.content[:200]}",
                    f"Labels: {', '.join(email.labels)}",
                    f"Priority: {email.priority.value}",
                    f"Starred: {email.is_starred}, Read: {email.is_read}",
                ]
            )
        )
    parts = [
        "Create a Gmail search query that finds the emails this user asks for.",
        "",
        f'Request: "{request}"',
        "",
        "Samples from the mailbox:",
        "\n\n".join(samples) or "(none)",
        "",
        "Use Gmail operators (subject:, from:, to:, has:, label:, is:) with OR, AND,",
        "quotes and parentheses, e.g. subject:(meeting OR calendar) OR from:(boss@company.com)",
        "",
        "Respond in exactly this format:",
        "Title: <short descriptive title>",
        "Query: <Gmail query>",
        "Description: <what the filter finds>",
        "Confidence: <0.0-1.0>",
    ]
    return "\n".join(parts)


# ========================================
# Strict response parsers
# ========================================


def _first_word(response: str) -> str:
    words = response.strip().upper().split()
    if not words:
        return ""
    return words[0].strip(".,:;!\"'`*")


_PRIORITY_WORDS = {p.value.upper(): p for p in EmailPriority}
_SENTIMENT_WORDS = {s.value.upper(): s for s in Sentiment}
_CATEGORY_NAMES = {
    name.lower(): name
    for name in [*HeuristicClassifier.CATEGORY_KEYWORDS, HeuristicClassifier.DEFAULT_CATEGORY]
}
_FILTER_FIELDS = ("title", "query", "description", "confidence")
DEFAULT_FILTER_CONFIDENCE = 0.7
_ACTION_WORDS = {
    "REPLY": EmailAction.REPLY,
    "FORWARD": EmailAction.FORWARD,
    "ARCHIVE": EmailAction.ARCHIVE,
    "DELETE": EmailAction.DELETE,
}


def parse_priority_response(response: str) -> EmailPriority:
    """Parse a one-word priority answer."""
    word = _first_word(response)
    if word not in _PRIORITY_WORDS:
        raise UnrecognizedResponse("priority", response)
    return _PRIORITY_WORDS[word]


def parse_sentiment_response(response: str) -> Sentiment:
    """Parse a one-word sentiment answer."""
    word = _first_word(response)
    if word not in _SENTIMENT_WORDS:
        raise UnrecognizedResponse("sentiment", response)
    return _SENTIMENT_WORDS[word]


def parse_action_response(response: str) -> EmailAction | None:
    """Parse a one-word action answer; NONE means no action."""
    word = _first_word(response)
    if word == "NONE":
        return None
    if word not in _ACTION_WORDS:
        raise UnrecognizedResponse("action", response)
    return _ACTION_WORDS[word]


def parse_classification_response(response: str) -> list[str]:
    """Parse a comma separated category list.

    Only known category names are kept, in the order given, up to
    MAX_CATEGORIES. An answer naming none of them is rejected.
    """
    categories: list[str] = []
    for part in response.strip().split(","):
        name = _CATEGORY_NAMES.get(part.strip().strip(".\"'`*").lower())
        if name and name not in categories:
            categories.append(name)
    if not categories:
        raise UnrecognizedResponse("classification", response)
    return categories[: HeuristicClassifier.MAX_CATEGORIES]


def parse_custom_filter_response(response: str) -> CustomFilterResult:
    """Parse a Title/Query/Description/Confidence answer.

    The Query line is required. Missing optional lines take defaults and an
    unreadable confidence falls back to the default one.
    """
    fields: dict[str, str] = {}
    for line in response.splitlines():
        name, sep, value = line.strip().partition(":")
        if sep and name.strip().lower() in _FILTER_FIELDS:
            fields[name.strip().lower()] = value.strip()

    query = fields.get("query")
    if not query:
        raise UnrecognizedResponse("custom filter", response)

    try:
        confidence = min(max(float(fields.get("confidence", "")), 0.0), 1.0)
    except ValueError:
        confidence = DEFAULT_FILTER_CONFIDENCE

    return CustomFilterResult(
        title=fields.get("title") or "Custom Filter",
        query=query,
        description=fields.get("description") or "AI-generated filter based on your request",
        confidence=confidence,
    )

"""Exception hierarchy for inboxkeeper."""

from __future__ import annotations


class InboxKeeperError(Exception):
    """Base exception for all inboxkeeper errors."""


# Mailbox provider errors. These propagate to the caller unchanged.


class ProviderError(InboxKeeperError):
    """Base exception for mailbox provider failures."""


class NotAuthenticated(ProviderError):
    """No usable access token, or the provider rejected it."""


class NetworkError(ProviderError):
    """Transport failure or unexpected HTTP status from the provider."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodingError(ProviderError):
    """Provider response body could not be decoded."""


class RateLimited(ProviderError):
    """Provider rejected the request because of rate limiting."""


class InvalidResponse(ProviderError):
    """Provider response did not match the expected shape."""


# Language model errors. The intelligence gateway absorbs these.


class LLMError(InboxKeeperError):
    """Base exception for language model failures."""


class InvalidRequest(LLMError):
    """The language model provider rejected the request."""


class ModelUnavailable(LLMError):
    """No configured model could produce a completion."""


class CredentialsMissing(ModelUnavailable):
    """No API key is configured for the language model provider."""


class UnrecognizedResponse(LLMError):
    """The model answered with text the strict parser does not accept."""

    def __init__(self, task: str, response: str):
        super().__init__(f"Unrecognized {task} response: {response!r}")
        self.task = task
        self.response = response

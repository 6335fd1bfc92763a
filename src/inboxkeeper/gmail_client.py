"""Gmail REST API client."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from inboxkeeper.exceptions import (
    DecodingError,
    InvalidResponse,
    NetworkError,
    NotAuthenticated,
    RateLimited,
)
from inboxkeeper.normalizer import RawMessage

if TYPE_CHECKING:
    from inboxkeeper.config import Config, GmailConfig

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class MessageRef(BaseModel):
    """Message id listing entry."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    thread_id: str | None = Field(default=None, alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")


class MessageList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[MessageRef] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class HistoryMessageEvent(BaseModel):
    message: MessageRef


class HistoryLabelEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: MessageRef
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")


class HistoryRecord(BaseModel):
    """One mailbox history entry."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    messages_added: list[HistoryMessageEvent] = Field(default_factory=list, alias="messagesAdded")
    messages_deleted: list[HistoryMessageEvent] = Field(
        default_factory=list, alias="messagesDeleted"
    )
    labels_added: list[HistoryLabelEvent] = Field(default_factory=list, alias="labelsAdded")
    labels_removed: list[HistoryLabelEvent] = Field(default_factory=list, alias="labelsRemoved")


class HistoryList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    history: list[HistoryRecord] = Field(default_factory=list)
    history_id: str | None = Field(default=None, alias="historyId")
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class Profile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email_address: str | None = Field(default=None, alias="emailAddress")
    history_id: str = Field(alias="historyId")


class GmailClient:
    """Async client for the Gmail users/me endpoints.

    Errors are mapped onto the provider exception hierarchy and raised to
    the caller; nothing is retried here.
    """

    def __init__(self, config: GmailConfig, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the Gmail client."""
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

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

    async def __aenter__(self) -> GmailClient:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()

    async def list_message_ids(
        self, query: str | None = None, max_results: int | None = None
    ) -> list[MessageRef]:
        """List message ids matching a search query."""
        params: dict[str, Any] = {"maxResults": max_results or self.config.max_results}
        if query:
            params["q"] = query
        data = await self._request("GET", "/messages", params=params)
        listing = self._validate(MessageList, data)
        logger.debug(f"Listed {len(listing.messages)} messages for query {query!r}")
        return listing.messages

    async def get_message(self, message_id: str) -> RawMessage:
        """Fetch one message in full format."""
        data = await self._request("GET", f"/messages/{message_id}", params={"format": "full"})
        return self._validate(RawMessage, data)

    async def modify_labels(
        self,
        message_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> None:
        """Add and remove labels on a message."""
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        await self._request("POST", f"/messages/{message_id}/modify", json=body)
        logger.debug(f"Modified labels on {message_id}: +{add or []} -{remove or []}")

    async def trash(self, message_id: str) -> None:
        await self._request("POST", f"/messages/{message_id}/trash")

    async def untrash(self, message_id: str) -> None:
        await self._request("POST", f"/messages/{message_id}/untrash")

    async def get_profile_history_id(self) -> str:
        """Current mailbox history id, used as the first delta checkpoint."""
        data = await self._request("GET", "/profile")
        return self._validate(Profile, data).history_id

    async def list_history(self, start_history_id: str) -> HistoryList:
        """All history records after a checkpoint, following pagination.

        The returned history_id is the checkpoint for the next call. An
        expired checkpoint surfaces as NetworkError with status_code 404.
        """
        records: list[HistoryRecord] = []
        latest: str | None = None
        page_token: str | None = None

        while True:
            params: dict[str, Any] = {"startHistoryId": start_history_id}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", "/history", params=params)
            page = self._validate(HistoryList, data)
            records.extend(page.history)
            latest = page.history_id or latest
            page_token = page.next_page_token
            if not page_token:
                break

        return HistoryList(history=records, history_id=latest or start_history_id)

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = self.config.get_access_token()
        if not token:
            raise NotAuthenticated("No Gmail access token configured")

        client = self._get_client()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {path} timed out") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise NotAuthenticated(f"Gmail rejected credentials ({status})")
        if status == 429:
            raise RateLimited("Gmail rate limit exceeded")
        if not response.is_success:
            raise NetworkError(f"Gmail API error: {status} - {response.text}", status_code=status)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise DecodingError(f"Undecodable response from {path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidResponse(f"Expected a JSON object from {path}")
        return data

    @staticmethod
    def _validate(model: type[ModelT], data: dict[str, Any]) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InvalidResponse(f"Unexpected {model.__name__} payload: {e}") from e


class GmailClients:
    """Gmail clients keyed by account.

    Each client carries its own account's credentials, so every account
    reads its own mailbox.
    """

    def __init__(self, clients: dict[str, GmailClient] | None = None):
        self._clients = dict(clients or {})

    @classmethod
    def from_config(cls, config: Config) -> GmailClients:
        return cls(
            {account.email: GmailClient(account.gmail_config(config.gmail)) for account in config.accounts}
        )

    def get(self, account: str) -> GmailClient:
        client = self._clients.get(account)
        if client is None:
            raise NotAuthenticated(f"No Gmail credentials configured for {account}")
        return client

    def __contains__(self, account: str) -> bool:
        return account in self._clients

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()

"""Canonical email record and related types."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Fallback used when no timestamp source could be parsed. Deliberately far in
# the past so relative-time displays never render it as "just now".
SENTINEL_TIMESTAMP = datetime(2020, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class EmailPriority(str, Enum):
    """Priority bucket assigned by the model or the heuristic classifier."""

    URGENT = "Urgent"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    UPDATE = "Update"

    @property
    def level(self) -> int:
        """Numeric level, 5 (Urgent) down to 1 (Update)."""
        return _PRIORITY_LEVELS[self]

    @property
    def is_informed(self) -> bool:
        """Anything other than the Medium default counts as informed."""
        return self is not EmailPriority.MEDIUM


_PRIORITY_LEVELS = {
    EmailPriority.URGENT: 5,
    EmailPriority.HIGH: 4,
    EmailPriority.MEDIUM: 3,
    EmailPriority.LOW: 2,
    EmailPriority.UPDATE: 1,
}


class EmailAction(str, Enum):
    """Suggested follow-up action."""

    REPLY = "Reply"
    FORWARD = "Forward"
    ARCHIVE = "Archive"
    DELETE = "Delete"
    MARK_READ = "Mark as Read"
    STAR = "Star"


class SyncStatus(str, Enum):
    """Per-record synchronization state."""

    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"
    LOCAL = "local"  # local edits not yet confirmed by the provider


class Sentiment(str, Enum):
    """Overall tone of a message."""

    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    CRITICAL = "Critical"
    NEUTRAL = "Neutral"


class EmailTone(str, Enum):
    """Tone requested for generated replies and forwards."""

    PROFESSIONAL = "Professional"
    FRIENDLY = "Friendly"
    CASUAL = "Casual"
    FORMAL = "Formal"
    PERSUASIVE = "Persuasive"
    APOLOGETIC = "Apologetic"
    ENTHUSIASTIC = "Enthusiastic"
    URGENT = "Urgent"
    HUMOROUS = "Humorous"
    ANGRY = "Angry"
    ORIGINAL = "Original Transcript"

    @property
    def description(self) -> str:
        return _TONE_DESCRIPTIONS[self]


_TONE_DESCRIPTIONS = {
    EmailTone.PROFESSIONAL: "Business-like and formal",
    EmailTone.FRIENDLY: "Warm and approachable",
    EmailTone.CASUAL: "Relaxed and informal",
    EmailTone.FORMAL: "Very formal and structured",
    EmailTone.PERSUASIVE: "Convincing and compelling",
    EmailTone.APOLOGETIC: "Sincere and regretful",
    EmailTone.ENTHUSIASTIC: "Excited and positive",
    EmailTone.URGENT: "Time-sensitive and important",
    EmailTone.HUMOROUS: "Light-hearted and funny",
    EmailTone.ANGRY: "Firm and direct",
    EmailTone.ORIGINAL: "Keep original transcript",
}


class CategoryFilter(str, Enum):
    """Mailbox views computed from flags and labels."""

    INBOX = "inbox"
    STARRED = "starred"
    SENT = "sent"
    TRASH = "trash"
    ARCHIVE = "archive"
    UNREAD = "unread"
    IMPORTANT = "important"


@dataclass
class EmailAttachment:
    """Attachment metadata. Content is never downloaded eagerly."""

    name: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    url: str | None = None
    attachment_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "mime_type": self.mime_type,
            "url": self.url,
            "attachment_id": self.attachment_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailAttachment:
        return cls(
            name=data.get("name", ""),
            size=int(data.get("size") or 0),
            mime_type=data.get("mime_type") or "application/octet-stream",
            url=data.get("url"),
            attachment_id=data.get("attachment_id"),
        )


@dataclass(frozen=True)
class Email:
    """Canonical, normalized email record.

    Records are immutable; edits go through with_changes(), which returns a
    new record.
    """

    subject: str = ""
    sender: str = ""
    sender_email: str = ""
    recipients: list[str] = field(default_factory=list)
    content: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    # User-visible state
    is_read: bool = False
    is_starred: bool = False
    is_trash: bool = False
    is_archived: bool = False
    labels: list[str] = field(default_factory=list)

    # Derived intelligence
    priority: EmailPriority = EmailPriority.MEDIUM
    requires_action: bool = False
    suggested_action: EmailAction | None = None

    attachments: list[EmailAttachment] = field(default_factory=list)

    # Identity
    message_id: str | None = None
    thread_id: str | None = None
    id: str = ""

    sender_profile_image_url: str | None = None

    # Bookkeeping
    version: int = 1
    last_modified: datetime = field(default_factory=utcnow)
    sync_status: SyncStatus = SyncStatus.SYNCED

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", self.message_id or uuid.uuid4().hex)

    @property
    def merge_key(self) -> str:
        """Key used to match records across merges."""
        return self.message_id or self.id

    @property
    def has_reliable_timestamp(self) -> bool:
        """False when the timestamp is the parse-failure sentinel."""
        return self.timestamp != SENTINEL_TIMESTAMP

    @property
    def sender_domain(self) -> str:
        if "@" not in self.sender_email:
            return ""
        return self.sender_email.rsplit("@", 1)[1].lower()

    def with_changes(self, **changes: Any) -> Email:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "subject": self.subject,
            "sender": self.sender,
            "sender_email": self.sender_email,
            "recipients": list(self.recipients),
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "is_read": self.is_read,
            "is_starred": self.is_starred,
            "is_trash": self.is_trash,
            "is_archived": self.is_archived,
            "labels": list(self.labels),
            "priority": self.priority.value,
            "requires_action": self.requires_action,
            "suggested_action": self.suggested_action.value if self.suggested_action else None,
            "attachments": [a.to_dict() for a in self.attachments],
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "sender_profile_image_url": self.sender_profile_image_url,
            "version": self.version,
            "last_modified": self.last_modified.isoformat(),
            "sync_status": self.sync_status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Email:
        """Rebuild a record produced by to_dict()."""
        action = data.get("suggested_action")
        return cls(
            id=data.get("id", ""),
            subject=data.get("subject", ""),
            sender=data.get("sender", ""),
            sender_email=data.get("sender_email", ""),
            recipients=list(data.get("recipients") or []),
            content=data.get("content", ""),
            timestamp=_parse_iso(data.get("timestamp")),
            is_read=bool(data.get("is_read", False)),
            is_starred=bool(data.get("is_starred", False)),
            is_trash=bool(data.get("is_trash", False)),
            is_archived=bool(data.get("is_archived", False)),
            labels=list(data.get("labels") or []),
            priority=EmailPriority(data.get("priority", EmailPriority.MEDIUM.value)),
            requires_action=bool(data.get("requires_action", False)),
            suggested_action=EmailAction(action) if action else None,
            attachments=[EmailAttachment.from_dict(a) for a in data.get("attachments") or []],
            message_id=data.get("message_id"),
            thread_id=data.get("thread_id"),
            sender_profile_image_url=data.get("sender_profile_image_url"),
            version=int(data.get("version", 1)),
            last_modified=_parse_iso(data.get("last_modified")),
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.SYNCED.value)),
        )


def _parse_iso(value: str | None) -> datetime:
    if not value:
        return SENTINEL_TIMESTAMP
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def categorize(email: Email) -> set[CategoryFilter]:
    """Compute the mailbox views an email belongs to."""
    labels = set(email.labels)
    categories: set[CategoryFilter] = set()

    if "INBOX" in labels and not email.is_trash and not email.is_archived:
        categories.add(CategoryFilter.INBOX)
    if "SENT" in labels:
        categories.add(CategoryFilter.SENT)
    if email.is_starred or "STARRED" in labels:
        categories.add(CategoryFilter.STARRED)
    if email.is_trash or "TRASH" in labels:
        categories.add(CategoryFilter.TRASH)
    # Sent-only messages never left the inbox, so they are not archived
    if labels and "INBOX" not in labels and "TRASH" not in labels and labels != {"SENT"}:
        categories.add(CategoryFilter.ARCHIVE)
    if not email.is_read or "UNREAD" in labels:
        categories.add(CategoryFilter.UNREAD)
    if email.priority in (EmailPriority.HIGH, EmailPriority.URGENT) or "IMPORTANT" in labels:
        categories.add(CategoryFilter.IMPORTANT)

    return categories


@dataclass
class CustomFilterResult:
    """A saved-search filter proposed for a user's request."""

    title: str
    query: str
    description: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "query": self.query,
            "description": self.description,
            "confidence": self.confidence,
        }


@dataclass
class CachedCollection:
    """One account's cached emails, newest first."""

    emails: tuple[Email, ...] = ()
    refreshed_at: datetime = field(default_factory=utcnow)
    _categories: dict[CategoryFilter, frozenset[str]] | None = field(
        default=None, repr=False, compare=False
    )

    def category_ids(self, category: CategoryFilter) -> frozenset[str]:
        """Ids of emails in a category. Computed on first use."""
        if self._categories is None:
            buckets: dict[CategoryFilter, set[str]] = {c: set() for c in CategoryFilter}
            for email in self.emails:
                for c in categorize(email):
                    buckets[c].add(email.id)
            self._categories = {c: frozenset(ids) for c, ids in buckets.items()}
        return self._categories[category]

    def find(self, key: str) -> Email | None:
        """Look up a record by merge key or id."""
        for email in self.emails:
            if email.merge_key == key or email.id == key:
                return email
        return None

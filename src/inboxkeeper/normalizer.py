"""Conversion of raw provider messages into canonical Email records."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections import OrderedDict
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime

from pydantic import BaseModel, ConfigDict, Field

from inboxkeeper.locks import ReadWriteLock
from inboxkeeper.models import (
    SENTINEL_TIMESTAMP,
    Email,
    EmailAttachment,
    EmailPriority,
    SyncStatus,
)

logger = logging.getLogger(__name__)


# Raw provider message schema (Gmail API, format=full)


class RawHeader(BaseModel):
    """A single message header."""

    name: str
    value: str = ""


class RawBody(BaseModel):
    """Body of a message part; data is base64url encoded."""

    model_config = ConfigDict(populate_by_name=True)

    data: str | None = None
    size: int | None = None
    attachment_id: str | None = Field(default=None, alias="attachmentId")


class RawPayload(BaseModel):
    """MIME tree of a message."""

    model_config = ConfigDict(populate_by_name=True)

    mime_type: str | None = Field(default=None, alias="mimeType")
    filename: str | None = None
    headers: list[RawHeader] = Field(default_factory=list)
    body: RawBody | None = None
    parts: list[RawPayload] | None = None


class RawMessage(BaseModel):
    """Message as returned by the mailbox provider."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    thread_id: str | None = Field(default=None, alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")
    payload: RawPayload = Field(default_factory=RawPayload)
    internal_date: str | None = Field(default=None, alias="internalDate")
    history_id: str | None = Field(default=None, alias="historyId")
    snippet: str | None = None

    def header(self, name: str) -> str | None:
        """First header with the given name, case-insensitive."""
        wanted = name.lower()
        for h in self.payload.headers:
            if h.name.lower() == wanted:
                return h.value
        return None


RawPayload.model_rebuild()


# Tags appended to the provider label set. READ and ARCHIVED exist only as
# derived tags; the others mirror real provider labels.
DERIVED_ONLY_LABELS = frozenset({"READ", "ARCHIVED"})


def derive_flags(label_ids: list[str]) -> dict[str, bool]:
    """Compute the user-state flags from a provider label set."""
    labels = set(label_ids)
    is_trash = "TRASH" in labels
    return {
        "is_read": "UNREAD" not in labels,
        "is_starred": "STARRED" in labels,
        "is_trash": is_trash,
        "is_archived": "INBOX" not in labels and not is_trash,
        "is_sent": "SENT" in labels,
    }


def derive_labels(label_ids: list[str]) -> list[str]:
    """Provider labels plus derived tags, deduplicated in order."""
    base = [label for label in label_ids if label not in DERIVED_ONLY_LABELS]
    flags = derive_flags(base)

    labels = list(base)
    labels.append("READ" if flags["is_read"] else "UNREAD")
    if flags["is_starred"]:
        labels.append("STARRED")
    if flags["is_trash"]:
        labels.append("TRASH")
    if flags["is_archived"]:
        labels.append("ARCHIVED")
    if flags["is_sent"]:
        labels.append("SENT")

    return list(dict.fromkeys(labels))


def parse_sender_name(value: str) -> str:
    """Display name from "Name <addr>", or "Unknown"."""
    if "<" not in value:
        return "Unknown"
    name = value.split("<", 1)[0].strip().strip('"').strip()
    return name or "Unknown"


def parse_address(value: str) -> str:
    """Address from "Name <addr>", or the trimmed value itself."""
    start = value.find("<")
    end = value.find(">", start + 1)
    if start != -1 and end != -1:
        return value[start + 1 : end].strip()
    return value.strip()


def split_addresses(value: str) -> list[str]:
    """Split a list of addresses, respecting quotes and angle brackets."""
    addresses = []
    current = ""
    in_quotes = False
    in_angle = False

    for char in value:
        if char == '"' and not in_angle:
            in_quotes = not in_quotes
        elif char == "<":
            in_angle = True
        elif char == ">":
            in_angle = False
        elif char == "," and not in_quotes and not in_angle:
            if current.strip():
                addresses.append(current.strip())
            current = ""
            continue
        current += char

    if current.strip():
        addresses.append(current.strip())

    return addresses


def decode_body_data(data: str | None) -> str:
    """Decode base64url body data. Bad or missing data yields ""."""
    if not data:
        return ""
    standard = data.replace("-", "+").replace("_", "/")
    standard += "=" * (-len(standard) % 4)
    try:
        raw = base64.b64decode(standard)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to decode body data: {e}")
        return ""
    return raw.decode("utf-8", errors="replace")


def extract_content(payload: RawPayload) -> str:
    """Top-level body if present, else the first text/plain part."""
    if payload.body and payload.body.data:
        return decode_body_data(payload.body.data)

    for part in _walk_parts(payload):
        if part.mime_type == "text/plain" and part.body and part.body.data:
            return decode_body_data(part.body.data)

    return ""


def extract_attachments(payload: RawPayload) -> list[EmailAttachment]:
    """Metadata for every part that carries a filename."""
    attachments = []
    for part in _walk_parts(payload):
        if not part.filename:
            continue
        body = part.body or RawBody()
        attachments.append(
            EmailAttachment(
                name=part.filename,
                size=body.size or 0,
                mime_type=part.mime_type or "application/octet-stream",
                attachment_id=body.attachment_id,
            )
        )
    return attachments


def _walk_parts(payload: RawPayload):
    for part in payload.parts or []:
        yield part
        yield from _walk_parts(part)


def _decode_header(value: str | None) -> str:
    """Safely decode an RFC 2047 encoded header."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except Exception:
        return str(value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageNormalizer:
    """Converts raw provider messages into canonical Email records.

    Resolved timestamps are memoized per provider message id, so
    normalizing the same message twice yields the same time even if the
    fallback path was taken. The memo holds at most max_cached_timestamps
    ids; the oldest entries are evicted first.
    """

    MAX_CACHED_TIMESTAMPS = 5000

    # Tried in order against the Date header
    DATE_FORMATS = [
        "%a, %d %b %Y %H:%M:%S %z",  # Mon, 15 Jan 2024 10:30:00 +0000
        "%d %b %Y %H:%M:%S %z",  # 15 Jan 2024 10:30:00 +0000
        "%a, %d %b %Y %H:%M %z",  # Mon, 15 Jan 2024 10:30 +0000
        "%d %b %Y %H:%M %z",  # 15 Jan 2024 10:30 +0000
        "%a %b %d %H:%M:%S %Y",  # Mon Jan 15 10:30:00 2024
        "%a, %d %b %Y %H:%M:%S",  # Mon, 15 Jan 2024 10:30:00
        "%d %b %Y %H:%M:%S",  # 15 Jan 2024 10:30:00
        "%Y-%m-%dT%H:%M:%S%z",  # 2024-01-15T10:30:00Z
        "%Y-%m-%dT%H:%M:%S.%f%z",  # 2024-01-15T10:30:00.000Z
        "%Y-%m-%dT%H:%M:%S",  # 2024-01-15T10:30:00
        "%Y-%m-%d %H:%M:%S",  # 2024-01-15 10:30:00
        "%b %d, %Y %H:%M:%S",  # Jan 15, 2024 10:30:00
        "%b %d %Y %H:%M:%S",  # Jan 15 2024 10:30:00
    ]

    TIMEZONE_OFFSETS = {
        "GMT": "+0000",
        "UTC": "+0000",
        "UT": "+0000",
        "EST": "-0500",
        "EDT": "-0400",
        "CST": "-0600",
        "CDT": "-0500",
        "MST": "-0700",
        "MDT": "-0600",
        "PST": "-0800",
        "PDT": "-0700",
    }

    _COMMENT_RE = re.compile(r"\s*\([^)]*\)\s*$")
    _TZ_RE = re.compile(r"\b(" + "|".join(TIMEZONE_OFFSETS) + r")\s*$")

    def __init__(self, max_cached_timestamps: int = MAX_CACHED_TIMESTAMPS) -> None:
        self.max_cached_timestamps = max_cached_timestamps
        self._timestamp_cache: OrderedDict[str, datetime] = OrderedDict()
        self._cache_lock = ReadWriteLock()

    def normalize(self, raw: RawMessage) -> Email:
        """Convert a raw provider message into an Email."""
        subject = _decode_header(raw.header("Subject")) or "No Subject"
        from_value = _decode_header(raw.header("From")) or "Unknown Sender"
        to_value = _decode_header(raw.header("To"))

        timestamp = self.resolve_timestamp(
            raw.id, raw.internal_date, raw.header("Date") or ""
        )
        flags = derive_flags(raw.label_ids)

        return Email(
            id=raw.id,
            subject=subject,
            sender=parse_sender_name(from_value),
            sender_email=parse_address(from_value),
            recipients=[parse_address(a) for a in split_addresses(to_value)],
            content=extract_content(raw.payload),
            timestamp=timestamp,
            is_read=flags["is_read"],
            is_starred=flags["is_starred"],
            is_trash=flags["is_trash"],
            is_archived=flags["is_archived"],
            labels=derive_labels(raw.label_ids),
            priority=EmailPriority.MEDIUM,
            requires_action=False,
            attachments=extract_attachments(raw.payload),
            message_id=raw.id,
            thread_id=raw.thread_id,
            version=1,
            last_modified=timestamp,
            sync_status=SyncStatus.SYNCED,
        )

    def resolve_timestamp(
        self, message_id: str, internal_date: str | None, date_header: str
    ) -> datetime:
        """Internal timestamp, then Date header, then the sentinel date."""
        with self._cache_lock.read():
            cached = self._timestamp_cache.get(message_id)
        if cached is not None:
            return cached

        timestamp = self._parse_internal_date(internal_date)
        if timestamp is None:
            logger.debug(f"No internal date for {message_id}, parsing Date header")
            timestamp = self.parse_date_header(date_header)
        if timestamp is None:
            logger.warning(
                f"All timestamp sources failed for {message_id}, using fallback date"
            )
            timestamp = SENTINEL_TIMESTAMP

        with self._cache_lock.write():
            timestamp = self._timestamp_cache.setdefault(message_id, timestamp)
            while len(self._timestamp_cache) > self.max_cached_timestamps:
                self._timestamp_cache.popitem(last=False)
            return timestamp

    def parse_date_header(self, value: str) -> datetime | None:
        """Parse a Date header against the known formats."""
        if not value or not value.strip():
            return None

        original = value.strip()
        without_comment = self._COMMENT_RE.sub("", original).strip()
        with_offset = self._TZ_RE.sub(
            lambda m: self.TIMEZONE_OFFSETS[m.group(1)], without_comment
        )
        candidates = list(dict.fromkeys([original, without_comment, with_offset]))

        for candidate in candidates:
            for fmt in self.DATE_FORMATS:
                try:
                    return _as_utc(datetime.strptime(candidate, fmt))
                except ValueError:
                    continue

        for candidate in candidates:
            try:
                return _as_utc(parsedate_to_datetime(candidate))
            except (TypeError, ValueError, IndexError):
                pass
            try:
                return _as_utc(datetime.fromisoformat(candidate))
            except ValueError:
                pass

        logger.debug(f"Failed to parse date: {value}")
        return None

    @property
    def cached_timestamps(self) -> int:
        with self._cache_lock.read():
            return len(self._timestamp_cache)

    def clear_timestamp_cache(self) -> None:
        with self._cache_lock.write():
            self._timestamp_cache.clear()

    @staticmethod
    def _parse_internal_date(value: str | None) -> datetime | None:
        """Millisecond epoch string to an aware datetime."""
        if not value:
            return None
        try:
            millis = int(value)
            return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None

"""Tests for the email data model."""

from datetime import datetime, timezone

import dataclasses

import pytest

from inboxkeeper.models import (
    SENTINEL_TIMESTAMP,
    CachedCollection,
    CategoryFilter,
    CustomFilterResult,
    Email,
    EmailAction,
    EmailAttachment,
    EmailPriority,
    EmailTone,
    SyncStatus,
    categorize,
)


class TestEmailPriority:
    """Tests for priority levels."""

    def test_levels(self):
        assert EmailPriority.URGENT.level == 5
        assert EmailPriority.HIGH.level == 4
        assert EmailPriority.MEDIUM.level == 3
        assert EmailPriority.LOW.level == 2
        assert EmailPriority.UPDATE.level == 1

    def test_only_medium_is_uninformed(self):
        assert not EmailPriority.MEDIUM.is_informed
        assert EmailPriority.LOW.is_informed
        assert EmailPriority.UPDATE.is_informed

    def test_tone_descriptions(self):
        assert EmailTone.FORMAL.description == "Very formal and structured"
        assert all(tone.description for tone in EmailTone)


class TestEmail:
    """Tests for the Email record."""

    def test_id_derived_from_message_id(self):
        email = Email(message_id="18c1a2b3")
        assert email.id == "18c1a2b3"
        assert email.merge_key == "18c1a2b3"

    def test_generated_id_for_local_draft(self):
        first = Email(subject="Draft")
        second = Email(subject="Draft")
        assert first.id
        assert first.id != second.id
        assert first.merge_key == first.id

    def test_defaults(self):
        email = Email()
        assert email.priority == EmailPriority.MEDIUM
        assert email.version == 1
        assert email.sync_status == SyncStatus.SYNCED
        assert email.suggested_action is None

    def test_sentinel_timestamp_is_unreliable(self):
        assert not Email(timestamp=SENTINEL_TIMESTAMP).has_reliable_timestamp
        assert Email(timestamp=datetime(2024, 1, 15, tzinfo=timezone.utc)).has_reliable_timestamp

    def test_sender_domain(self):
        assert Email(sender_email="Jane@Example.COM").sender_domain == "example.com"
        assert Email(sender_email="not-an-address").sender_domain == ""

    def test_with_changes_leaves_original(self):
        email = Email(message_id="m1", is_starred=False)
        starred = email.with_changes(is_starred=True)
        assert starred.is_starred is True
        assert email.is_starred is False
        assert starred.id == email.id

    def test_records_are_frozen(self):
        email = Email(message_id="m1")
        with pytest.raises(dataclasses.FrozenInstanceError):
            email.is_starred = True
        assert email.is_starred is False

    def test_dict_round_trip(self):
        email = Email(
            subject="Quarterly report",
            sender="Jane Doe",
            sender_email="jane@example.com",
            recipients=["me@example.com"],
            content="See attached.",
            timestamp=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
            labels=["INBOX", "UNREAD"],
            priority=EmailPriority.HIGH,
            requires_action=True,
            suggested_action=EmailAction.MARK_READ,
            attachments=[EmailAttachment(name="report.pdf", size=1024, mime_type="application/pdf")],
            message_id="m1",
            thread_id="t1",
            version=4,
            sync_status=SyncStatus.LOCAL,
        )
        restored = Email.from_dict(email.to_dict())
        assert restored == email

    def test_from_dict_missing_timestamp_uses_sentinel(self):
        email = Email.from_dict({"message_id": "m1"})
        assert email.timestamp == SENTINEL_TIMESTAMP


def make_email(**kwargs) -> Email:
    defaults = {"message_id": "m1", "labels": ["INBOX", "UNREAD"], "is_read": False}
    defaults.update(kwargs)
    return Email(**defaults)


class TestCategorize:
    """Tests for category filters."""

    def test_inbox_unread(self):
        categories = categorize(make_email())
        assert CategoryFilter.INBOX in categories
        assert CategoryFilter.UNREAD in categories
        assert CategoryFilter.ARCHIVE not in categories

    def test_archived_excluded_from_inbox(self):
        email = make_email(labels=["INBOX", "READ"], is_read=True, is_archived=True)
        assert CategoryFilter.INBOX not in categorize(email)

    def test_archive_requires_no_inbox_or_trash(self):
        email = make_email(labels=["IMPORTANT", "READ", "ARCHIVED"], is_read=True)
        assert CategoryFilter.ARCHIVE in categorize(email)

    def test_sent_only_is_not_archive(self):
        email = make_email(labels=["SENT"], is_read=True)
        categories = categorize(email)
        assert CategoryFilter.SENT in categories
        assert CategoryFilter.ARCHIVE not in categories

    def test_trash(self):
        email = make_email(labels=["TRASH", "READ"], is_read=True, is_trash=True)
        categories = categorize(email)
        assert CategoryFilter.TRASH in categories
        assert CategoryFilter.ARCHIVE not in categories
        assert CategoryFilter.INBOX not in categories

    def test_important_by_priority_or_label(self):
        assert CategoryFilter.IMPORTANT in categorize(make_email(priority=EmailPriority.URGENT))
        assert CategoryFilter.IMPORTANT in categorize(make_email(labels=["INBOX", "IMPORTANT"]))
        assert CategoryFilter.IMPORTANT not in categorize(make_email(priority=EmailPriority.MEDIUM))

    def test_starred_by_flag(self):
        assert CategoryFilter.STARRED in categorize(make_email(is_starred=True))


class TestCachedCollection:
    """Tests for cached collections."""

    @pytest.fixture
    def collection(self):
        return CachedCollection(
            emails=(
                make_email(message_id="a", is_starred=True, labels=["INBOX", "STARRED", "UNREAD"]),
                make_email(message_id="b", labels=["INBOX", "READ"], is_read=True),
                make_email(message_id="c", labels=["TRASH", "READ"], is_read=True, is_trash=True),
            )
        )

    def test_category_ids(self, collection):
        assert collection.category_ids(CategoryFilter.INBOX) == frozenset({"a", "b"})
        assert collection.category_ids(CategoryFilter.STARRED) == frozenset({"a"})
        assert collection.category_ids(CategoryFilter.TRASH) == frozenset({"c"})
        assert collection.category_ids(CategoryFilter.SENT) == frozenset()

    def test_find(self, collection):
        assert collection.find("b").message_id == "b"
        assert collection.find("missing") is None


class TestCustomFilterResult:
    def test_to_dict(self):
        result = CustomFilterResult("Receipts", "subject:(receipt)", "Purchases", 0.6)
        assert result.to_dict() == {
            "title": "Receipts",
            "query": "subject:(receipt)",
            "description": "Purchases",
            "confidence": 0.6,
        }

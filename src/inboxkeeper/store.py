"""Reconciliation store: per-account cached collections and the merge algorithm."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, Union

from inboxkeeper.locks import ReadWriteLock
from inboxkeeper.models import (
    CachedCollection,
    CategoryFilter,
    Email,
    EmailPriority,
    SyncStatus,
    utcnow,
)

if TYPE_CHECKING:
    from inboxkeeper.storage import CacheStorage

logger = logging.getLogger(__name__)


# Fields a local edit owns until the record is re-synced
USER_STATE_FIELDS = ("is_read", "is_starred", "is_trash", "is_archived", "labels")


def cache_key(account: str) -> str:
    """Persistence key for an account's collection."""
    return f"cache_{account}"


def merge_records(existing: Email, incoming: Email, now: datetime | None = None) -> Email:
    """Combine a cached record with its freshly fetched counterpart."""
    now = now or utcnow()
    is_local = existing.sync_status == SyncStatus.LOCAL

    if existing.priority != EmailPriority.MEDIUM:
        priority = existing.priority
    else:
        priority = incoming.priority

    changes: dict[str, Any] = {
        "priority": priority,
        "sender_profile_image_url": existing.sender_profile_image_url
        or incoming.sender_profile_image_url,
        "version": max(existing.version, incoming.version) + 1,
        "last_modified": now,
        "sync_status": SyncStatus.LOCAL if is_local else SyncStatus.SYNCED,
        "id": existing.id,
    }
    if is_local:
        for name in USER_STATE_FIELDS:
            value = getattr(existing, name)
            changes[name] = list(value) if name == "labels" else value

    return incoming.with_changes(**changes)


def merge_collections(
    existing: Iterable[Email],
    batch: Iterable[Email],
    now: datetime | None = None,
) -> list[Email]:
    """Merge a fetched batch into a cached collection.

    Claimed records are merged field by field; unclaimed cached records
    survive only while they carry unsynced local edits. The result is
    ordered newest first.
    """
    now = now or utcnow()
    lookup = {email.merge_key: email for email in existing}

    # Later duplicates replace earlier ones but keep the first position
    incoming: dict[str, Email] = {}
    for email in batch:
        incoming[email.merge_key] = email

    result = []
    for key, new in incoming.items():
        old = lookup.pop(key, None)
        if old is None:
            result.append(new)
        else:
            result.append(merge_records(old, new, now))

    for key, old in lookup.items():
        if old.sync_status == SyncStatus.LOCAL:
            result.append(old)
        else:
            logger.debug(f"Dropping {key}: no longer present remotely")

    result.sort(key=lambda e: e.timestamp, reverse=True)
    return result


def overlay_collection(
    existing: Iterable[Email],
    changed: Iterable[Email],
    deleted: Iterable[str],
    now: datetime | None = None,
) -> list[Email]:
    """Apply a delta to a cached collection.

    Changed records are merged with their cached counterparts or added.
    Deleted records are dropped unless they carry unsynced local edits.
    Records the delta does not mention are kept as they are.
    """
    now = now or utcnow()
    incoming: dict[str, Email] = {}
    for email in changed:
        incoming[email.merge_key] = email
    deleted = set(deleted)

    result = []
    for old in existing:
        key = old.merge_key
        new = incoming.pop(key, None)
        if new is not None:
            result.append(merge_records(old, new, now))
        elif key in deleted and old.sync_status != SyncStatus.LOCAL:
            logger.debug(f"Dropping {key}: deleted remotely")
        else:
            result.append(old)
    result.extend(incoming.values())

    result.sort(key=lambda e: e.timestamp, reverse=True)
    return result


RecordChanges = Union[dict[str, Any], Callable[[Email], dict[str, Any]]]


class ReconciliationStore:
    """Keyed cache of per-account email collections.

    Reads run concurrently; merges and record updates hold the account's
    write lock, and each write publishes a new immutable collection so a
    reader sees either the old or the new state, never a partial one.
    Publishing also holds _locks_guard, which accounts() iterates under.
    """

    def __init__(self, storage: CacheStorage | None = None):
        self.storage = storage
        self._collections: dict[str, CachedCollection] = {}
        self._locks: dict[str, ReadWriteLock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, account: str) -> ReadWriteLock:
        with self._locks_guard:
            lock = self._locks.get(account)
            if lock is None:
                lock = self._locks[account] = ReadWriteLock()
            return lock

    def _publish(self, account: str, emails: Iterable[Email]) -> None:
        # Caller holds the account's write lock
        collection = CachedCollection(emails=tuple(emails))
        with self._locks_guard:
            self._collections[account] = collection

    def _discard(self, account: str) -> None:
        with self._locks_guard:
            self._collections.pop(account, None)

    def accounts(self) -> list[str]:
        with self._locks_guard:
            return sorted(self._collections)

    def get_collection(self, account: str) -> CachedCollection | None:
        with self._lock(account).read():
            return self._collections.get(account)

    def get_cached(self, account: str) -> list[Email]:
        """Cached emails for an account, newest first."""
        collection = self.get_collection(account)
        return list(collection.emails) if collection else []

    def find(self, account: str, key: str) -> Email | None:
        collection = self.get_collection(account)
        return collection.find(key) if collection else None

    def categories(self, account: str, category: CategoryFilter) -> frozenset[str]:
        """Ids of cached emails matching a category filter."""
        collection = self.get_collection(account)
        return collection.category_ids(category) if collection else frozenset()

    def merge(self, account: str, batch: Iterable[Email]) -> None:
        """Merge a fetched batch and replace the account's collection."""
        batch = list(batch)
        with self._lock(account).write():
            current = self._collections.get(account)
            existing = current.emails if current else ()
            merged = merge_collections(existing, batch)
            self._publish(account, merged)

        logger.debug(
            f"Merged {len(batch)} fetched emails into {account}: "
            f"{len(existing)} -> {len(merged)} cached"
        )

    def merge_delta(self, account: str, changed: Iterable[Email], deleted: Iterable[str]) -> None:
        """Apply fetched changes to the live collection.

        Only the changed and deleted keys are touched, so records edited
        while the delta was being fetched keep their current state.
        """
        changed = list(changed)
        deleted = list(deleted)
        with self._lock(account).write():
            current = self._collections.get(account)
            existing = current.emails if current else ()
            merged = overlay_collection(existing, changed, deleted)
            self._publish(account, merged)

        logger.debug(
            f"Applied {len(changed)} changed and {len(deleted)} deleted emails to {account}: "
            f"{len(existing)} -> {len(merged)} cached"
        )

    def update_record(
        self,
        account: str,
        key: str,
        changes: RecordChanges,
        sync_status: SyncStatus | None = None,
    ) -> Email | None:
        """Replace one record with an edited copy.

        changes is either a field mapping or a function computing one from
        the current record; the function runs under the write lock.
        Returns the updated record, or None if the account or key is unknown.
        """
        with self._lock(account).write():
            current = self._collections.get(account)
            if current is None:
                return None
            target = current.find(key)
            if target is None:
                return None

            if callable(changes):
                changes = changes(target)
            updated = target.with_changes(
                **changes,
                version=target.version + 1,
                last_modified=utcnow(),
                sync_status=sync_status or target.sync_status,
            )
            emails = [updated if e is target else e for e in current.emails]
            emails.sort(key=lambda e: e.timestamp, reverse=True)
            self._publish(account, emails)

        return updated

    def clear(self, account: str) -> None:
        """Drop an account's cache, persisted copy and checkpoint included."""
        with self._lock(account).write():
            self._discard(account)
            if self.storage:
                self.storage.delete_collection(cache_key(account))
                self.storage.delete_checkpoint(account)
        logger.info(f"Cleared cache for {account}")

    def clear_all(self) -> None:
        for account in self.accounts():
            with self._lock(account).write():
                self._discard(account)
        if self.storage:
            self.storage.delete_all_collections()
        logger.info("Cleared all cached collections")

    def activate(self, account: str) -> int:
        """Load the persisted collection for an account into memory.

        Returns the number of cached emails available afterwards.
        """
        with self._lock(account).write():
            if account not in self._collections and self.storage:
                loaded = self.storage.load_collection(cache_key(account))
                if loaded is not None:
                    with self._locks_guard:
                        self._collections[account] = loaded
                    logger.info(f"Loaded {len(loaded.emails)} cached emails for {account}")
            current = self._collections.get(account)
            return len(current.emails) if current else 0

    def persist(self, account: str) -> None:
        """Write an account's collection to storage."""
        if not self.storage:
            return
        collection = self.get_collection(account)
        if collection is None:
            return
        self.storage.save_collection(cache_key(account), collection)

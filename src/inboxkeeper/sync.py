"""Delta sync scheduling: fetch changes, merge them, notify observers."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from inboxkeeper.exceptions import NetworkError, ProviderError
from inboxkeeper.models import Email

if TYPE_CHECKING:
    from inboxkeeper.gateway import IntelligenceGateway
    from inboxkeeper.gmail_client import GmailClients, HistoryRecord
    from inboxkeeper.normalizer import MessageNormalizer
    from inboxkeeper.storage import CacheStorage
    from inboxkeeper.store import ReconciliationStore
    from inboxkeeper.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Kind of change reported by a delta fetch."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    LABELS_CHANGED = "labels_changed"


@dataclass
class EmailChange:
    """One changed message. email is None for deletions."""

    change_type: ChangeType
    key: str
    email: Email | None = None


@dataclass
class DeltaBatch:
    """Result of a delta fetch.

    full is set when the fetcher returned a complete listing instead of a
    delta (no checkpoint, or the checkpoint expired); such a batch replaces
    the collection outright.
    """

    changes: list[EmailChange] = field(default_factory=list)
    checkpoint: str | None = None
    full: bool = False

    @property
    def emails(self) -> list[Email]:
        return [c.email for c in self.changes if c.email is not None]


class DeltaFetcher(Protocol):
    """Source of message changes for an account."""

    async def fetch_changes(self, account: str, checkpoint: str | None) -> DeltaBatch:
        ...

    async def fetch_all(self, account: str) -> DeltaBatch:
        ...


class GmailDeltaFetcher:
    """Delta fetcher backed by the Gmail history API.

    The checkpoint is the mailbox history id. Without one, or when Gmail no
    longer has history that far back, the inbox is listed from scratch.
    Each account is read through its own client.
    """

    def __init__(
        self,
        clients: GmailClients,
        normalizer: MessageNormalizer,
        query: str = "in:inbox",
        max_results: int = 50,
    ):
        self.clients = clients
        self.normalizer = normalizer
        self.query = query
        self.max_results = max_results

    async def fetch_all(self, account: str) -> DeltaBatch:
        client = self.clients.get(account)
        # Read the history id first so nothing between the two calls is lost
        checkpoint = await client.get_profile_history_id()
        refs = await client.list_message_ids(self.query, self.max_results)
        raws = await asyncio.gather(*(client.get_message(r.id) for r in refs))
        changes = [
            EmailChange(ChangeType.ADDED, raw.id, self.normalizer.normalize(raw))
            for raw in raws
        ]
        logger.info(f"Fetched {len(changes)} messages for {account}")
        return DeltaBatch(changes=changes, checkpoint=checkpoint, full=True)

    async def fetch_changes(self, account: str, checkpoint: str | None) -> DeltaBatch:
        if not checkpoint:
            return await self.fetch_all(account)

        client = self.clients.get(account)
        try:
            history = await client.list_history(checkpoint)
        except NetworkError as e:
            if e.status_code != 404:
                raise
            logger.warning(f"History checkpoint {checkpoint} expired for {account}, relisting")
            return await self.fetch_all(account)

        kinds = collapse_history(history.history)
        changes = []
        for message_id, kind in kinds.items():
            if kind == ChangeType.DELETED:
                changes.append(EmailChange(kind, message_id))
                continue
            try:
                raw = await client.get_message(message_id)
            except NetworkError as e:
                if e.status_code != 404:
                    raise
                changes.append(EmailChange(ChangeType.DELETED, message_id))
                continue
            changes.append(EmailChange(kind, message_id, self.normalizer.normalize(raw)))

        logger.debug(f"{len(changes)} changes for {account} since {checkpoint}")
        return DeltaBatch(changes=changes, checkpoint=history.history_id)


def collapse_history(records: list[HistoryRecord]) -> dict[str, ChangeType]:
    """Final change kind per message id across a run of history records."""
    kinds: dict[str, ChangeType] = {}
    for record in records:
        for event in record.messages_added:
            kinds[event.message.id] = ChangeType.ADDED
        for event in record.labels_added + record.labels_removed:
            if kinds.get(event.message.id) not in (ChangeType.ADDED, ChangeType.DELETED):
                kinds[event.message.id] = ChangeType.LABELS_CHANGED
        for event in record.messages_deleted:
            kinds[event.message.id] = ChangeType.DELETED
    return kinds


def split_changes(changes: list[EmailChange]) -> tuple[list[Email], list[str]]:
    """Changed records and deleted keys of a delta.

    The last change per key wins, so a key is never both changed and deleted.
    """
    latest: dict[str, Email | None] = {}
    for change in changes:
        if change.change_type == ChangeType.DELETED or change.email is None:
            latest[change.key] = None
        else:
            latest[change.email.merge_key] = change.email
    changed = [email for email in latest.values() if email is not None]
    deleted = [key for key, email in latest.items() if email is None]
    return changed, deleted


def _differs(old: Email, new: Email) -> bool:
    return (
        old.subject != new.subject
        or old.content != new.content
        or old.labels != new.labels
        or old.is_read != new.is_read
        or old.is_starred != new.is_starred
        or old.is_trash != new.is_trash
        or old.is_archived != new.is_archived
    )


@dataclass
class SyncResult:
    """Outcome of one applied sync."""

    account: str
    kind: str
    added: int = 0
    updated: int = 0
    removed: int = 0
    total: int = 0
    checkpoint: str | None = None

    @property
    def changed(self) -> int:
        return self.added + self.updated + self.removed

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "kind": self.kind,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "total": self.total,
            "checkpoint": self.checkpoint,
        }


@dataclass
class SyncEvent:
    """Change notification sent to observers."""

    account: str
    kind: str
    changed: int
    result: SyncResult


SyncObserver = Callable[[SyncEvent], None]


class DeltaSyncScheduler:
    """Drives periodic delta syncs per account.

    At most one sync runs per account. A sync requested while another is in
    flight for the same account is dropped and returns None.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        fetcher: DeltaFetcher,
        gateway: IntelligenceGateway | None = None,
        storage: CacheStorage | None = None,
        audit: StructuredLogger | None = None,
        interval: float = 30.0,
        enrich_new: bool = True,
    ):
        self.store = store
        self.fetcher = fetcher
        self.gateway = gateway
        self.storage = storage
        self.audit = audit
        self.interval = interval
        self.enrich_new = enrich_new

        self._checkpoints: dict[str, str] = {}
        self._guards: dict[str, threading.Lock] = {}
        self._guards_lock = threading.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._observers: list[SyncObserver] = []

    def subscribe(self, observer: SyncObserver) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def is_syncing(self, account: str) -> bool:
        return self._guard(account).locked()

    def get_checkpoint(self, account: str) -> str | None:
        if account not in self._checkpoints and self.storage:
            stored = self.storage.get_checkpoint(account)
            if stored:
                self._checkpoints[account] = stored
        return self._checkpoints.get(account)

    async def sync_once(self, account: str) -> SyncResult | None:
        """Fetch changes since the checkpoint and merge them."""
        return await self._guarded(account, "delta", self._sync_delta)

    async def refresh(self, account: str) -> SyncResult | None:
        """Fetch the full listing and merge it."""
        return await self._guarded(account, "full", self._sync_full)

    async def _guarded(
        self,
        account: str,
        kind: str,
        operation: Callable[[str], Awaitable[SyncResult]],
    ) -> SyncResult | None:
        guard = self._guard(account)
        if not guard.acquire(blocking=False):
            logger.debug(f"Sync already in progress for {account}, dropping {kind} sync")
            if self.audit:
                self.audit.log_sync_skipped(account, "sync already in progress")
            return None
        try:
            result = await operation(account)
        finally:
            guard.release()

        if self.audit:
            self.audit.log_sync(
                account, result.kind, result.changed, result.total, result.checkpoint
            )
        if result.changed:
            self._notify(SyncEvent(account, result.kind, result.changed, result))
        return result

    def _guard(self, account: str) -> threading.Lock:
        with self._guards_lock:
            guard = self._guards.get(account)
            if guard is None:
                guard = self._guards[account] = threading.Lock()
            return guard

    async def _sync_delta(self, account: str) -> SyncResult:
        batch = await self.fetcher.fetch_changes(account, self.get_checkpoint(account))
        if batch.full:
            return await self._apply_full(account, batch)

        # Snapshot for counting only; the merge reads the live collection
        known = {e.merge_key: e for e in self.store.get_cached(account)}
        changes = await self._enrich_changes(batch.changes, known)

        result = SyncResult(account=account, kind="delta", checkpoint=batch.checkpoint)
        for change in changes:
            old = known.get(change.key)
            if change.change_type == ChangeType.DELETED:
                if old is not None:
                    result.removed += 1
            elif old is None:
                result.added += 1
            elif _differs(old, change.email):
                result.updated += 1

        # Merging an unchanged collection would only churn versions
        if changes:
            changed, deleted = split_changes(changes)
            self.store.merge_delta(account, changed, deleted)
        result.total = len(self.store.get_cached(account))
        self._commit(account, batch.checkpoint)

        logger.info(
            f"Delta sync for {account}: +{result.added} ~{result.updated} -{result.removed}"
        )
        return result

    async def _sync_full(self, account: str) -> SyncResult:
        batch = await self.fetcher.fetch_all(account)
        return await self._apply_full(account, batch)

    async def _apply_full(self, account: str, batch: DeltaBatch) -> SyncResult:
        current = self.store.get_cached(account)
        known = {e.merge_key: e for e in current}
        changes = await self._enrich_changes(batch.changes, known)
        emails = [c.email for c in changes if c.email is not None]

        incoming = {e.merge_key: e for e in emails}
        result = SyncResult(account=account, kind="full", checkpoint=batch.checkpoint)
        result.added = sum(1 for key in incoming if key not in known)
        result.updated = sum(
            1 for key, e in incoming.items() if key in known and _differs(known[key], e)
        )

        self.store.merge(account, emails)
        merged = self.store.get_cached(account)
        remaining = {e.merge_key for e in merged}
        result.removed = sum(1 for key in known if key not in remaining)
        result.total = len(merged)
        self._commit(account, batch.checkpoint)

        logger.info(
            f"Full sync for {account}: {result.total} emails "
            f"(+{result.added} ~{result.updated} -{result.removed})"
        )
        return result

    async def _enrich_changes(
        self, changes: list[EmailChange], known: dict[str, Email]
    ) -> list[EmailChange]:
        """Run the gateway over messages not cached yet."""
        if not (self.enrich_new and self.gateway):
            return changes
        enriched = []
        for change in changes:
            if change.email is not None and change.key not in known:
                email = await self.gateway.enrich(change.email)
                change = EmailChange(change.change_type, change.key, email)
            enriched.append(change)
        return enriched

    def _commit(self, account: str, checkpoint: str | None) -> None:
        self.store.persist(account)
        if checkpoint:
            self._checkpoints[account] = checkpoint
            if self.storage:
                self.storage.set_checkpoint(account, checkpoint)

    def _notify(self, event: SyncEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(f"Sync observer failed for {event.account}")

    # ========================================
    # Periodic scheduling
    # ========================================

    def start(self, account: str) -> asyncio.Task:
        """Start periodic delta syncs for an account on the running loop."""
        task = self._tasks.get(account)
        if task is not None and not task.done():
            return task
        task = asyncio.get_running_loop().create_task(
            self._run_periodic(account), name=f"sync-{account}"
        )
        self._tasks[account] = task
        logger.info(f"Started periodic sync for {account} every {self.interval}s")
        return task

    async def stop(self, account: str) -> None:
        task = self._tasks.pop(account, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Stopped periodic sync for {account}")

    async def stop_all(self) -> None:
        for account in list(self._tasks):
            await self.stop(account)

    async def _run_periodic(self, account: str) -> None:
        while True:
            try:
                await self.sync_once(account)
            except ProviderError as e:
                logger.warning(f"Sync failed for {account}: {e}")
                if self.audit:
                    self.audit.log_error(type(e).__name__, str(e), {"account": account})
            await asyncio.sleep(self.interval)

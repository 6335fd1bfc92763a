"""User mailbox actions, applied locally first and then pushed to Gmail."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Awaitable, Callable

from inboxkeeper.exceptions import ProviderError
from inboxkeeper.models import Email, SyncStatus
from inboxkeeper.normalizer import derive_flags, derive_labels

if TYPE_CHECKING:
    from inboxkeeper.gmail_client import GmailClient, GmailClients
    from inboxkeeper.store import ReconciliationStore
    from inboxkeeper.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


def relabel(email: Email, add: list[str], remove: list[str]) -> dict:
    """Field changes for adding and removing provider labels on a record."""
    labels = [label for label in email.labels if label not in remove]
    labels.extend(label for label in add if label not in labels)
    flags = derive_flags(labels)
    return {
        "labels": derive_labels(labels),
        "is_read": flags["is_read"],
        "is_starred": flags["is_starred"],
        "is_trash": flags["is_trash"],
        "is_archived": flags["is_archived"],
    }


class MailActions:
    """Optimistic mailbox actions.

    The cached record is updated and marked Local before the provider is
    called. It goes back to Synced only once every push for it has been
    confirmed: while another push is still in flight, or after a push
    failed, it stays Local so a remote merge cannot overwrite the edit.
    A failed push re-raises the provider error unchanged; a later push
    touching the same labels settles it.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        clients: GmailClients,
        audit: StructuredLogger | None = None,
    ):
        self.store = store
        self.clients = clients
        self.audit = audit
        self._pending: dict[tuple[str, str], int] = {}
        self._unconfirmed: dict[tuple[str, str], set[str]] = {}
        self._bookkeeping = threading.Lock()

    async def mark_read(self, account: str, key: str) -> Email | None:
        return await self._modify(account, key, add=[], remove=["UNREAD"])

    async def mark_unread(self, account: str, key: str) -> Email | None:
        return await self._modify(account, key, add=["UNREAD"], remove=[])

    async def star(self, account: str, key: str) -> Email | None:
        return await self._modify(account, key, add=["STARRED"], remove=[])

    async def unstar(self, account: str, key: str) -> Email | None:
        return await self._modify(account, key, add=[], remove=["STARRED"])

    async def archive(self, account: str, key: str) -> Email | None:
        return await self._modify(account, key, add=[], remove=["INBOX"])

    async def unarchive(self, account: str, key: str) -> Email | None:
        return await self._modify(account, key, add=["INBOX"], remove=[])

    async def trash(self, account: str, key: str) -> Email | None:
        return await self._apply(account, key, ["TRASH"], [], lambda client, mid: client.trash(mid))

    async def untrash(self, account: str, key: str) -> Email | None:
        return await self._apply(account, key, [], ["TRASH"], lambda client, mid: client.untrash(mid))

    def is_pending(self, account: str, key: str) -> bool:
        """True while a push for the record is in flight or unconfirmed."""
        slot = (account, key)
        with self._bookkeeping:
            return slot in self._pending or slot in self._unconfirmed

    async def _modify(
        self, account: str, key: str, add: list[str], remove: list[str]
    ) -> Email | None:
        async def push(client: GmailClient, message_id: str) -> None:
            await client.modify_labels(message_id, add=add, remove=remove)

        return await self._apply(account, key, add, remove, push)

    async def _apply(
        self,
        account: str,
        key: str,
        add: list[str],
        remove: list[str],
        push: Callable[[GmailClient, str], Awaitable[None]],
    ) -> Email | None:
        slot = (account, key)
        labels = set(add) | set(remove)
        # Relabel the record as it is when the write lock is taken
        updated = self.store.update_record(
            account, key, lambda email: relabel(email, add, remove), sync_status=SyncStatus.LOCAL
        )
        if updated is None:
            logger.warning(f"No cached email {key} for {account}")
            return None
        self.store.persist(account)

        if not updated.message_id:
            # Local-only record; nothing to push
            return updated

        with self._bookkeeping:
            self._pending[slot] = self._pending.get(slot, 0) + 1

        confirmed = False
        try:
            await push(self.clients.get(account), updated.message_id)
            confirmed = True
        except ProviderError as e:
            logger.error(f"Failed to push change for {updated.message_id}: {e}")
            if self.audit:
                self.audit.log_error(
                    type(e).__name__,
                    str(e),
                    {"account": account, "message_id": updated.message_id, "add": add, "remove": remove},
                )
            raise
        finally:
            settled = self._settle(slot, labels, confirmed)

        if not settled:
            logger.debug(f"{updated.message_id} keeps unconfirmed changes, staying local")
            return self.store.find(account, key)

        synced = self.store.update_record(account, key, {}, sync_status=SyncStatus.SYNCED)
        self.store.persist(account)
        return synced

    def _settle(self, slot: tuple[str, str], labels: set[str], confirmed: bool) -> bool:
        """Record one finished push; True when nothing is left unconfirmed."""
        with self._bookkeeping:
            remaining = self._pending[slot] - 1
            if remaining:
                self._pending[slot] = remaining
            else:
                del self._pending[slot]

            unconfirmed = self._unconfirmed.setdefault(slot, set())
            if confirmed:
                unconfirmed.difference_update(labels)
            else:
                unconfirmed.update(labels)
            if not unconfirmed:
                del self._unconfirmed[slot]

            return remaining == 0 and not unconfirmed

# =============================================================================
# Mail State
# =============================================================================
# The shared, in-process state the sync engine and the UI read from:
#
#   - accounts, and which one (and which mailbox) is active
#   - mailbox trees per account
#   - the one EmailCache of hydrated bodies
#   - one SparseMailboxIndex per (account, mailbox)
#   - saved / archived UID sets per (account, mailbox)
#   - Sent headers per account, merged into the chat view
#
# Pipelines and the manager get a MailState handed to them; nothing reaches
# it through a global.
# =============================================================================

import logging
from typing import Callable

from mailmirror.cache import CacheKey, EmailCache
from mailmirror.config import Config
from mailmirror.core import (
    Account,
    FolderType,
    Mailbox,
    MailStore,
    MailTransport,
    MessageBody,
    MessageHeader,
    find_by_type,
)
from mailmirror.index import SparseMailboxIndex


logger = logging.getLogger(__name__)

INBOX = "INBOX"

MailboxKey = tuple[str, str]


class MailState:
    """
    Shared state of every mirrored account.

    Usage:
        >>> state = MailState(transport, store, config)
        >>> state.add_account(account)
        >>> state.set_active(account.id)
        >>> index = state.index_for(account.id, "INBOX")

    Attributes:
        transport: Remote collaborator used by the indexes.
        store: Persistence collaborator.
        config: Settings (cache limit, page size, ...).
        cache: In-memory LRU of hydrated bodies.
        accounts: Known accounts by id.
        active_account_id: The account the user is looking at.
        active_mailbox: The mailbox the user is looking at.
        mailboxes: Mailbox tree per account id.
        sent_headers: Sent-mailbox headers per account id.
        online: Last known connectivity.
    """

    def __init__(
        self,
        transport: MailTransport,
        store: MailStore,
        config: Config | None = None,
        *,
        cache: EmailCache | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.config = config or Config()
        self.cache = cache or EmailCache()

        self.accounts: dict[str, Account] = {}
        self.active_account_id: str | None = None
        self.active_mailbox: str = INBOX
        self.mailboxes: dict[str, list[Mailbox]] = {}
        self.sent_headers: dict[str, list[MessageHeader]] = {}
        self.online = True

        self._indexes: dict[MailboxKey, SparseMailboxIndex] = {}
        self._saved_ids: dict[MailboxKey, set[int]] = {}
        self._archived_ids: dict[MailboxKey, set[int]] = {}

    # =========================================================================
    # Accounts
    # =========================================================================

    @property
    def settings(self) -> Config:
        return self.config

    @property
    def active_account(self) -> Account | None:
        if self.active_account_id is None:
            return None
        return self.accounts.get(self.active_account_id)

    def add_account(self, account: Account) -> None:
        self.accounts[account.id] = account

    def update_account(self, account: Account) -> None:
        """Swap in a new copy of a known account (e.g. a refreshed token)."""
        if account.id in self.accounts:
            self.accounts[account.id] = account

    def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    def account_provider(self, account_id: str) -> Callable[[], Account | None]:
        """An accessor that always returns the current copy of an account."""
        return lambda: self.accounts.get(account_id)

    def remove_account(self, account_id: str) -> None:
        """Forget an account and everything held in memory for it."""
        self.accounts.pop(account_id, None)
        self.mailboxes.pop(account_id, None)
        self.sent_headers.pop(account_id, None)
        for key in [k for k in self._indexes if k[0] == account_id]:
            self._indexes.pop(key).close()
        for table in (self._saved_ids, self._archived_ids):
            for key in [k for k in table if k[0] == account_id]:
                del table[key]
        dropped = self.cache.drop_account(account_id)
        if self.active_account_id == account_id:
            self.active_account_id = None
        logger.info(f"Removed account {account_id} ({dropped} cached bodies dropped)")

    def set_active(self, account_id: str, mailbox: str = INBOX) -> None:
        self.active_account_id = account_id
        self.active_mailbox = mailbox

    def is_active(self, account_id: str) -> bool:
        return self.active_account_id == account_id

    # =========================================================================
    # Mailboxes and indexes
    # =========================================================================

    def set_mailboxes(self, account_id: str, tree: list[Mailbox]) -> None:
        self.mailboxes[account_id] = tree

    def sent_mailbox(self, account_id: str) -> str | None:
        """Name of the account's Sent mailbox, if its tree is known."""
        tree = self.mailboxes.get(account_id)
        if not tree:
            return None
        sent = find_by_type(tree, FolderType.SENT)
        return sent.name if sent else None

    def index_for(self, account_id: str, mailbox: str) -> SparseMailboxIndex:
        """Get (or create) the header index of a mailbox."""
        key = (account_id, mailbox)
        index = self._indexes.get(key)
        if index is None:
            index = SparseMailboxIndex(
                self.account_provider(account_id),
                mailbox,
                self.transport,
                self.store,
                page_size=self.config.index.page_size,
                skipped_retry_delay=self.config.index.skipped_retry_seconds,
                page_delay=self.config.pipeline.page_delay_seconds,
                retry_initial=self.config.pipeline.retry_initial_seconds,
                retry_max=self.config.pipeline.retry_max_seconds,
                is_online=lambda: self.online,
            )
            self._indexes[key] = index
        return index

    def existing_index(self, account_id: str, mailbox: str) -> SparseMailboxIndex | None:
        return self._indexes.get((account_id, mailbox))

    def indexes(self) -> list[SparseMailboxIndex]:
        return list(self._indexes.values())

    # =========================================================================
    # Saved / archived UIDs
    # =========================================================================

    def saved_ids(self, account_id: str, mailbox: str) -> set[int]:
        return self._saved_ids.get((account_id, mailbox), set())

    def archived_ids(self, account_id: str, mailbox: str) -> set[int]:
        return self._archived_ids.get((account_id, mailbox), set())

    def mark_saved(self, account_id: str, mailbox: str, uid: int) -> None:
        self._saved_ids.setdefault((account_id, mailbox), set()).add(uid)

    async def refresh_saved_ids(self, account_id: str, mailbox: str) -> None:
        """Reload saved and archived UID sets from the store."""
        key = (account_id, mailbox)
        self._saved_ids[key] = set(await self.store.get_saved_email_ids(account_id, mailbox))
        self._archived_ids[key] = set(await self.store.get_archived_email_ids(account_id, mailbox))

    # =========================================================================
    # Body cache
    # =========================================================================

    def cache_body(self, account_id: str, mailbox: str, body: MessageBody) -> bool:
        """Add a hydrated body to the shared cache under the configured limit."""
        key = CacheKey(account_id, mailbox, body.uid)
        return self.cache.add(key, body, self.config.cache.limit_mb)

    def cached_body(self, account_id: str, mailbox: str, uid: int) -> MessageBody | None:
        return self.cache.get(CacheKey(account_id, mailbox, uid))

    # =========================================================================
    # Chat view
    # =========================================================================

    def set_sent_headers(self, account_id: str, headers: list[MessageHeader]) -> None:
        self.sent_headers[account_id] = headers

    def conversation_messages(self, account_id: str, mailbox: str = INBOX) -> list[MessageHeader]:
        """
        Headers the chat view groups: the mailbox's loaded headers plus the
        account's Sent headers, so both sides of a conversation show.
        Cached bodies replace their headers where available.
        """
        messages: list[MessageHeader] = []
        index = self._indexes.get((account_id, mailbox))
        if index is not None:
            for header in index.emails():
                entry = self.cache.peek(CacheKey(account_id, mailbox, header.uid))
                messages.append(entry.body if entry else header)

        seen = {m.message_id for m in messages if m.message_id}
        for header in self.sent_headers.get(account_id, []):
            if header.message_id and header.message_id in seen:
                continue
            messages.append(header)
        return messages

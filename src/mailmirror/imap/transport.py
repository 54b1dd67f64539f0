# =============================================================================
# IMAP Transport
# =============================================================================
# The production MailTransport: turns the sync engine's page/range/UID
# requests into IMAP commands on one connection per account.
#
# Paging model (newest first):
#   - EXISTS = n messages, sequence numbers 1..n, n is the newest.
#   - Display index i  <->  sequence number n - i.
#   - Page p (1-based) covers display indices [(p-1)*size, p*size).
#
# One IMAP connection can only run one command at a time, and every fetch
# starts with a SELECT/EXAMINE, so commands for an account are serialised
# with an asyncio.Lock. Pipelines get their concurrency from overlapping
# network waits across accounts and from the lock hand-off, not from
# parallel commands on one socket.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from mailmirror.core import (
    Account,
    HeaderPage,
    Mailbox,
    MessageBody,
    RangePage,
    build_tree,
)
from mailmirror.imap.client import IMAPClient, IMAPConnectionError, IMAPError


logger = logging.getLogger(__name__)


@dataclass
class _Connection:
    client: IMAPClient
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class IMAPTransport:
    """
    MailTransport backed by aioimaplib connections.

    Usage:
        >>> transport = IMAPTransport(page_size=50)
        >>> page = await transport.fetch_emails(account, "INBOX", 1)
        >>> body = await transport.fetch_email(account, page.emails[0].uid, "INBOX")
        >>> await transport.close()
    """

    def __init__(
        self,
        page_size: int = 50,
        client_factory: Callable[[Account], IMAPClient] = IMAPClient,
    ) -> None:
        self.page_size = page_size
        self._client_factory = client_factory
        self._connections: dict[str, _Connection] = {}

    def _connection(self, account: Account) -> _Connection:
        conn = self._connections.get(account.id)
        if conn is None:
            conn = _Connection(client=self._client_factory(account))
            self._connections[account.id] = conn
        else:
            # Refreshed OAuth2 tokens arrive as a new Account copy
            conn.client.account = account
        return conn

    async def _drop(self, account_id: str) -> None:
        """Forget a broken connection so the next call reconnects."""
        conn = self._connections.pop(account_id, None)
        if conn is not None:
            await conn.client.disconnect()

    # =========================================================================
    # MailTransport
    # =========================================================================

    async def test_connection(self, account: Account) -> None:
        conn = self._connection(account)
        async with conn.lock:
            try:
                await conn.client.ensure_connected()
            except IMAPConnectionError:
                await self._drop(account.id)
                raise

    async def fetch_mailboxes(self, account: Account) -> list[Mailbox]:
        conn = self._connection(account)
        async with conn.lock:
            try:
                mailboxes = await conn.client.list_mailboxes()
            except (IMAPConnectionError, OSError):
                await self._drop(account.id)
                raise
        return build_tree(mailboxes)

    async def fetch_emails(self, account: Account, mailbox: str, page: int) -> HeaderPage:
        """Fetch one page of headers, newest first."""
        if page < 1:
            raise ValueError(f"Pages are 1-based, got {page}")

        conn = self._connection(account)
        async with conn.lock:
            try:
                status = await conn.client.select_mailbox(mailbox)
                total = status.get("EXISTS", 0)

                seq_end = total - (page - 1) * self.page_size
                if seq_end < 1:
                    return HeaderPage(emails=[], total=total, has_more=False)
                seq_start = max(1, seq_end - self.page_size + 1)

                headers, skipped = await conn.client.fetch_headers(seq_start, seq_end, total)
            except (IMAPConnectionError, OSError):
                await self._drop(account.id)
                raise

        logger.debug(
            f"{account.id}/{mailbox} page {page}: {len(headers)} headers, "
            f"{len(skipped)} skipped, total {total}"
        )
        return HeaderPage(emails=headers, total=total, has_more=seq_start > 1, skipped_uids=skipped)

    async def fetch_emails_range(self, account: Account, mailbox: str, start: int, end: int) -> RangePage:
        """Fetch headers for display indices [start, end)."""
        conn = self._connection(account)
        async with conn.lock:
            try:
                status = await conn.client.select_mailbox(mailbox)
                total = status.get("EXISTS", 0)

                seq_end = total - start
                seq_start = max(1, total - end + 1)
                if seq_end < 1 or end <= start:
                    return RangePage(emails=[], total=total)

                headers, skipped = await conn.client.fetch_headers(seq_start, seq_end, total)
            except (IMAPConnectionError, OSError):
                await self._drop(account.id)
                raise

        return RangePage(emails=headers, total=total, skipped_uids=skipped)

    async def fetch_email(self, account: Account, uid: int, mailbox: str) -> MessageBody:
        return await self._fetch_body(account, uid, mailbox, light=False)

    async def fetch_email_light(self, account: Account, uid: int, mailbox: str) -> MessageBody:
        return await self._fetch_body(account, uid, mailbox, light=True)

    async def _fetch_body(self, account: Account, uid: int, mailbox: str, light: bool) -> MessageBody:
        conn = self._connection(account)
        async with conn.lock:
            try:
                await conn.client.select_mailbox(mailbox)
                body = await conn.client.fetch_body(uid, light=light)
            except (IMAPConnectionError, OSError):
                await self._drop(account.id)
                raise

        if body is None:
            raise IMAPError(f"UID {uid} not found in {mailbox}")
        return body

    async def update_email_flags(
        self,
        account: Account,
        uid: int,
        flags: list[str],
        add: bool,
        mailbox: str,
    ) -> None:
        conn = self._connection(account)
        async with conn.lock:
            try:
                await conn.client.set_flags(mailbox, [uid], flags, add=add)
            except (IMAPConnectionError, OSError):
                await self._drop(account.id)
                raise

    async def close(self) -> None:
        """Log out of every open connection."""
        for account_id in list(self._connections):
            await self._drop(account_id)

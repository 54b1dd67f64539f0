# =============================================================================
# Collaborator Contracts
# =============================================================================
# The sync engine doesn't speak IMAP or SQL itself. It talks to:
#
#   MailTransport     - remote procedure calls against the mail server
#   MailStore         - on-disk persistence of headers and bodies
#   TokenRefresher    - OAuth2 token refresh
#   ConnectivityProbe - "are we online?"
#
# mailmirror.imap.IMAPTransport and mailmirror.storage.Repository are the
# production implementations; tests use in-memory fakes.
# =============================================================================

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from mailmirror.core.account import Account
from mailmirror.core.folder import Mailbox
from mailmirror.core.message import MessageBody, MessageHeader


@dataclass
class HeaderPage:
    """
    One page of a header listing.

    Attributes:
        emails: Headers on this page, newest first.
        total: Server's message count for the mailbox at fetch time.
        has_more: Whether another page follows.
        skipped_uids: UIDs the transport saw but couldn't parse.
    """
    emails: list[MessageHeader] = field(default_factory=list)
    total: int = 0
    has_more: bool = False
    skipped_uids: list[int] = field(default_factory=list)


@dataclass
class RangePage:
    """
    Headers for a display-index range. Every header has display_index set.
    """
    emails: list[MessageHeader] = field(default_factory=list)
    total: int = 0
    skipped_uids: list[int] = field(default_factory=list)


@dataclass
class CachedHeaders:
    """A persisted header list for one (account, mailbox)."""
    emails: list[MessageHeader] = field(default_factory=list)
    total: int = 0


@runtime_checkable
class MailTransport(Protocol):
    """Remote mail operations. All calls may raise on network/auth failure."""

    async def test_connection(self, account: Account) -> None: ...

    async def fetch_mailboxes(self, account: Account) -> list[Mailbox]: ...

    async def fetch_emails(self, account: Account, mailbox: str, page: int) -> HeaderPage: ...

    async def fetch_emails_range(
        self, account: Account, mailbox: str, start: int, end: int
    ) -> RangePage: ...

    async def fetch_email(self, account: Account, uid: int, mailbox: str) -> MessageBody: ...

    async def fetch_email_light(self, account: Account, uid: int, mailbox: str) -> MessageBody: ...

    async def update_email_flags(
        self, account: Account, uid: int, flags: list[str], add: bool, mailbox: str
    ) -> None: ...


@runtime_checkable
class MailStore(Protocol):
    """Local persistence of mail, keyed by (account id, mailbox, uid)."""

    async def is_email_saved(self, account_id: str, mailbox: str, uid: int) -> bool: ...

    async def get_saved_email_ids(self, account_id: str, mailbox: str) -> set[int]: ...

    async def get_archived_email_ids(self, account_id: str, mailbox: str) -> set[int]: ...

    async def save_email(self, body: MessageBody, account_id: str, mailbox: str) -> None: ...

    async def save_emails(self, bodies: list[MessageBody], account_id: str, mailbox: str) -> None: ...

    async def save_email_headers(
        self, account_id: str, mailbox: str, emails: list[MessageHeader], total: int
    ) -> None: ...

    async def get_email_headers(self, account_id: str, mailbox: str) -> CachedHeaders | None: ...


class TokenRefresher(Protocol):
    """Returns an account carrying a usable OAuth2 access token."""

    async def refresh(self, account: Account) -> Account: ...


class ConnectivityProbe(Protocol):
    async def is_online(self) -> bool: ...

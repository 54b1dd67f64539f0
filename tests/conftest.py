# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailmirror test suite:
#   - sample accounts and header/body factories
#   - FakeTransport / FakeStore: in-memory MailTransport / MailStore
#   - a MailState wired to the fakes, with millisecond delays
# =============================================================================

import asyncio
import dataclasses
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mailmirror.config import Config
from mailmirror.core import (
    Account,
    Address,
    CachedHeaders,
    FolderType,
    HeaderPage,
    Mailbox,
    MessageBody,
    MessageHeader,
    RangePage,
)
from mailmirror.state import MailState
from mailmirror.sync import PipelineTimings


BASE_DATE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Factories
# =============================================================================

def make_header(uid: int, **kwargs) -> MessageHeader:
    """A header whose date grows with its UID (higher UID = newer)."""
    defaults = {
        "message_id": f"<msg{uid}@example.com>",
        "from_": Address("alice@example.com", "Alice"),
        "to": [Address("me@example.com", "Me")],
        "subject": f"Message {uid}",
        "date": BASE_DATE + timedelta(minutes=uid),
        "mailbox": "INBOX",
    }
    defaults.update(kwargs)
    return MessageHeader(uid=uid, **defaults)


def make_body(header: MessageHeader, **kwargs) -> MessageBody:
    fields = {f.name: getattr(header, f.name) for f in dataclasses.fields(MessageHeader)}
    fields.update({"text": f"Body of message {header.uid}"})
    fields.update(kwargs)
    return MessageBody(**fields)


# =============================================================================
# Fake collaborators
# =============================================================================

class FakeTransport:
    """
    In-memory mail server.

    Mailboxes hold headers newest first. Knobs for tests:
        fail_uids: uid -> how many more light fetches of it should fail
        totals: mailbox -> total to report instead of the real count
        skip_once: UIDs reported as skipped (and left out) on their next fetch
        fetch_delay: seconds each body fetch takes
    """

    def __init__(self, page_size: int = 50) -> None:
        self.page_size = page_size
        self.mailboxes: dict[str, list[MessageHeader]] = {"INBOX": []}
        self.bodies: dict[tuple[str, int], MessageBody] = {}
        self.tree: list[Mailbox] = [
            Mailbox("INBOX", folder_type=FolderType.INBOX),
            Mailbox("Sent", folder_type=FolderType.SENT),
        ]

        self.fail_uids: dict[int, int] = {}
        self.totals: dict[str, int] = {}
        self.skip_once: set[int] = set()
        self.fetch_delay = 0.0
        self.fail_pages = 0
        self.fail_ranges = 0

        self.fetched: list[int] = []
        self.page_calls: list[tuple[str, int]] = []
        self.range_calls: list[tuple[str, int, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, mailbox: str, headers: list[MessageHeader]) -> None:
        """Add headers (given newest first) to the front of a mailbox."""
        self.mailboxes.setdefault(mailbox, [])
        self.mailboxes[mailbox] = list(headers) + self.mailboxes[mailbox]

    def _total(self, mailbox: str) -> int:
        return self.totals.get(mailbox, len(self.mailboxes.get(mailbox, [])))

    def _take_skipped(self, headers: list[MessageHeader]) -> tuple[list[MessageHeader], list[int]]:
        skipped = [h.uid for h in headers if h.uid in self.skip_once]
        self.skip_once -= set(skipped)
        return [h for h in headers if h.uid not in skipped], skipped

    async def test_connection(self, account: Account) -> None:
        return None

    async def fetch_mailboxes(self, account: Account) -> list[Mailbox]:
        return self.tree

    async def fetch_emails(self, account: Account, mailbox: str, page: int) -> HeaderPage:
        self.page_calls.append((mailbox, page))
        if self.fail_pages > 0:
            self.fail_pages -= 1
            raise ConnectionError("network unreachable")
        messages = self.mailboxes.get(mailbox, [])
        start = (page - 1) * self.page_size
        chunk = [dataclasses.replace(h, display_index=None) for h in messages[start:start + self.page_size]]
        emails, skipped = self._take_skipped(chunk)
        return HeaderPage(
            emails=emails,
            total=self._total(mailbox),
            has_more=start + self.page_size < len(messages),
            skipped_uids=skipped,
        )

    async def fetch_emails_range(self, account: Account, mailbox: str, start: int, end: int) -> RangePage:
        self.range_calls.append((mailbox, start, end))
        if self.fail_ranges > 0:
            self.fail_ranges -= 1
            raise ConnectionError("timed out")
        messages = self.mailboxes.get(mailbox, [])
        chunk = [
            dataclasses.replace(h, display_index=start + i)
            for i, h in enumerate(messages[start:end])
        ]
        emails, skipped = self._take_skipped(chunk)
        return RangePage(emails=emails, total=self._total(mailbox), skipped_uids=skipped)

    async def fetch_email(self, account: Account, uid: int, mailbox: str) -> MessageBody:
        body = await self.fetch_email_light(account, uid, mailbox)
        body.raw = b"raw"
        return body

    async def fetch_email_light(self, account: Account, uid: int, mailbox: str) -> MessageBody:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.fetched.append(uid)
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
            else:
                await asyncio.sleep(0)
            if self.fail_uids.get(uid, 0) > 0:
                self.fail_uids[uid] -= 1
                raise ConnectionError(f"connection reset fetching {uid}")
            if (mailbox, uid) in self.bodies:
                return dataclasses.replace(self.bodies[(mailbox, uid)])
            header = next((h for h in self.mailboxes.get(mailbox, []) if h.uid == uid), None)
            return make_body(header or make_header(uid, mailbox=mailbox))
        finally:
            self.in_flight -= 1

    async def update_email_flags(
        self, account: Account, uid: int, flags: list[str], add: bool, mailbox: str
    ) -> None:
        for header in self.mailboxes.get(mailbox, []):
            if header.uid == uid:
                if add:
                    header.flags |= set(flags)
                else:
                    header.flags -= set(flags)


class FakeStore:
    """In-memory MailStore."""

    def __init__(self) -> None:
        self.headers: dict[tuple[str, str], CachedHeaders] = {}
        self.saved: dict[tuple[str, str], dict[int, MessageBody]] = {}
        self.archived: dict[tuple[str, str], set[int]] = {}
        self.header_writes = 0

    async def is_email_saved(self, account_id: str, mailbox: str, uid: int) -> bool:
        return uid in self.saved.get((account_id, mailbox), {})

    async def get_saved_email_ids(self, account_id: str, mailbox: str) -> set[int]:
        return set(self.saved.get((account_id, mailbox), {}))

    async def get_archived_email_ids(self, account_id: str, mailbox: str) -> set[int]:
        return set(self.archived.get((account_id, mailbox), set()))

    async def save_email(self, body: MessageBody, account_id: str, mailbox: str) -> None:
        self.saved.setdefault((account_id, mailbox), {})[body.uid] = body

    async def save_emails(self, bodies: list[MessageBody], account_id: str, mailbox: str) -> None:
        for body in bodies:
            await self.save_email(body, account_id, mailbox)

    async def save_email_headers(
        self, account_id: str, mailbox: str, emails: list[MessageHeader], total: int
    ) -> None:
        self.header_writes += 1
        self.headers[(account_id, mailbox)] = CachedHeaders(emails=list(emails), total=total)

    async def get_email_headers(self, account_id: str, mailbox: str) -> CachedHeaders | None:
        return self.headers.get((account_id, mailbox))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_account():
    """A password account."""
    return Account(
        id="personal",
        email="me@example.com",
        display_name="Me",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
        password="secret",
    )


@pytest.fixture
def work_account():
    return Account(
        id="work",
        email="me@work.example",
        imap_host="imap.work.example",
        password="secret",
    )


@pytest.fixture
def transport():
    return FakeTransport(page_size=5)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fast_config():
    """Config with delays shrunk to milliseconds."""
    config = Config()
    config.index.page_size = 5
    config.index.skipped_retry_seconds = 0.01
    config.pipeline.stagger_seconds = 0.0
    config.pipeline.pace_seconds = 0.0
    config.pipeline.page_delay_seconds = 0.0
    config.pipeline.retry_initial_seconds = 0.01
    config.pipeline.retry_max_seconds = 0.04
    return config


@pytest.fixture
def timings():
    return PipelineTimings(stagger=0.0, pace=0.0, page_delay=0.0, retry_initial=0.01, retry_max=0.04)


@pytest.fixture
def mail_state(transport, store, fast_config, sample_account):
    state = MailState(transport, store, fast_config)
    state.add_account(sample_account)
    state.set_active(sample_account.id)
    return state

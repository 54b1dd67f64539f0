# =============================================================================
# Thread Builder
# =============================================================================
# Reconstructs conversation threads from a flat list of headers.
#
# Root resolution (a simplified ancestor chain, not full JWZ threading):
#   1. The oldest entry of References, if present.
#   2. Else walk In-Reply-To through parents we have locally; a parent we
#      don't have ends the walk and its Message-ID is the root.
#   3. Else the message is its own root.
#
# Orphan merge: a thread of one message with no threading headers at all
# is attached to the first thread with the same normalised subject. Many
# clients (and most phones) drop References, so "Re: lunch" would otherwise
# stand alone.
# =============================================================================

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from mailmirror.core import MessageHeader


NO_SUBJECT = "(No subject)"

_REPLY_PREFIX = re.compile(r"^(?:re|fwd?|re\[\d+\])\s*:\s*", re.IGNORECASE)


def normalize_subject(subject: str | None) -> str:
    """
    Strip reply/forward prefixes (Re:, Fwd:, FW:, Re[2]:) until none remain.

    Empty subjects normalise to "(No subject)". Idempotent.

        >>> normalize_subject("RE: Fwd: re[3]: Lunch")
        'Lunch'
    """
    current = (subject or "").strip()
    while True:
        stripped = _REPLY_PREFIX.sub("", current, count=1).strip()
        if stripped == current:
            break
        current = stripped
    return current or NO_SUBJECT


def thread_key(header: MessageHeader) -> str:
    """Identifier of a message for threading: Message-ID, or a UID key."""
    return header.message_id or f"uid:{header.mailbox}:{header.uid}"


@dataclass
class Thread:
    """
    A conversation.

    Attributes:
        thread_id: Root Message-ID (or UID key for an id-less root).
        messages: Messages sorted oldest first.
        subject: Normalised subject of the oldest message.
        original_subject: Subject of the oldest message as sent.
        start_date: Date of the oldest dated message.
        end_date: Date of the newest dated message.
        participants: Unique lowercased addresses, in order of appearance.
        unread_count: Messages without \\Seen.
    """
    thread_id: str
    messages: list[MessageHeader] = field(default_factory=list)
    subject: str = NO_SUBJECT
    original_subject: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None
    participants: list[str] = field(default_factory=list)
    unread_count: int = 0

    @property
    def latest(self) -> MessageHeader | None:
        return self.messages[-1] if self.messages else None

    @property
    def is_orphan(self) -> bool:
        """A single message with no reply-chain headers."""
        return len(self.messages) == 1 and not self.messages[0].has_threading_headers

    def __len__(self) -> int:
        return len(self.messages)


def resolve_root(header: MessageHeader, by_id: dict[str, MessageHeader]) -> str:
    """Resolve the thread root for one message."""
    if header.references:
        return header.references[0]

    current = header
    seen = {thread_key(header)}
    while current.in_reply_to:
        parent = by_id.get(current.in_reply_to)
        if parent is None or parent.message_id in seen:
            return current.in_reply_to
        if parent.references:
            return parent.references[0]
        seen.add(parent.message_id)
        current = parent

    return thread_key(current)


def build_threads(headers: Iterable[MessageHeader]) -> list[Thread]:
    """
    Group headers into threads, newest conversation first.

    Args:
        headers: Any mix of headers (bodies work too); duplicates by
                 Message-ID collapse onto the first seen.

    Returns:
        Threads sorted by their latest message date, descending.
    """
    headers = list(headers)
    by_id: dict[str, MessageHeader] = {}
    for header in headers:
        if header.message_id and header.message_id not in by_id:
            by_id[header.message_id] = header

    groups: dict[str, list[MessageHeader]] = {}
    for header in headers:
        groups.setdefault(resolve_root(header, by_id), []).append(header)

    threads = [_make_thread(root, messages) for root, messages in groups.items()]
    threads = _merge_orphans(threads)
    threads.sort(key=lambda t: t.latest.sort_date, reverse=True)
    return threads


def _merge_orphans(threads: list[Thread]) -> list[Thread]:
    """
    Attach orphan threads to the first thread sharing their subject.

    Threaded conversations claim subjects first; an orphan with no match
    stays on its own and can then absorb later orphans with its subject.
    """
    by_subject: dict[str, Thread] = {}
    for thread in threads:
        if not thread.is_orphan:
            by_subject.setdefault(thread.subject, thread)

    result: list[Thread] = []
    for thread in threads:
        if not thread.is_orphan:
            result.append(thread)
            continue
        target = by_subject.get(thread.subject)
        if target is None:
            by_subject[thread.subject] = thread
            result.append(thread)
        else:
            _absorb(target, thread.messages)

    return result


def _make_thread(thread_id: str, messages: list[MessageHeader]) -> Thread:
    thread = Thread(thread_id=thread_id)
    _absorb(thread, messages)
    return thread


def _absorb(thread: Thread, messages: list[MessageHeader]) -> None:
    """Add messages to a thread and recompute its summary fields."""
    thread.messages = sorted([*thread.messages, *messages], key=lambda m: m.sort_date)

    oldest = thread.messages[0]
    thread.original_subject = oldest.subject
    thread.subject = normalize_subject(oldest.subject)

    dates = [m.date for m in thread.messages if m.date is not None]
    thread.start_date = min(dates) if dates else None
    thread.end_date = max(dates) if dates else None

    participants: list[str] = []
    for message in thread.messages:
        addresses = [message.from_, *message.to, *message.cc]
        for address in addresses:
            if address is None or not address.address:
                continue
            lowered = address.address.lower()
            if lowered not in participants:
                participants.append(lowered)
    thread.participants = participants
    thread.unread_count = sum(1 for m in thread.messages if not m.is_seen)

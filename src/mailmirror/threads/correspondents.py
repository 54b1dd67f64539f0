# =============================================================================
# Correspondent Grouping
# =============================================================================
# The chat view lists people, not threads. Every message belongs to exactly
# one "correspondent": the other party of the exchange.
#
#   - Sent by the account's own address: the first "To" recipient.
#   - Anything else: the sender.
#
# Groups are keyed by lowercased address. A message with no usable address
# (e.g. a draft with no recipient) belongs to no group.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, NamedTuple

from mailmirror.core import MessageHeader
from mailmirror.threads.builder import NO_SUBJECT, normalize_subject
from mailmirror.threads.text import get_preview


_NO_DATE = datetime.min.replace(tzinfo=timezone.utc)


class CorrespondentRef(NamedTuple):
    """Who a single message is "with"."""
    email: str
    name: str


@dataclass
class LastMessage:
    """Summary of the most recent message in a conversation."""
    subject: str
    preview: str
    date: datetime | None


@dataclass
class Correspondent:
    """
    One person's conversation with the account owner.

    Attributes:
        email: Lowercased address (the group key).
        name: Best display name seen so far.
        emails: Messages, oldest first.
        unread_count: Messages without \\Seen.
        last_message: Summary of the newest message.
    """
    email: str
    name: str
    emails: list[MessageHeader] = field(default_factory=list)
    unread_count: int = 0
    last_message: LastMessage | None = None


@dataclass
class Topic:
    """Messages of one conversation sharing a normalised subject."""
    subject: str
    original_subject: str
    emails: list[MessageHeader] = field(default_factory=list)
    start: datetime | None = None
    end: datetime | None = None


def get_correspondent(message: MessageHeader, user_email: str) -> CorrespondentRef:
    """
    Return the other party of a message.

    Names fall back to the address, then to "Unknown".
    """
    from_address = message.from_.address.lower() if message.from_ and message.from_.address else ""

    if from_address == (user_email or "").lower():
        recipient = message.to[0] if message.to else None
        if recipient is None:
            return CorrespondentRef(email="", name="Unknown")
        return CorrespondentRef(
            email=recipient.address.lower(),
            name=recipient.name or recipient.address or "Unknown",
        )

    return CorrespondentRef(
        email=from_address,
        name=(message.from_.name or message.from_.address) if message.from_ else "Unknown",
    )


def is_from_user(message: MessageHeader, user_email: str) -> bool:
    if not message.from_:
        return False
    return message.from_.address.lower() == (user_email or "").lower()


def group_by_correspondent(
    messages: Iterable[MessageHeader],
    user_email: str,
) -> dict[str, Correspondent]:
    """
    Partition messages by correspondent.

    Every message with a non-empty correspondent address lands in exactly
    one group. Groups keep first-seen order; messages inside a group are
    sorted oldest first for display as a chat.
    """
    groups: dict[str, Correspondent] = {}

    for message in messages:
        ref = get_correspondent(message, user_email)
        if not ref.email:
            continue

        group = groups.get(ref.email)
        if group is None:
            group = groups[ref.email] = Correspondent(email=ref.email, name=ref.name)

        group.emails.append(message)

        # Prefer a human name over an address-as-name
        if ref.name and "@" not in ref.name and "@" in group.name:
            group.name = ref.name

        if not message.is_seen:
            group.unread_count += 1

        last = group.last_message
        if last is None or message.sort_date > (last.date or _NO_DATE):
            group.last_message = LastMessage(
                subject=message.subject or NO_SUBJECT,
                preview=get_preview(message),
                date=message.date,
            )

    for group in groups.values():
        group.emails.sort(key=lambda m: m.sort_date)

    return groups


def group_by_topic(messages: Iterable[MessageHeader]) -> dict[str, Topic]:
    """
    Split one conversation into topics by normalised subject.

    Each topic's messages are sorted oldest first and carry the date range
    they span.
    """
    topics: dict[str, Topic] = {}

    for message in messages:
        subject = normalize_subject(message.subject)
        topic = topics.get(subject)
        if topic is None:
            topic = topics[subject] = Topic(
                subject=subject,
                original_subject=message.subject or NO_SUBJECT,
            )
        topic.emails.append(message)

        if message.date is not None:
            if topic.start is None or message.date < topic.start:
                topic.start = message.date
            if topic.end is None or message.date > topic.end:
                topic.end = message.date

    for topic in topics.values():
        topic.emails.sort(key=lambda m: m.sort_date)

    return topics

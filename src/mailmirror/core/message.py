# =============================================================================
# Message Models
# =============================================================================
# Two shapes of the same email:
#
#   MessageHeader - what the list view needs: UID, threading headers
#                   (Message-ID, In-Reply-To, References), envelope, flags,
#                   and the message's position in the server's ordering.
#   MessageBody   - a "hydrated" header: everything above plus text/HTML
#                   content, attachment metadata and (optionally) raw bytes.
#
# Hydrating a header into a body is the core caching operation of the sync
# engine. Collaborators (transport, persistence) hand us plain dicts; those
# are validated once here via from_dict() so the rest of the engine can rely
# on well-typed data.
#
# UIDs are mailbox-scoped: a UID is only meaningful together with its
# account and mailbox.
# =============================================================================

import email.utils
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


SEEN_FLAG = "\\Seen"


@dataclass(frozen=True)
class Address:
    """An email address with an optional display name."""
    address: str
    name: str = ""

    @property
    def display(self) -> str:
        """Prefers the display name, falls back to the address."""
        return self.name or self.address

    def to_dict(self) -> dict[str, str]:
        return {"address": self.address, "name": self.name}

    @classmethod
    def from_value(cls, value: Any) -> "Address | None":
        """
        Build an Address from a collaborator value.

        Accepts {"address": ..., "name": ...} dicts (the key "email" is also
        understood), or an RFC 5322 string like 'Jane <jane@example.com>'.
        """
        if value is None:
            return None
        if isinstance(value, Address):
            return value
        if isinstance(value, str):
            name, addr = email.utils.parseaddr(value)
            return cls(address=addr, name=name) if addr else None
        if isinstance(value, dict):
            addr = value.get("address") or value.get("email") or ""
            return cls(address=addr, name=value.get("name") or "")
        raise MessageValidationError(f"Invalid address value: {value!r}")


@dataclass
class AttachmentInfo:
    """Metadata for one attachment. The data itself stays on disk."""
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    content_id: str | None = None
    is_inline: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
            "content_id": self.content_id,
            "is_inline": self.is_inline,
        }


@dataclass
class MessageHeader:
    """
    Header-level view of a message, sufficient for list display and
    threading.

    Attributes:
        uid: IMAP UID, unique only within (account, mailbox).
        message_id: RFC 5322 Message-ID.
        in_reply_to: Message-ID of the direct parent, if any.
        references: Ancestor Message-IDs, oldest first.
        from_: Sender address.
        to: "To" recipients.
        cc: "CC" recipients.
        subject: Subject line as sent.
        date: Date header, normalised to UTC.
        flags: IMAP flag strings (e.g. "\\Seen").
        has_attachments: Whether the message has non-inline attachments.
                         Header listings can get this wrong; the body fetch
                         corrects it.
        display_index: Position in the server's current ordering (0 = newest).
        mailbox: The mailbox this header was listed from.
    """
    uid: int
    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)
    from_: Address | None = None
    to: list[Address] = field(default_factory=list)
    cc: list[Address] = field(default_factory=list)
    subject: str = ""
    date: datetime | None = None
    flags: set[str] = field(default_factory=set)
    has_attachments: bool = False
    display_index: int | None = None
    mailbox: str = ""

    @property
    def is_seen(self) -> bool:
        return SEEN_FLAG in self.flags

    @property
    def has_threading_headers(self) -> bool:
        """True if the message carries any RFC reply-chain header."""
        return bool(self.in_reply_to or self.references)

    @property
    def sort_date(self) -> datetime:
        """Date used for ordering; undated messages sort first."""
        return self.date or datetime.min.replace(tzinfo=timezone.utc)

    # -------------------------------------------------------------------------
    # Serialisation
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "message_id": self.message_id,
            "in_reply_to": self.in_reply_to,
            "references": list(self.references),
            "from": self.from_.to_dict() if self.from_ else None,
            "to": [a.to_dict() for a in self.to],
            "cc": [a.to_dict() for a in self.cc],
            "subject": self.subject,
            "date": self.date.isoformat() if self.date else None,
            "flags": sorted(self.flags),
            "has_attachments": self.has_attachments,
            "display_index": self.display_index,
            "mailbox": self.mailbox,
        }

    @classmethod
    def _header_kwargs(cls, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise MessageValidationError(f"Expected a mapping, got {type(data).__name__}")

        try:
            uid = int(data["uid"])
        except (KeyError, TypeError, ValueError) as e:
            raise MessageValidationError(f"Message without a valid UID: {data.get('uid')!r}") from e
        if uid <= 0:
            raise MessageValidationError(f"UID must be positive, got {uid}")

        references = data.get("references") or []
        if isinstance(references, str):
            references = references.split()

        display_index = data.get("display_index", data.get("displayIndex"))

        return {
            "uid": uid,
            "message_id": (data.get("message_id") or data.get("messageId") or "").strip(),
            "in_reply_to": (data.get("in_reply_to") or data.get("inReplyTo") or "").strip(),
            "references": [r.strip() for r in references if r and r.strip()],
            "from_": Address.from_value(data.get("from")),
            "to": _address_list(data.get("to")),
            "cc": _address_list(data.get("cc")),
            "subject": data.get("subject") or "",
            "date": parse_date(data.get("date") or data.get("internal_date")),
            "flags": set(data.get("flags") or ()),
            "has_attachments": bool(data.get("has_attachments", data.get("hasAttachments", False))),
            "display_index": int(display_index) if display_index is not None else None,
            "mailbox": data.get("mailbox") or "",
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageHeader":
        """
        Validate a collaborator payload into a MessageHeader.

        Raises:
            MessageValidationError: If the payload has no usable UID or a
                                    malformed field.
        """
        return cls(**cls._header_kwargs(data))

    def __str__(self) -> str:
        read_marker = " " if self.is_seen else "*"
        sender = self.from_.display if self.from_ else "(unknown)"
        return f"{read_marker} {sender}: {self.subject}"


@dataclass
class MessageBody(MessageHeader):
    """
    A fully hydrated message: the header plus its content.

    Attributes:
        text: Plain text body.
        html: HTML body.
        attachments: Attachment metadata.
        raw: Raw RFC 822 source. Only present for full fetches; light
             fetches leave it empty to keep memory use down.
    """
    text: str = ""
    html: str = ""
    attachments: list[AttachmentInfo] = field(default_factory=list)
    raw: bytes | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "text": self.text,
            "html": self.html,
            "attachments": [a.to_dict() for a in self.attachments],
            "raw_size": len(self.raw) if self.raw else 0,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageBody":
        kwargs = cls._header_kwargs(data)
        attachments = [
            AttachmentInfo(
                filename=a.get("filename") or "attachment",
                content_type=a.get("content_type") or a.get("contentType") or "application/octet-stream",
                size=int(a.get("size") or 0),
                content_id=a.get("content_id") or a.get("contentId"),
                is_inline=bool(a.get("is_inline", False)),
            )
            for a in data.get("attachments") or ()
        ]
        raw = data.get("raw")
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        kwargs.update(
            text=data.get("text") or "",
            html=data.get("html") or "",
            attachments=attachments,
            raw=raw,
        )
        if attachments and not kwargs["has_attachments"]:
            kwargs["has_attachments"] = any(not a.is_inline for a in attachments)
        return cls(**kwargs)

    def estimated_size(self) -> int:
        """
        Estimate how much memory this body takes, in bytes.

        Uses the length of its JSON serialisation plus any raw source.
        """
        size = len(json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8"))
        if self.raw:
            size += len(self.raw)
        return size


def parse_date(value: Any) -> datetime | None:
    """
    Parse a date from a collaborator payload and normalise it to UTC.

    Accepts datetimes, ISO 8601 strings and RFC 2822 date strings. Naive
    values are assumed to be UTC. Unparseable values yield None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            try:
                parsed = email.utils.parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
    else:
        raise MessageValidationError(f"Invalid date value: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _address_list(value: Any) -> list[Address]:
    if not value:
        return []
    if isinstance(value, (str, dict, Address)):
        value = [value]
    addresses = [Address.from_value(v) for v in value]
    return [a for a in addresses if a is not None]


# =============================================================================
# Exceptions
# =============================================================================

class MessageValidationError(ValueError):
    """Raised when a collaborator payload can't be turned into a message."""
    pass

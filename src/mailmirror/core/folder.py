# =============================================================================
# Mailbox Model
# =============================================================================
# Represents a server mailbox (IMAP "folder") and the tree they form.
#
# The sync engine mostly cares about two mailboxes per account:
#   - the active mailbox (usually INBOX), mirrored in full
#   - the Sent mailbox, whose headers are merged into the chat view so a
#     conversation shows both sides
#
# Servers name the Sent mailbox differently ("Sent", "Sent Items",
# "[Gmail]/Sent Mail", ...), so we resolve it by SPECIAL-USE flag first and
# by well-known names second.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterator


class FolderType(Enum):
    """
    Standard mailbox roles. These map to IMAP SPECIAL-USE attributes
    (RFC 6154) when available, or are inferred from common names.
    """
    INBOX = auto()
    SENT = auto()
    DRAFTS = auto()
    TRASH = auto()
    JUNK = auto()
    ARCHIVE = auto()
    OTHER = auto()


_SPECIAL_USE = {
    "\\SENT": FolderType.SENT,
    "\\DRAFTS": FolderType.DRAFTS,
    "\\TRASH": FolderType.TRASH,
    "\\JUNK": FolderType.JUNK,
    "\\ARCHIVE": FolderType.ARCHIVE,
    "\\ALL": FolderType.ARCHIVE,
}

_WELL_KNOWN_NAMES = {
    FolderType.SENT: ("sent", "sent mail", "sent items", "sent messages", "[gmail]/sent mail"),
    FolderType.DRAFTS: ("drafts", "draft", "[gmail]/drafts"),
    FolderType.TRASH: ("trash", "deleted", "deleted items", "[gmail]/trash"),
    FolderType.JUNK: ("junk", "spam", "junk mail", "[gmail]/spam"),
    FolderType.ARCHIVE: ("archive", "all mail", "[gmail]/all mail"),
}


@dataclass
class Mailbox:
    """
    A mailbox in an account's mailbox tree.

    Attributes:
        name: Full path of the mailbox as the server knows it
              (e.g. "INBOX", "Work/Projects").
        delimiter: Hierarchy delimiter ("/" or ".").
        folder_type: Semantic role of this mailbox.
        flags: Raw LIST attributes (e.g. "\\HasNoChildren", "\\Sent").
        children: Sub-mailboxes.
    """
    name: str
    delimiter: str = "/"
    folder_type: FolderType = FolderType.OTHER
    flags: list[str] = field(default_factory=list)
    children: list["Mailbox"] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        """The last path component, e.g. "Alpha" for "Work/Projects/Alpha"."""
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[1]
        return self.name

    @property
    def parent_path(self) -> str | None:
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[0]
        return None

    def walk(self) -> Iterator["Mailbox"]:
        """Yield this mailbox and all its descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    @classmethod
    def detect_type(cls, name: str, flags: list[str] | None = None) -> FolderType:
        """
        Detect a mailbox's role from its SPECIAL-USE flags or its name.

        Args:
            name: Full mailbox name.
            flags: LIST attributes, if known.

        Returns:
            The detected FolderType, or OTHER if unrecognised.
        """
        if name.upper() == "INBOX":
            return FolderType.INBOX

        for flag in flags or ():
            folder_type = _SPECIAL_USE.get(flag.upper())
            if folder_type:
                return folder_type

        name_lower = name.lower()
        leaf = name_lower.rsplit("/", 1)[-1].rsplit(".", 1)[-1]
        for folder_type, names in _WELL_KNOWN_NAMES.items():
            if name_lower in names or leaf in names:
                return folder_type

        return FolderType.OTHER

    def __str__(self) -> str:
        return self.name


def build_tree(mailboxes: list[Mailbox]) -> list[Mailbox]:
    """
    Arrange a flat LIST result into a tree using each mailbox's delimiter.

    Mailboxes whose parent isn't in the list stay at the top level.
    """
    by_name = {m.name: m for m in mailboxes}
    roots: list[Mailbox] = []
    for mailbox in mailboxes:
        parent = by_name.get(mailbox.parent_path) if mailbox.parent_path else None
        if parent is not None and parent is not mailbox:
            parent.children.append(mailbox)
        else:
            roots.append(mailbox)
    return roots


def flatten(tree: list[Mailbox]) -> list[Mailbox]:
    """Return every mailbox in a tree as a flat list."""
    return [m for root in tree for m in root.walk()]


def find_by_type(tree: list[Mailbox], folder_type: FolderType) -> Mailbox | None:
    """Return the first mailbox of the given role, or None."""
    for mailbox in flatten(tree):
        if mailbox.folder_type == folder_type:
            return mailbox
    return None

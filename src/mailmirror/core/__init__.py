# =============================================================================
# Mailmirror Core Module
# =============================================================================
# Domain models and collaborator contracts. Pure Python dataclasses and
# Protocols with no external dependencies, so they can be imported anywhere
# without circular imports.
#
#   - Account: a mail account and its (opaque) credentials
#   - Mailbox: a server mailbox and the tree they form
#   - MessageHeader / MessageBody: list-level and hydrated message views
#   - MailTransport / MailStore / TokenRefresher: what the engine consumes
# =============================================================================

from mailmirror.core.account import Account, has_valid_credentials
from mailmirror.core.folder import FolderType, Mailbox, build_tree, find_by_type, flatten
from mailmirror.core.message import (
    Address,
    AttachmentInfo,
    MessageBody,
    MessageHeader,
    MessageValidationError,
    SEEN_FLAG,
    parse_date,
)
from mailmirror.core.protocols import (
    CachedHeaders,
    ConnectivityProbe,
    HeaderPage,
    MailStore,
    MailTransport,
    RangePage,
    TokenRefresher,
)

__all__ = [
    "Account",
    "has_valid_credentials",
    "FolderType",
    "Mailbox",
    "build_tree",
    "find_by_type",
    "flatten",
    "Address",
    "AttachmentInfo",
    "MessageBody",
    "MessageHeader",
    "MessageValidationError",
    "SEEN_FLAG",
    "parse_date",
    "CachedHeaders",
    "ConnectivityProbe",
    "HeaderPage",
    "MailStore",
    "MailTransport",
    "RangePage",
    "TokenRefresher",
]

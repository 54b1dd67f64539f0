# =============================================================================
# Sync Errors
# =============================================================================
# Error taxonomy for the sync engine.
#
#   - Transient network/server errors on a single fetch are retried by the
#     pipeline and never surface as hard failures.
#   - Credential errors stop content caching and are reported upward as
#     their own kind, so the UI can prompt for re-authentication instead of
#     showing "offline".
#   - Mailbox mutation and destroyed-during-operation are not errors at all.
#
# classify_error() turns any exception into an ErrorKind for the UI.
# =============================================================================

from enum import Enum

from mailmirror.imap.client import IMAPAuthenticationError, IMAPConnectionError


class ErrorKind(Enum):
    """How the UI should present a reported failure."""
    CREDENTIALS = "credentials"     # Prompt for password / re-auth
    OFFLINE = "offline"             # Network unreachable; show cached mail
    SERVER = "server"               # Anything else the server threw at us


_CREDENTIAL_HINTS = ("password", "authentication", "authenticate", "credentials", "login failed", "oauth")
_OFFLINE_HINTS = (
    "network", "timeout", "timed out", "unreachable", "enotfound",
    "econnrefused", "connection refused", "name or service not known",
)


def classify_error(error: BaseException) -> ErrorKind:
    """
    Decide which kind of failure an exception represents.

    Exception types are checked first; for anything else we fall back to
    keywords in the message, since transports wrap errors inconsistently.
    """
    if isinstance(error, (CredentialsError, IMAPAuthenticationError)):
        return ErrorKind.CREDENTIALS
    if isinstance(error, (IMAPConnectionError, ConnectionError, TimeoutError)):
        return ErrorKind.OFFLINE

    message = str(error).lower()
    if any(hint in message for hint in _CREDENTIAL_HINTS):
        return ErrorKind.CREDENTIALS
    if any(hint in message for hint in _OFFLINE_HINTS):
        return ErrorKind.OFFLINE
    return ErrorKind.SERVER


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base exception for sync engine failures."""
    pass


class CredentialsError(SyncError):
    """Raised when an account has no usable password or token."""
    pass


class MailboxResolutionError(SyncError):
    """Raised when a required mailbox can't be found on the server."""
    pass

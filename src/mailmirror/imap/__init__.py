# =============================================================================
# IMAP Module
# =============================================================================
# Production transport for the sync engine.
#
# Components:
#   - IMAPClient: one aioimaplib connection with auth and FETCH parsing
#   - IMAPTransport: the MailTransport implementation used by pipelines
# =============================================================================

from mailmirror.imap.client import (
    IMAPAuthenticationError,
    IMAPClient,
    IMAPConnectionError,
    IMAPError,
)
from mailmirror.imap.transport import IMAPTransport

__all__ = [
    "IMAPAuthenticationError",
    "IMAPClient",
    "IMAPConnectionError",
    "IMAPError",
    "IMAPTransport",
]

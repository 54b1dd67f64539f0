# =============================================================================
# Storage Module
# =============================================================================
# Handles persistent storage using SQLite.
#
# Provides:
#   - Database initialization and schema versioning
#   - The MailStore implementation (header lists, saved bodies, archive flags)
#   - Async operations via aiosqlite
#
# The database lives in the XDG data directory (~/.local/share/mailmirror/).
# =============================================================================

from mailmirror.storage.database import Database
from mailmirror.storage.repository import Repository

__all__ = ["Database", "Repository"]

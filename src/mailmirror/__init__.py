# =============================================================================
# Mailmirror: Sync and Caching Engine for a Local-First Mail Client
# =============================================================================
#
# Mailmirror keeps a local copy of your mail so the client reads from disk
# and memory, not from the server:
#
#   - Per-account pipelines: header paging, then concurrent body caching
#   - Active account first, other accounts cascade in the background
#   - Sparse, range-loaded mailbox indexes for virtual scrolling
#   - Bounded in-memory LRU of hydrated messages
#   - Threads and a per-correspondent "chat" view built from headers
#   - Pause/resume on connectivity changes
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailmirror"


# Main entry point - this is what gets called by the "mailmirror" command
from mailmirror.app import main  # noqa: E402


__all__ = ["main", "__version__", "__app_name__"]

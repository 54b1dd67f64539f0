# =============================================================================
# Sync Module
# =============================================================================
# Background sync engine:
#   - AccountPipeline: header paging and concurrent body caching per account
#   - PipelineManager: active account first, then a sequential cascade
#   - ConnectivityMonitor: pauses / resumes everything on network changes
# =============================================================================

from mailmirror.sync.connectivity import ConnectivityMonitor, TcpProbe
from mailmirror.sync.errors import (
    CredentialsError,
    ErrorKind,
    MailboxResolutionError,
    SyncError,
    classify_error,
)
from mailmirror.sync.manager import PipelineManager, SyncFailure
from mailmirror.sync.pipeline import (
    AccountPipeline,
    PipelinePhase,
    PipelineState,
    PipelineTimings,
    ensure_fresh_token,
)

__all__ = [
    "ConnectivityMonitor",
    "TcpProbe",
    "CredentialsError",
    "ErrorKind",
    "MailboxResolutionError",
    "SyncError",
    "classify_error",
    "PipelineManager",
    "SyncFailure",
    "AccountPipeline",
    "PipelinePhase",
    "PipelineState",
    "PipelineTimings",
    "ensure_fresh_token",
]

# =============================================================================
# Index Module
# =============================================================================
# Sparse, range-addressable mailbox index used for virtualized scrolling.
# =============================================================================

from mailmirror.index.sparse import LoadedRange, SparseMailboxIndex, merge_ranges, subtract_range

__all__ = ["LoadedRange", "SparseMailboxIndex", "merge_ranges", "subtract_range"]

# =============================================================================
# Email Cache
# =============================================================================
# Bounded in-memory cache of hydrated message bodies, evicted by recency.
#
# Keys are (account id, mailbox, uid) because UIDs are only unique within a
# mailbox. Each entry remembers an estimated size (serialised byte length)
# and a logical access tick. The cache is kept in access order, so the
# least-recently-used entry is always at the front.
#
# Invariant: with a limit > 0, the total size never exceeds the limit after
# add() returns. Eviction and insertion happen in one synchronous step, so
# no coroutine can observe a transiently over-limit cache.
# =============================================================================

import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterator, NamedTuple

from mailmirror.core import MessageBody


logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class CacheKey(NamedTuple):
    """Identifies one message across all accounts and mailboxes."""
    account_id: str
    mailbox: str
    uid: int

    def __str__(self) -> str:
        return f"{self.account_id}-{self.mailbox}-{self.uid}"


@dataclass
class CacheEntry:
    """
    A cached body plus bookkeeping.

    Attributes:
        body: The hydrated message.
        size_bytes: Estimated size of the body.
        last_access: Logical access tick; strictly increases on every hit.
        accessed_at: Wall-clock time of the last access (for display/debug).
    """
    body: MessageBody
    size_bytes: int
    last_access: int
    accessed_at: float

    @property
    def size_mb(self) -> float:
        return self.size_bytes / BYTES_PER_MB


class EmailCache:
    """
    LRU cache from CacheKey to MessageBody with a size limit in megabytes.

    Usage:
        >>> cache = EmailCache()
        >>> cache.add(CacheKey("work", "INBOX", 42), body, limit_mb=128)
        >>> cache.get(CacheKey("work", "INBOX", 42))
    """

    def __init__(self) -> None:
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._total_bytes = 0
        self._ticks = itertools.count(1)

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def add(self, key: CacheKey, body: MessageBody, limit_mb: float) -> bool:
        """
        Insert (or replace) a body, evicting least-recently-used entries
        until it fits.

        Args:
            key: Cache key for the body.
            body: The hydrated message.
            limit_mb: Size limit in megabytes. 0 means unlimited.

        Returns:
            True if the body was cached. A body larger than the whole limit
            is not cached, and nothing is evicted for it.
        """
        size = body.estimated_size()
        limit_bytes = limit_mb * BYTES_PER_MB if limit_mb > 0 else 0

        if limit_bytes and size > limit_bytes:
            logger.debug(f"Not caching {key}: {size} bytes exceeds the {limit_mb} MB limit")
            return False

        # Replacing an entry frees its old size first
        previous = self._entries.pop(key, None)
        if previous is not None:
            self._total_bytes -= previous.size_bytes

        if limit_bytes:
            evicted = 0
            while self._entries and self._total_bytes + size > limit_bytes:
                _, oldest = self._entries.popitem(last=False)
                self._total_bytes -= oldest.size_bytes
                evicted += 1
            if evicted:
                logger.debug(f"Evicted {evicted} cached emails to fit {key}")

        self._entries[key] = CacheEntry(
            body=body,
            size_bytes=size,
            last_access=next(self._ticks),
            accessed_at=time.time(),
        )
        self._total_bytes += size
        return True

    def get(self, key: CacheKey) -> MessageBody | None:
        """
        Look up a body. A hit refreshes the entry's recency; a miss changes
        nothing.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.last_access = next(self._ticks)
        entry.accessed_at = time.time()
        self._entries.move_to_end(key)
        return entry.body

    def peek(self, key: CacheKey) -> CacheEntry | None:
        """Return the raw entry without touching its recency."""
        return self._entries.get(key)

    def remove(self, key: CacheKey) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._total_bytes -= entry.size_bytes
        return True

    def drop_account(self, account_id: str) -> int:
        """Remove every entry belonging to an account. Returns the count."""
        keys = [k for k in self._entries if k.account_id == account_id]
        for key in keys:
            self.remove(key)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._total_bytes = 0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def total_size_bytes(self) -> int:
        return self._total_bytes

    @property
    def total_size_mb(self) -> float:
        return self._total_bytes / BYTES_PER_MB

    def keys(self) -> list[CacheKey]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def keys_for_account(self, account_id: str) -> list[CacheKey]:
        return [k for k in self._entries if k.account_id == account_id]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CacheKey]:
        return iter(list(self._entries))

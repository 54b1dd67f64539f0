# =============================================================================
# Sparse Mailbox Index
# =============================================================================
# A virtualized, range-addressable view of one mailbox's headers.
#
# The UI scrolls over "the whole mailbox as the server sees it" without us
# having every header loaded. Headers live in a sparse map keyed by display
# index (0 = newest), and loaded_ranges records which [start, end) intervals
# are known to be populated. Ranges are kept sorted, disjoint and merged.
#
# Correctness under concurrent mutation:
#   - Every range/page fetch returns the server's current message count. If
#     it differs from the count we had before the fetch, another client
#     added or removed mail and all index-based assumptions are void. We
#     discard the result and run a full reload instead of merging stale
#     indices.
#   - A full reload validates cached UIDs against page 1. If the server's
#     total shrank, cached UIDs in the page-1 overlap window that the server
#     no longer returns are purged. UIDs outside that window can't be
#     verified cheaply and are left alone until their own range loads.
#   - UIDs the transport couldn't parse (skipped_uids) are re-requested
#     after a delay rather than silently dropped.
# =============================================================================

import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Callable

from mailmirror.core import (
    Account,
    MailStore,
    MailTransport,
    MessageHeader,
    has_valid_credentials,
)
from mailmirror.scheduler import RetryBackoff, Scheduler


logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class LoadedRange:
    """A half-open interval [start, end) of populated display indices."""
    start: int
    end: int

    def covers(self, start: int, end: int) -> bool:
        return self.start <= start and self.end >= end

    def __contains__(self, index: int) -> bool:
        return self.start <= index < self.end

    def __len__(self) -> int:
        return max(0, self.end - self.start)


def merge_ranges(ranges: list[LoadedRange]) -> list[LoadedRange]:
    """
    Sort ranges by start and coalesce overlapping or touching intervals.

    The result is the minimal set of disjoint, maximally merged ranges:
        [0,50) + [50,100) + [120,150)  ->  [0,100), [120,150)
    """
    merged: list[LoadedRange] = []
    for current in sorted(r for r in ranges if r.end > r.start):
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = LoadedRange(last.start, max(last.end, current.end))
        else:
            merged.append(current)
    return merged


def subtract_range(ranges: list[LoadedRange], start: int, end: int) -> list[LoadedRange]:
    """Remove [start, end) from a list of ranges, splitting where needed."""
    result: list[LoadedRange] = []
    for r in ranges:
        if r.end <= start or r.start >= end:
            result.append(r)
            continue
        if r.start < start:
            result.append(LoadedRange(r.start, start))
        if r.end > end:
            result.append(LoadedRange(end, r.end))
    return merge_ranges(result)


AccountProvider = Callable[[], Account | None]
OnlineCheck = Callable[[], bool]


class SparseMailboxIndex:
    """
    Range-addressable header index for one (account, mailbox).

    Usage:
        >>> index = SparseMailboxIndex(lambda: account, "INBOX", transport, store)
        >>> await index.reload()                # page 1, stale cleanup
        >>> await index.load_range(200, 250)    # virtual scroll
        >>> index.get_email_at_index(210)

    Attributes:
        mailbox: Mailbox this index mirrors.
        by_index: Sparse map of display index -> header.
        loaded_ranges: Populated intervals, sorted and merged.
        total: Server's message count as of the last accepted fetch.
        current_page: Last page fully merged by load_more().
        has_more: Whether load_more() has pages left.
        mutations_detected: How many times a fetch saw the total change.
    """

    def __init__(
        self,
        account_provider: AccountProvider,
        mailbox: str,
        transport: MailTransport,
        store: MailStore | None = None,
        *,
        page_size: int = 50,
        skipped_retry_delay: float = 5.0,
        page_delay: float = 1.0,
        retry_initial: float = 3.0,
        retry_max: float = 120.0,
        auto_paginate: bool = False,
        is_online: OnlineCheck | None = None,
    ) -> None:
        self._account_provider = account_provider
        self.mailbox = mailbox
        self.transport = transport
        self.store = store

        self.page_size = page_size
        self.skipped_retry_delay = skipped_retry_delay
        self.page_delay = page_delay
        self.auto_paginate = auto_paginate
        self._is_online = is_online or (lambda: True)
        self._retry_initial = retry_initial
        self._retry_max = retry_max

        self.by_index: dict[int, MessageHeader] = {}
        self.loaded_ranges: list[LoadedRange] = []
        self.total = 0
        self.current_page = 0
        self.has_more = False
        self.mutations_detected = 0

        self._loading_ranges: set[tuple[int, int]] = set()
        self._range_backoff: dict[tuple[int, int], RetryBackoff] = {}
        self._more_backoff = RetryBackoff(retry_initial, retry_max)
        self._loading_more = False
        self._paused_offline = False
        self._reloading = False
        self._generation = 0
        self._closed = False
        self._scheduler = Scheduler(name=f"index-{mailbox}")

    # =========================================================================
    # Read access
    # =========================================================================

    @property
    def account(self) -> Account | None:
        return self._account_provider()

    def emails(self) -> list[MessageHeader]:
        """All loaded headers ordered by display index."""
        return [self.by_index[i] for i in sorted(self.by_index)]

    def is_index_loaded(self, index: int) -> bool:
        return any(index in r for r in self.loaded_ranges)

    def is_range_loaded(self, start: int, end: int) -> bool:
        return any(r.covers(start, end) for r in self.loaded_ranges)

    def get_email_at_index(self, index: int) -> MessageHeader | None:
        return self.by_index.get(index)

    def find_uid(self, uid: int) -> MessageHeader | None:
        for header in self.by_index.values():
            if header.uid == uid:
                return header
        return None

    def uids(self) -> set[int]:
        return {h.uid for h in self.by_index.values()}

    def mark_has_attachments(self, uid: int, has_attachments: bool) -> bool:
        """
        Correct a header's attachment flag after its body was fetched.

        Returns:
            True if the header existed and its flag changed.
        """
        header = self.find_uid(uid)
        if header is None or header.has_attachments == has_attachments:
            return False
        header.has_attachments = has_attachments
        return True

    def remove_uids(self, uids: set[int]) -> int:
        """
        Drop headers for UIDs known to be gone (deleted or moved locally).

        Remaining headers keep their indices; the next reload reindexes.

        Returns:
            How many headers were removed.
        """
        doomed = [i for i, h in self.by_index.items() if h.uid in uids]
        for index in doomed:
            del self.by_index[index]
        return len(doomed)

    # =========================================================================
    # Seeding from the persisted header cache
    # =========================================================================

    def hydrate(self, headers: list[MessageHeader], total: int) -> None:
        """
        Seed the index from a persisted header list (newest first).

        Used at startup so the mailbox is browsable offline before any
        network round trip.
        """
        seeded = [
            dataclasses.replace(h, display_index=i, mailbox=h.mailbox or self.mailbox)
            for i, h in enumerate(headers)
        ]
        self._install(seeded, max(total, len(seeded)))
        logger.debug(f"Hydrated {self.mailbox} with {len(seeded)}/{total} cached headers")

    async def load_cached(self) -> bool:
        """Hydrate from the store, if it has headers for this mailbox."""
        account = self.account
        if self.store is None or account is None:
            return False
        cached = await self.store.get_email_headers(account.id, self.mailbox)
        if not cached or not cached.emails:
            return False
        self.hydrate(cached.emails, cached.total)
        return True

    # =========================================================================
    # Full reload
    # =========================================================================

    async def reload(self) -> bool:
        """
        Reload from page 1, purging stale cached UIDs and merging new mail
        ahead of what we already have.

        Returns:
            True if the reload ran, False if skipped (no credentials,
            closed, or another reload already in progress).
        """
        account = self.account
        if self._closed or self._reloading or not has_valid_credentials(account):
            return False

        self._reloading = True
        try:
            page = await self.transport.fetch_emails(account, self.mailbox, 1)
        finally:
            self._reloading = False

        if self._closed:
            return False

        existing = self.emails()
        existing_uids = {e.uid for e in existing}
        server_uids = {e.uid for e in page.emails}
        new_emails = [e for e in page.emails if e.uid not in existing_uids]
        logger.debug(
            f"Reload {self.mailbox}: server returned {len(page.emails)} "
            f"(total {page.total}), {len(new_emails)} not in cache"
        )

        # Stale UID cleanup: only the page-1 overlap window can be verified
        cleaned = existing
        if existing and page.total < len(existing):
            overlap = existing[:len(page.emails)]
            stale = {e.uid for e in overlap if e.uid not in server_uids}
            if stale:
                logger.info(f"Removing {len(stale)} stale UIDs from {self.mailbox} no longer on server")
                cleaned = [e for e in existing if e.uid not in stale]

        if cleaned and len(new_emails) < len(page.emails):
            merged = new_emails + cleaned
        else:
            merged = list(page.emails)

        headers = [
            dataclasses.replace(h, display_index=i, mailbox=h.mailbox or self.mailbox)
            for i, h in enumerate(merged)
        ]
        self._install(headers, page.total)
        await self._persist()

        if self.has_more and self.auto_paginate:
            self._scheduler.call_later(self.page_delay * 2, self.load_more)

        return True

    def _install(self, headers: list[MessageHeader], total: int) -> None:
        """Replace the whole index with a contiguous header list."""
        self._generation += 1
        self.by_index = {h.display_index: h for h in headers}
        self.loaded_ranges = [LoadedRange(0, len(headers))] if headers else []
        self.total = total
        self.current_page = math.ceil(len(headers) / self.page_size) or 1
        self.has_more = len(headers) < total
        self._loading_ranges.clear()

    # =========================================================================
    # Range loading (virtual scroll)
    # =========================================================================

    async def load_range(self, start: int, end: int) -> None:
        """
        Make sure display indices [start, end) are populated.

        No-op if the range is already loaded or already being fetched.
        Network failures retry the same range with exponential backoff.
        """
        if self._closed or end <= start or self.is_range_loaded(start, end):
            return

        key = (start, end)
        if key in self._loading_ranges:
            return

        account = self.account
        if not has_valid_credentials(account):
            return

        self._loading_ranges.add(key)
        generation = self._generation
        previous_total = self.total

        try:
            page = await self.transport.fetch_emails_range(account, self.mailbox, start, end)
        except Exception as e:
            self._loading_ranges.discard(key)
            if self._closed:
                return
            backoff = self._range_backoff.setdefault(
                key, RetryBackoff(self._retry_initial, self._retry_max)
            )
            delay = backoff.advance()
            logger.warning(f"Loading {self.mailbox} range {start}-{end} failed: {e}; retrying in {delay}s")
            self._scheduler.call_later(delay, self.load_range, start, end)
            return

        self._loading_ranges.discard(key)
        self._range_backoff.pop(key, None)
        if self._closed:
            return

        # Mailbox mutated while we were fetching: indices are stale
        if previous_total > 0 and page.total != previous_total:
            logger.warning(
                f"Mailbox {self.mailbox} total changed ({previous_total} -> {page.total}), restarting"
            )
            self.mutations_detected += 1
            await self.reload()
            return

        # A reload replaced the index while this fetch was in flight
        if generation != self._generation:
            logger.debug(f"Discarding stale range {start}-{end} for {self.mailbox}")
            return

        self.total = page.total
        if page.skipped_uids:
            logger.warning(
                f"{len(page.skipped_uids)} messages skipped in {self.mailbox} "
                f"range {start}-{end}, scheduling retry"
            )
            self._scheduler.call_later(self.skipped_retry_delay, self._retry_range, start, end)
        if not page.emails:
            return

        for offset, header in enumerate(page.emails):
            index = header.display_index if header.display_index is not None else start + offset
            self.by_index[index] = dataclasses.replace(
                header, display_index=index, mailbox=header.mailbox or self.mailbox
            )
        self.loaded_ranges = merge_ranges([*self.loaded_ranges, LoadedRange(start, end)])
        await self._persist()

    async def _retry_range(self, start: int, end: int) -> None:
        self.loaded_ranges = subtract_range(self.loaded_ranges, start, end)
        await self.load_range(start, end)

    # =========================================================================
    # Sequential pagination
    # =========================================================================

    async def load_more(self) -> None:
        """
        Fetch the next page after current_page and merge it.

        Skipped UIDs re-request the same page after a delay without
        advancing; failures retry with exponential backoff; while offline
        the pagination parks itself until resume() is called.
        """
        if self._closed or self._loading_more or not self.has_more:
            return

        account = self.account
        if not has_valid_credentials(account):
            return

        if not self._is_online():
            self._paused_offline = True
            logger.debug(f"Offline, pausing pagination of {self.mailbox}")
            return

        self._loading_more = True
        next_page = self.current_page + 1
        generation = self._generation
        previous_total = self.total

        try:
            page = await self.transport.fetch_emails(account, self.mailbox, next_page)
        except Exception as e:
            self._loading_more = False
            if self._closed or not self.has_more:
                return
            delay = self._more_backoff.advance()
            logger.warning(f"Loading page {next_page} of {self.mailbox} failed: {e}; retrying in {delay}s")
            self._scheduler.call_later(delay, self.load_more)
            return

        self._loading_more = False
        self._more_backoff.reset()
        if self._closed:
            return

        if previous_total > 0 and page.total != previous_total:
            logger.warning(
                f"Mailbox {self.mailbox} total changed ({previous_total} -> {page.total}), "
                f"restarting pagination"
            )
            self.mutations_detected += 1
            await self.reload()
            return

        if generation != self._generation:
            return

        start = (next_page - 1) * self.page_size
        for offset, header in enumerate(page.emails):
            index = header.display_index if header.display_index is not None else start + offset
            self.by_index[index] = dataclasses.replace(
                header, display_index=index, mailbox=header.mailbox or self.mailbox
            )
        self.total = page.total

        if page.skipped_uids:
            logger.warning(
                f"{len(page.skipped_uids)} messages skipped on page {next_page} of "
                f"{self.mailbox}, will re-request"
            )
            self.has_more = True
            await self._persist()
            self._scheduler.call_later(self.skipped_retry_delay, self.load_more)
            return

        if page.emails:
            self.loaded_ranges = merge_ranges(
                [*self.loaded_ranges, LoadedRange(start, start + len(page.emails))]
            )
        self.current_page = next_page
        self.has_more = page.has_more
        await self._persist()

        if self.has_more and self.auto_paginate:
            self._scheduler.call_later(self.page_delay, self.load_more)

    def resume(self) -> None:
        """Continue pagination that parked itself while offline."""
        if self._paused_offline and not self._closed:
            self._paused_offline = False
            self._more_backoff.reset()
            self._scheduler.call_later(0, self.load_more)

    # =========================================================================
    # Persistence and teardown
    # =========================================================================

    async def _persist(self) -> None:
        """Write the current header list to the store in one call."""
        account = self.account
        if self.store is None or account is None:
            return
        try:
            await self.store.save_email_headers(account.id, self.mailbox, self.emails(), self.total)
        except Exception as e:
            logger.warning(f"Failed to cache headers for {self.mailbox}: {e}")

    async def persist(self) -> None:
        await self._persist()

    def close(self) -> None:
        """Cancel pending retries; later loads become no-ops."""
        self._closed = True
        self._scheduler.cancel_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return (
            f"SparseMailboxIndex(mailbox={self.mailbox!r}, loaded={len(self.by_index)}, "
            f"total={self.total}, ranges={[(r.start, r.end) for r in self.loaded_ranges]})"
        )

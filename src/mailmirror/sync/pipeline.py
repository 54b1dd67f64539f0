# =============================================================================
# Account Pipeline
# =============================================================================
# Drives one account's two-phase sync:
#
#   Phase 1 (headers) - page through a mailbox's header listing and write it
#                       to the store as one header-cache write.
#   Phase 2 (content) - download the bodies of messages missing locally,
#                       with `concurrency` worker tasks sharing one queue.
#
# State machine:
#
#     IDLE -> HEADERS -> IDLE -> CONTENT -> DONE
#                                  ^   |
#                                  +---+  (retry cycles)
#
# destroy() is terminal from any phase. Cancellation is cooperative: pause()
# and destroy() only set flags, workers finish the fetch they're in and then
# exit on their own. A destroyed pipeline never calls on_complete.
#
# At most one fetch per UID: workers pop from the deque synchronously, so a
# UID belongs to exactly one worker once popped. Failed UIDs go to a retry
# list and are put back at the front of the queue after a backoff delay.
# =============================================================================

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from mailmirror.config import PipelineConfig
from mailmirror.core import Account, MessageHeader, TokenRefresher, has_valid_credentials
from mailmirror.scheduler import DelayedTask, RetryBackoff, Scheduler
from mailmirror.sync.errors import CredentialsError

if TYPE_CHECKING:
    from mailmirror.state import MailState


logger = logging.getLogger(__name__)

INBOX = "INBOX"


class PipelinePhase(Enum):
    """Where a pipeline is in its run."""
    IDLE = "idle"           # Nothing running (also after destroy)
    HEADERS = "headers"     # Paging through a header listing
    CONTENT = "content"     # Workers downloading bodies
    DONE = "done"           # Content run finished


@dataclass
class PipelineState:
    """
    Progress snapshot of one pipeline, for the UI.

    Attributes:
        phase: Current phase.
        queued: UIDs waiting in the main queue.
        completed: Bodies fetched in this run.
        total: UIDs in this run.
        failed: UIDs waiting for a retry cycle.
        concurrency: Worker slots the pipeline runs with.
    """
    phase: PipelinePhase = PipelinePhase.IDLE
    queued: int = 0
    completed: int = 0
    total: int = 0
    failed: int = 0
    concurrency: int = 1

    @property
    def is_running(self) -> bool:
        return self.phase in (PipelinePhase.HEADERS, PipelinePhase.CONTENT)

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.completed / self.total) * 100.0


@dataclass
class PipelineTimings:
    """
    Delays used by a pipeline, in seconds.

    Attributes:
        stagger: Launch offset per worker slot index.
        pace: Pause between two fetches of one worker.
        page_delay: Pause between two header pages.
        retry_initial: First retry-cycle delay.
        retry_max: Cap for the doubling retry delay.
    """
    stagger: float = 0.5
    pace: float = 0.2
    page_delay: float = 1.0
    retry_initial: float = 3.0
    retry_max: float = 120.0

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "PipelineTimings":
        return cls(
            stagger=config.stagger_seconds,
            pace=config.pace_seconds,
            page_delay=config.page_delay_seconds,
            retry_initial=config.retry_initial_seconds,
            retry_max=config.retry_max_seconds,
        )


# Type aliases for callbacks
ProgressCallback = Callable[[PipelineState], None]
CompleteCallback = Callable[[], None]
ErrorCallback = Callable[[BaseException], None]


async def ensure_fresh_token(account: Account, refresher: TokenRefresher | None) -> Account:
    """
    Return an account with a usable access token.

    Password accounts, and OAuth2 accounts whose token isn't near expiry,
    come back unchanged.
    """
    if refresher is None or not account.token_needs_refresh():
        return account
    logger.debug(f"Refreshing OAuth2 token for {account.email}")
    return await refresher.refresh(account)


class AccountPipeline:
    """
    Header and content sync for one account.

    Usage:
        >>> pipeline = AccountPipeline(account, state, concurrency=3)
        >>> await pipeline.load_headers("INBOX")
        >>> done = pipeline.wait_for_complete()
        >>> await pipeline.start_content_caching([101, 102, 103], "INBOX")
        >>> await done

    The transport and store come from the shared MailState, as does the
    body cache that fetched messages are added to.
    """

    def __init__(
        self,
        account: Account,
        mail_state: "MailState",
        *,
        concurrency: int = 3,
        timings: PipelineTimings | None = None,
        refresher: TokenRefresher | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.account = account
        self.account_id = account.id
        self.mail_state = mail_state
        self.concurrency = concurrency
        self.timings = timings or PipelineTimings()
        self.refresher = refresher
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error

        self._phase = PipelinePhase.IDLE
        self._queue: deque[int] = deque()
        self._retry: list[int] = []
        self._backoff = RetryBackoff(self.timings.retry_initial, self.timings.retry_max)
        self._retry_timer: DelayedTask | None = None
        self._active_slots = 0
        self._completed = 0
        self._total = 0
        self._mailbox = INBOX
        self._destroyed = False
        self._paused = False
        self._completion_fired = False
        self._workers: set[asyncio.Task] = set()
        self._waiters: list[asyncio.Future] = []
        self._scheduler = Scheduler(name=f"pipeline-{account.id}")

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> PipelineState:
        return PipelineState(
            phase=self._phase,
            queued=len(self._queue),
            completed=self._completed,
            total=self._total,
            failed=len(self._retry),
            concurrency=self.concurrency,
        )

    @property
    def phase(self) -> PipelinePhase:
        return self._phase

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def active_slots(self) -> int:
        return self._active_slots

    @property
    def retry_delay(self) -> float:
        """Delay the next retry cycle would wait."""
        return self._backoff.current

    # =========================================================================
    # Phase 1: headers
    # =========================================================================

    async def load_headers(self, mailbox: str = INBOX) -> list[MessageHeader]:
        """
        Page through a mailbox's headers and cache them in one write.

        Stops early when paused or destroyed. Errors (including missing
        credentials) are reported through on_error, never raised.

        Returns:
            The headers fetched, newest first.
        """
        if self._destroyed:
            return []
        if not has_valid_credentials(self.account):
            self._report_error(CredentialsError(f"No credentials for {self.account.email}"))
            return []

        # A header refresh running next to content caching keeps CONTENT
        if self._phase is not PipelinePhase.CONTENT:
            self._phase = PipelinePhase.HEADERS
            self._report_progress()

        headers: list[MessageHeader] = []
        try:
            logger.info(f"[{self.account.email}] Loading headers for {mailbox}")
            page = 1
            total = 0
            has_more = True

            while has_more and not self._destroyed and not self._paused:
                account = await self.fresh_account()
                result = await self.mail_state.transport.fetch_emails(account, mailbox, page)
                headers.extend(result.emails)
                total = result.total
                has_more = result.has_more
                page += 1
                if has_more and self.timings.page_delay > 0:
                    await asyncio.sleep(self.timings.page_delay)

            if headers and not self._destroyed:
                await self.mail_state.store.save_email_headers(self.account_id, mailbox, headers, total)
                logger.info(f"[{self.account.email}] Cached {len(headers)}/{total} headers for {mailbox}")

        except Exception as e:
            logger.warning(f"[{self.account.email}] Header load failed for {mailbox}: {e}")
            self._report_error(e)

        if not self._destroyed and self._phase is PipelinePhase.HEADERS:
            self._phase = PipelinePhase.IDLE
            self._report_progress()

        return headers

    # =========================================================================
    # Phase 2: content
    # =========================================================================

    async def start_content_caching(self, uids: list[int], mailbox: str = INBOX) -> None:
        """
        Download the bodies of the given UIDs.

        An empty list completes immediately. Calling this again starts a new
        run: queues, counters and the retry delay are reset.
        """
        if self._destroyed:
            return

        self._scheduler.cancel_all()
        self._retry_timer = None
        self._mailbox = mailbox
        self._queue = deque(uids)
        self._retry = []
        self._backoff.reset()
        self._completed = 0
        self._total = len(uids)
        self._completion_fired = False

        if not uids:
            self._phase = PipelinePhase.DONE
            self._complete()
            return

        self._phase = PipelinePhase.CONTENT
        logger.info(
            f"[{self.account.email}] Caching {len(uids)} bodies from {mailbox}, "
            f"concurrency={self.concurrency}"
        )
        self._report_progress()
        self._top_up()

    def _top_up(self) -> int:
        """
        Start workers for the idle slots, never more than the queue needs.

        Workers still draining from an earlier run count against the
        concurrency.
        """
        count = min(self.concurrency - self._active_slots, len(self._queue))
        if count > 0:
            self._launch(count)
        return max(count, 0)

    def _launch(self, count: int) -> None:
        """Start `count` worker tasks, staggered by slot index."""
        for slot in range(count):
            self._active_slots += 1
            task = asyncio.create_task(
                self._worker(slot),
                name=f"pipeline-{self.account_id}-{slot}",
            )
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)

    async def _worker(self, slot: int) -> None:
        try:
            if slot and self.timings.stagger > 0:
                await asyncio.sleep(slot * self.timings.stagger)

            while not self._destroyed and not self._paused and self._queue:
                uid = self._queue.popleft()
                # Queued UIDs always belong to the current run's mailbox
                try:
                    await self._fetch_one(uid, self._mailbox)
                except Exception as e:
                    logger.warning(f"[{self.account.email}] Failed UID {uid}: {e}")
                    self._retry.append(uid)

                if self.timings.pace > 0:
                    await asyncio.sleep(self.timings.pace)
        finally:
            self._active_slots -= 1

        await self._slot_finished()

    async def _fetch_one(self, uid: int, mailbox: str) -> None:
        account = await self.fresh_account()
        body = await self.mail_state.transport.fetch_email_light(account, uid, mailbox)

        # Result of a fetch that outlived its pipeline
        if self._destroyed:
            return

        if not body.mailbox:
            body.mailbox = mailbox
        await self.mail_state.store.save_email(body, self.account_id, mailbox)

        self.mail_state.cache_body(self.account_id, mailbox, body)
        self.mail_state.mark_saved(self.account_id, mailbox, uid)
        index = self.mail_state.existing_index(self.account_id, mailbox)
        if index is not None:
            index.mark_has_attachments(uid, body.has_attachments)

        self._completed += 1
        self._backoff.reset()
        logger.debug(f"[{self.account.email}] Cached UID {uid} ({self._completed}/{self._total})")
        self._report_progress()

    async def _slot_finished(self) -> None:
        """Run by each worker on exit; the last one out decides what's next."""
        if self._active_slots > 0 or self._destroyed or self._paused:
            return
        if self._queue:
            return
        if self._retry:
            self._schedule_retry()
        else:
            await self._finish()

    def _schedule_retry(self) -> None:
        if self._destroyed or not self._retry or self._retry_timer is not None:
            return
        delay = self._backoff.advance()
        logger.info(f"[{self.account.email}] Retrying {len(self._retry)} failed UIDs in {delay:g}s")
        self._retry_timer = self._scheduler.call_later(delay, self._run_retry)

    def _run_retry(self) -> None:
        self._retry_timer = None
        if self._destroyed:
            return

        # Failed UIDs go ahead of anything still queued
        self._queue.extendleft(reversed(self._retry))
        self._retry = []
        self._report_progress()

        if not self._paused:
            self._top_up()

    async def _finish(self) -> None:
        if self._completion_fired or self._destroyed:
            return
        self._completion_fired = True
        self._phase = PipelinePhase.DONE
        logger.info(f"[{self.account.email}] Content caching complete ({self._completed}/{self._total})")

        if self.mail_state.is_active(self.account_id):
            active_mailbox = self.mail_state.active_mailbox
            try:
                await self.mail_state.refresh_saved_ids(self.account_id, active_mailbox)
                # Keep corrected attachment flags across restarts
                index = self.mail_state.existing_index(self.account_id, active_mailbox)
                if index is not None:
                    await index.persist()
            except Exception as e:
                logger.warning(f"[{self.account.email}] Failed to refresh saved IDs: {e}")

        if self._destroyed:
            return
        self._report_progress()
        self._complete()

    # =========================================================================
    # Control
    # =========================================================================

    def wait_for_complete(self) -> asyncio.Future:
        """
        A future for the end of the next content run.

        Resolves True on completion, False if the pipeline is destroyed
        first. Create it before calling start_content_caching().
        """
        future = asyncio.get_running_loop().create_future()
        if self._destroyed:
            future.set_result(False)
        else:
            self._waiters.append(future)
        return future

    def pause(self) -> None:
        """Let workers finish their current fetch, then stop."""
        if not self._paused:
            logger.debug(f"[{self.account.email}] Pausing pipeline")
        self._paused = True

    def resume(self, mailbox: str | None = None, reset_backoff: bool = False) -> None:
        """
        Continue a content run.

        Only idle slots are relaunched (concurrency - active slots), so
        calling this on a running pipeline just tops it up to its current
        concurrency.

        Args:
            mailbox: Mailbox the caller expects the run to be on. The run
                     always continues on the mailbox it started on; a
                     different one is ignored.
            reset_backoff: Drop the retry delay back to its floor, for
                           failures that were environmental (offline).
                           A retry cycle already waiting is rescheduled
                           at the floor delay.
        """
        if self._destroyed:
            return
        self._paused = False
        if reset_backoff:
            self._backoff.reset()
        if self._phase is not PipelinePhase.CONTENT:
            return

        if mailbox is not None and mailbox != self._mailbox:
            logger.debug(
                f"[{self.account.email}] Run is on {self._mailbox}, not resuming it on {mailbox}"
            )

        if reset_backoff and self._retry_timer is not None and self._retry_timer.cancel():
            self._retry_timer = None

        if self._queue:
            slots = self._top_up()
            if slots:
                logger.debug(f"[{self.account.email}] Resuming with {slots} slots")
        elif self._active_slots == 0:
            if self._retry:
                self._schedule_retry()
            else:
                task = asyncio.get_running_loop().create_task(self._finish())
                self._workers.add(task)
                task.add_done_callback(self._workers.discard)

    def destroy(self) -> None:
        """
        Stop for good. Queues are cleared and timers cancelled; running
        workers drain on their own and never trigger completion.
        """
        if self._destroyed:
            return
        logger.debug(f"[{self.account.email}] Destroying pipeline")
        self._destroyed = True
        self._queue.clear()
        self._retry = []
        self._scheduler.cancel_all()
        self._retry_timer = None
        self._phase = PipelinePhase.IDLE

        for future in self._waiters:
            if not future.done():
                future.set_result(False)
        self._waiters.clear()

    async def drain(self) -> None:
        """Wait for every running worker to exit."""
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def fresh_account(self) -> Account:
        account = await ensure_fresh_token(self.account, self.refresher)
        if account is not self.account:
            self.account = account
            self.mail_state.update_account(account)
        return account

    def _complete(self) -> None:
        if self.on_complete is not None:
            try:
                self.on_complete()
            except Exception as e:
                logger.error(f"[{self.account.email}] Completion callback failed: {e}", exc_info=True)

        for future in self._waiters:
            if not future.done():
                future.set_result(True)
        self._waiters.clear()

    def _report_progress(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.state)

    def _report_error(self, error: BaseException) -> None:
        if self.on_error is not None:
            self.on_error(error)

    def __repr__(self) -> str:
        return (
            f"AccountPipeline(account={self.account_id!r}, phase={self._phase.value}, "
            f"queued={len(self._queue)}, completed={self._completed}/{self._total}, "
            f"concurrency={self.concurrency})"
        )

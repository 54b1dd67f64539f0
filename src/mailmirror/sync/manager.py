# =============================================================================
# Pipeline Manager
# =============================================================================
# Single coordinator owning the account -> AccountPipeline map.
#
# Cascade order:
#   1. The active account caches content at full concurrency (3).
#   2. When it finishes, every other account (with credentials, not hidden)
#      loads headers then caches content at concurrency 1, one account at a
#      time. This is the low-priority path; it must not compete with the
#      account the user is looking at.
#
# Triggers the manager must be told about:
#   - account activated      -> start_active_account_pipeline()
#   - account switched       -> on_account_switch()
#   - accounts added/removed -> sync_accounts()
#   - offline / online       -> pause_all() / resume_all()
#   - shutdown               -> destroy_all()
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from dateutil.relativedelta import relativedelta

from mailmirror.core import Account, MessageHeader, TokenRefresher, has_valid_credentials
from mailmirror.state import INBOX, MailState
from mailmirror.sync.errors import CredentialsError, ErrorKind, MailboxResolutionError, classify_error
from mailmirror.sync.pipeline import (
    AccountPipeline,
    CompleteCallback,
    PipelineState,
    PipelineTimings,
)


logger = logging.getLogger(__name__)


@dataclass
class SyncFailure:
    """The last failure reported for an account."""
    kind: ErrorKind
    message: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PipelineManager:
    """
    Coordinates the per-account pipelines.

    Usage:
        >>> manager = PipelineManager(state)
        >>> state.set_active("work")
        >>> await manager.start_active_account_pipeline("work")
        >>> ...
        >>> manager.on_account_switch("personal")
        >>> manager.destroy_all()

    Attributes:
        state: Shared MailState (accounts, indexes, cache, settings).
        pipelines: Pipelines by account id.
        on_progress: Optional callback(account_id, PipelineState).
    """

    def __init__(
        self,
        state: MailState,
        *,
        refresher: TokenRefresher | None = None,
        timings: PipelineTimings | None = None,
    ) -> None:
        self.state = state
        self.refresher = refresher
        self.timings = timings or PipelineTimings.from_config(state.config.pipeline)
        self.pipelines: dict[str, AccountPipeline] = {}
        self.on_progress: Callable[[str, PipelineState], None] | None = None

        self._active_account_id: str | None = None
        self._background_running = False
        self._background_task: asyncio.Task | None = None
        self._cascade_generation = 0
        self._errors: dict[str, SyncFailure] = {}
        self._tasks: set[asyncio.Task] = set()
        self._retired: list[AccountPipeline] = []

    @property
    def active_account_id(self) -> str | None:
        return self._active_account_id

    @property
    def background_running(self) -> bool:
        return self._background_running

    # =========================================================================
    # Active account
    # =========================================================================

    async def start_active_account_pipeline(self, account_id: str) -> AccountPipeline | None:
        """
        Start (or restart) content caching for the active account.

        Warms the account's Sent headers alongside, then queues every
        UID of the active mailbox that isn't saved locally. With nothing to
        fetch, cascades straight to the background accounts.
        """
        account = self.state.get_account(account_id)
        if account is None or self._is_hidden(account_id):
            return None
        if not has_valid_credentials(account):
            self._record_error(account_id, CredentialsError(f"No credentials for {account.email}"))
            return None

        self._active_account_id = account_id
        self._errors.pop(account_id, None)

        existing = self.pipelines.get(account_id)
        if existing is not None:
            existing.destroy()

        pipeline = self._create_pipeline(
            account,
            concurrency=self.state.config.pipeline.active_concurrency,
            on_complete=lambda: self._on_active_complete(account_id),
        )
        self.pipelines[account_id] = pipeline

        self._spawn(self._load_sent_headers(account, pipeline), name=f"sent-{account_id}")

        mailbox = self.state.active_mailbox if self.state.is_active(account_id) else INBOX
        index = self.state.index_for(account_id, mailbox)
        if not index.emails():
            await index.load_cached()

        uids = await self._get_uncached_uids(
            account_id,
            mailbox,
            index.emails(),
            self.state.saved_ids(account_id, mailbox),
        )
        if pipeline.destroyed:
            return pipeline

        if uids:
            await pipeline.start_content_caching(uids, mailbox)
        else:
            logger.info(f"Active account {account_id} fully cached, starting background pipelines")
            self._start_background_pipelines()
        return pipeline

    def _on_active_complete(self, account_id: str) -> None:
        # A completion from an account the user has since left is stale
        if account_id != self._active_account_id:
            logger.debug(f"Ignoring stale completion from {account_id}")
            return
        logger.info(f"Active account {account_id} complete, starting background pipelines")
        self._start_background_pipelines()

    # =========================================================================
    # Background cascade
    # =========================================================================

    def _start_background_pipelines(self) -> asyncio.Task | None:
        """Kick off the background cascade unless one is already running."""
        if self._background_running:
            return None
        self._background_running = True
        self._cascade_generation += 1
        task = self._spawn(
            self._run_background(self._cascade_generation),
            name="background-cascade",
        )
        self._background_task = task
        return task

    async def _run_background(self, generation: int) -> None:
        try:
            for account in self._background_accounts():
                if generation != self._cascade_generation:
                    logger.debug("Background cascade superseded")
                    return
                if self._is_destroyed(account.id):
                    continue
                try:
                    await self._sync_background_account(account)
                except Exception as e:
                    logger.error(f"Background sync failed for {account.email}: {e}")
                    self._record_error(account.id, e)
        finally:
            if generation == self._cascade_generation:
                self._background_running = False

    async def _sync_background_account(self, account: Account) -> None:
        existing = self.pipelines.get(account.id)
        if existing is not None:
            existing.destroy()

        pipeline = self._create_pipeline(
            account,
            concurrency=self.state.config.pipeline.background_concurrency,
            on_complete=lambda: logger.info(f"Background account {account.email} complete"),
        )
        self.pipelines[account.id] = pipeline

        await pipeline.load_headers(INBOX)
        if pipeline.destroyed:
            return

        await self._load_sent_headers(account, pipeline)
        if pipeline.destroyed:
            return

        cached = await self.state.store.get_email_headers(account.id, INBOX)
        if cached is None or not cached.emails:
            return

        saved = await self.state.store.get_saved_email_ids(account.id, INBOX)
        uids = await self._get_uncached_uids(account.id, INBOX, cached.emails, saved)
        if uids and not pipeline.destroyed:
            done = pipeline.wait_for_complete()
            await pipeline.start_content_caching(uids, INBOX)
            await done

    def _background_accounts(self) -> list[Account]:
        return [
            account for account in self.state.accounts.values()
            if account.id != self._active_account_id
            and account.enabled
            and has_valid_credentials(account)
            and not self._is_hidden(account.id)
        ]

    async def wait_background(self) -> None:
        """Wait for the current background cascade to finish."""
        while self._background_task is not None and not self._background_task.done():
            await asyncio.gather(self._background_task, return_exceptions=True)

    def restart_background_pipelines(self) -> asyncio.Task | None:
        """Run the cascade again (e.g. after an account is unhidden)."""
        self._background_running = False
        return self._start_background_pipelines()

    # =========================================================================
    # Triggers
    # =========================================================================

    def on_account_switch(self, new_active_id: str) -> None:
        """
        Pause everything but the new active account.

        If the new account already has a pipeline (it was being synced in
        the background) it's promoted in place: raised to full concurrency
        and resumed, keeping its progress. Otherwise the caller starts one
        with start_active_account_pipeline().
        """
        self._active_account_id = new_active_id
        self._background_running = False
        self._cascade_generation += 1

        for account_id, pipeline in self.pipelines.items():
            if account_id != new_active_id:
                pipeline.pause()

        existing = self.pipelines.get(new_active_id)
        if existing is not None and not existing.destroyed:
            logger.info(f"Promoting pipeline of {new_active_id} to active")
            existing.concurrency = self.state.config.pipeline.active_concurrency
            existing.on_complete = lambda: self._on_active_complete(new_active_id)
            existing.resume()

    def sync_accounts(self, accounts: Iterable[Account]) -> list[str]:
        """
        Drop pipelines of accounts that no longer exist.

        Returns:
            Ids of the accounts whose pipelines were destroyed.
        """
        keep = {account.id for account in accounts}
        removed = [account_id for account_id in self.pipelines if account_id not in keep]
        for account_id in removed:
            self.pipelines.pop(account_id).destroy()
            self._errors.pop(account_id, None)
            logger.info(f"Removed pipeline for deleted account {account_id}")
        return removed

    def pause_all(self) -> None:
        for pipeline in self.pipelines.values():
            pipeline.pause()

    def resume_all(self) -> None:
        """
        Resume every pipeline from where it stopped.

        Retry delays drop to their floor: the failures were caused by the
        network going away, not by the server.
        """
        for pipeline in self.pipelines.values():
            pipeline.resume(reset_backoff=True)
        for index in self.state.indexes():
            index.resume()

    def destroy_all(self) -> None:
        """Shutdown: destroy every pipeline and stop the cascade."""
        for pipeline in self.pipelines.values():
            pipeline.destroy()
        self._retired.extend(self.pipelines.values())
        self.pipelines.clear()
        self._background_running = False
        self._cascade_generation += 1

    async def drain(self) -> None:
        """Wait for workers and helper tasks to exit (after destroy_all())."""
        for pipeline in [*self._retired, *self.pipelines.values()]:
            await pipeline.drain()
        self._retired.clear()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Progress and errors
    # =========================================================================

    def get_progress(self) -> dict[str, PipelineState]:
        return {account_id: pipeline.state for account_id, pipeline in self.pipelines.items()}

    def get_errors(self) -> dict[str, SyncFailure]:
        return dict(self._errors)

    def _record_error(self, account_id: str, error: BaseException) -> None:
        kind = classify_error(error)
        logger.warning(f"Pipeline error for {account_id} ({kind.value}): {error}")
        self._errors[account_id] = SyncFailure(kind=kind, message=str(error))

    def _on_progress(self, account_id: str, state: PipelineState) -> None:
        if self.on_progress is not None:
            self.on_progress(account_id, state)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _create_pipeline(
        self,
        account: Account,
        *,
        concurrency: int,
        on_complete: CompleteCallback,
    ) -> AccountPipeline:
        account_id = account.id
        return AccountPipeline(
            account,
            self.state,
            concurrency=concurrency,
            timings=self.timings,
            refresher=self.refresher,
            on_progress=lambda state: self._on_progress(account_id, state),
            on_complete=on_complete,
            on_error=lambda error: self._record_error(account_id, error),
        )

    def _is_hidden(self, account_id: str) -> bool:
        return account_id in self.state.config.hidden_accounts

    def _is_destroyed(self, account_id: str) -> bool:
        pipeline = self.pipelines.get(account_id)
        return pipeline is not None and pipeline.destroyed

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _load_sent_headers(self, account: Account, pipeline: AccountPipeline) -> None:
        """Refresh the Sent mailbox's headers for the chat view."""
        if pipeline.destroyed:
            return
        try:
            sent = await self._resolve_sent_mailbox(account, pipeline)
            if pipeline.destroyed:
                return

            logger.info(f"Loading Sent headers for {account.email} ({sent})")
            headers = await pipeline.load_headers(sent)
            if pipeline.destroyed:
                return

            if account.id == self._active_account_id:
                if not headers:
                    cached = await self.state.store.get_email_headers(account.id, sent)
                    headers = cached.emails if cached else []
                self.state.set_sent_headers(account.id, headers)
        except MailboxResolutionError as e:
            logger.debug(f"{e}")
        except Exception as e:
            logger.warning(f"Sent headers load failed for {account.email}: {e}")

    async def _resolve_sent_mailbox(self, account: Account, pipeline: AccountPipeline) -> str:
        sent = self.state.sent_mailbox(account.id)
        if sent is None and account.id not in self.state.mailboxes:
            fresh = await pipeline.fresh_account()
            tree = await self.state.transport.fetch_mailboxes(fresh)
            self.state.set_mailboxes(account.id, tree)
            sent = self.state.sent_mailbox(account.id)
        if sent is None:
            raise MailboxResolutionError(f"No Sent mailbox for {account.email}")
        return sent

    async def _get_uncached_uids(
        self,
        account_id: str,
        mailbox: str,
        emails: list[MessageHeader],
        saved_ids: set[int],
    ) -> list[int]:
        """
        UIDs from `emails` whose bodies aren't saved locally.

        With a cache duration configured, messages older than that many
        months (or undated) are left out.
        """
        months = self.state.config.cache.local_cache_duration_months
        cutoff = datetime.now(timezone.utc) - relativedelta(months=months) if months > 0 else None

        candidates = []
        for email in emails:
            if email.uid in saved_ids:
                continue
            if cutoff is not None and (email.date is None or email.sort_date < cutoff):
                continue
            candidates.append(email.uid)

        uids = []
        for uid in candidates:
            if not await self.state.store.is_email_saved(account_id, mailbox, uid):
                uids.append(uid)
        return uids

# =============================================================================
# PipelineManager Tests
# =============================================================================

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from mailmirror.core import Account, Address
from mailmirror.sync import ErrorKind, PipelineManager, PipelinePhase

from conftest import make_header


@pytest.fixture
def side_account():
    return Account(id="side", email="me@side.example", imap_host="imap.side.example", password="secret")


@pytest.fixture
def manager(mail_state):
    return PipelineManager(mail_state)


async def _shutdown(manager):
    manager.destroy_all()
    await manager.drain()


async def _wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition never became true"
        await asyncio.sleep(0.005)


# =============================================================================
# Active account
# =============================================================================

async def test_active_pipeline_fetches_only_unsaved(manager, mail_state, transport, store):
    headers = [make_header(uid) for uid in range(6, 0, -1)]
    transport.add("INBOX", headers)
    transport.add("Sent", [
        make_header(100, mailbox="Sent", from_=Address("me@example.com"), to=[Address("alice@example.com")]),
    ])
    await store.save_email_headers("personal", "INBOX", headers, 6)
    store.saved[("personal", "INBOX")] = {3: None}

    pipeline = await manager.start_active_account_pipeline("personal")
    assert pipeline.concurrency == 3
    assert await pipeline.wait_for_complete() is True
    await _wait_for(lambda: "personal" in mail_state.sent_headers)
    await manager.wait_background()
    await _shutdown(manager)

    assert sorted(transport.fetched) == [1, 2, 4, 5, 6]
    assert [h.uid for h in mail_state.sent_headers["personal"]] == [100]
    assert manager.active_account_id == "personal"


async def test_fully_cached_account_goes_straight_to_background(
    manager, mail_state, transport, store, work_account
):
    mail_state.add_account(work_account)
    transport.add("INBOX", [make_header(uid) for uid in range(3, 0, -1)])

    await manager.start_active_account_pipeline("personal")
    assert manager.background_running
    await manager.wait_background()
    await _shutdown(manager)

    assert set(store.saved[("work", "INBOX")]) == {1, 2, 3}
    assert ("personal", "INBOX") not in store.saved


async def test_cache_duration_cutoff_skips_old_and_undated(manager, mail_state, transport, store):
    mail_state.config.cache.local_cache_duration_months = 1
    now = datetime.now(timezone.utc)
    headers = [
        make_header(3, date=None),
        make_header(2, date=now - timedelta(days=1)),
        make_header(1, date=now - timedelta(days=70)),
    ]
    await store.save_email_headers("personal", "INBOX", headers, 3)

    pipeline = await manager.start_active_account_pipeline("personal")
    await pipeline.wait_for_complete()
    await _shutdown(manager)

    assert transport.fetched == [2]


async def test_missing_credentials_recorded(manager, mail_state, sample_account):
    mail_state.update_account(dataclasses.replace(sample_account, password=""))

    assert await manager.start_active_account_pipeline("personal") is None
    errors = manager.get_errors()
    assert errors["personal"].kind is ErrorKind.CREDENTIALS
    assert manager.pipelines == {}


async def test_hidden_accounts_are_never_synced(
    manager, mail_state, transport, store, work_account, side_account
):
    mail_state.add_account(work_account)
    mail_state.add_account(side_account)
    mail_state.config.hidden_accounts = ["work"]
    transport.add("INBOX", [make_header(uid) for uid in range(2, 0, -1)])

    assert await manager.start_active_account_pipeline("work") is None

    await manager.start_active_account_pipeline("personal")
    await manager.wait_background()
    await _shutdown(manager)

    assert ("work", "INBOX") not in store.headers
    assert set(store.saved[("side", "INBOX")]) == {1, 2}


# =============================================================================
# Background cascade
# =============================================================================

async def test_background_accounts_run_one_at_a_time(
    manager, mail_state, transport, store, work_account, side_account
):
    mail_state.add_account(work_account)
    mail_state.add_account(side_account)
    transport.add("INBOX", [make_header(uid) for uid in range(3, 0, -1)])
    transport.fetch_delay = 0.005

    await manager.start_active_account_pipeline("personal")
    await manager.wait_background()

    progress = manager.get_progress()
    assert progress["work"].phase is PipelinePhase.DONE
    assert progress["work"].concurrency == 1
    assert progress["side"].completed == 3
    await _shutdown(manager)

    assert transport.max_in_flight == 1
    assert transport.fetched == [3, 2, 1, 3, 2, 1]
    assert store.headers[("work", "INBOX")].total == 3


async def test_stale_completion_is_ignored(manager, mail_state, work_account):
    mail_state.add_account(work_account)
    manager.on_account_switch("work")

    manager._on_active_complete("personal")
    assert not manager.background_running


async def test_switch_promotes_background_pipeline(
    manager, mail_state, transport, work_account
):
    mail_state.add_account(work_account)
    transport.add("INBOX", [make_header(uid) for uid in range(8, 0, -1)])
    transport.fetch_delay = 0.02

    await manager.start_active_account_pipeline("personal")
    await _wait_for(
        lambda: "work" in manager.pipelines
        and manager.pipelines["work"].phase is PipelinePhase.CONTENT
    )
    work = manager.pipelines["work"]
    assert work.concurrency == 1

    mail_state.set_active("work")
    manager.on_account_switch("work")

    assert manager.pipelines["work"] is work
    assert work.concurrency == 3
    assert manager.pipelines["personal"].paused

    assert await work.wait_for_complete() is True
    assert transport.max_in_flight > 1

    await manager.wait_background()
    await _shutdown(manager)


async def test_promoted_pipeline_stays_on_its_mailbox(
    manager, mail_state, transport, store, work_account
):
    mail_state.add_account(work_account)
    transport.add("INBOX", [make_header(uid) for uid in range(8, 0, -1)])
    transport.fetch_delay = 0.02

    await manager.start_active_account_pipeline("personal")
    await _wait_for(
        lambda: "work" in manager.pipelines
        and manager.pipelines["work"].phase is PipelinePhase.CONTENT
    )
    work = manager.pipelines["work"]

    # Switching to the account while another of its folders is open
    mail_state.set_active("work", "Archive")
    manager.on_account_switch("work")

    assert await work.wait_for_complete() is True
    await manager.wait_background()
    await _shutdown(manager)

    assert set(store.saved[("work", "INBOX")]) == set(range(1, 9))
    assert ("work", "Archive") not in store.saved
    assert {key.mailbox for key in mail_state.cache.keys_for_account("work")} == {"INBOX"}


# =============================================================================
# Lifecycle
# =============================================================================

async def test_sync_accounts_drops_removed(manager, mail_state, work_account):
    mail_state.add_account(work_account)
    pipeline = await manager.start_active_account_pipeline("personal")
    await manager.wait_background()

    removed = manager.sync_accounts([work_account])

    assert removed == ["personal"]
    assert pipeline.destroyed
    assert "personal" not in manager.pipelines
    await _shutdown(manager)


async def test_pause_and_resume_all(manager, mail_state, transport, store):
    headers = [make_header(1)]
    await store.save_email_headers("personal", "INBOX", headers, 1)
    transport.fail_uids = {1: 10}

    pipeline = await manager.start_active_account_pipeline("personal")
    await _wait_for(lambda: pipeline.retry_delay > manager.timings.retry_initial)

    manager.pause_all()
    assert pipeline.paused

    manager.resume_all()
    assert not pipeline.paused
    assert pipeline.retry_delay == manager.timings.retry_initial
    await _shutdown(manager)


async def test_destroy_all_stops_workers(manager, mail_state, transport, store):
    headers = [make_header(uid) for uid in range(6, 0, -1)]
    await store.save_email_headers("personal", "INBOX", headers, 6)
    transport.fetch_delay = 0.02

    pipeline = await manager.start_active_account_pipeline("personal")
    done = pipeline.wait_for_complete()
    await asyncio.sleep(0.005)

    await _shutdown(manager)

    assert await done is False
    assert manager.pipelines == {}
    assert pipeline.active_slots == 0
    assert not manager.background_running
    assert len(transport.fetched) == 3

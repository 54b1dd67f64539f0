# =============================================================================
# SparseMailboxIndex Tests
# =============================================================================

import asyncio
import dataclasses

import pytest

from mailmirror.index import LoadedRange, SparseMailboxIndex, merge_ranges, subtract_range

from conftest import make_header


def _headers(uids):
    return [make_header(uid) for uid in uids]


def _index(mail_state, account_id="personal", mailbox="INBOX"):
    return mail_state.index_for(account_id, mailbox)


# =============================================================================
# Range arithmetic
# =============================================================================

def test_merge_ranges_coalesces_touching_and_overlapping():
    ranges = [LoadedRange(50, 100), LoadedRange(0, 50), LoadedRange(120, 150), LoadedRange(90, 110)]
    assert merge_ranges(ranges) == [LoadedRange(0, 110), LoadedRange(120, 150)]


def test_merge_ranges_keeps_gaps():
    assert merge_ranges([LoadedRange(0, 10), LoadedRange(11, 20)]) == [
        LoadedRange(0, 10),
        LoadedRange(11, 20),
    ]


def test_merge_ranges_drops_empty():
    assert merge_ranges([LoadedRange(5, 5), LoadedRange(0, 3)]) == [LoadedRange(0, 3)]


def test_subtract_range_splits():
    assert subtract_range([LoadedRange(0, 100)], 40, 60) == [LoadedRange(0, 40), LoadedRange(60, 100)]
    assert subtract_range([LoadedRange(0, 10)], 0, 10) == []


def test_loaded_range_contains():
    r = LoadedRange(10, 20)
    assert 10 in r and 19 in r and 20 not in r
    assert len(r) == 10
    assert r.covers(12, 18)


# =============================================================================
# Range loading
# =============================================================================

async def test_load_range_populates_and_merges(mail_state, transport, store):
    transport.add("INBOX", _headers(range(30, 0, -1)))
    index = _index(mail_state)

    await index.load_range(0, 5)
    await index.load_range(5, 10)
    await index.load_range(20, 25)

    assert index.loaded_ranges == [LoadedRange(0, 10), LoadedRange(20, 25)]
    assert index.get_email_at_index(0).uid == 30
    assert index.get_email_at_index(22).uid == 8
    assert index.is_index_loaded(9)
    assert not index.is_index_loaded(15)
    assert index.total == 30
    assert store.headers[("personal", "INBOX")].total == 30


async def test_loaded_range_is_a_noop(mail_state, transport):
    transport.add("INBOX", _headers(range(10, 0, -1)))
    index = _index(mail_state)

    await index.load_range(0, 5)
    await index.load_range(1, 4)
    assert len(transport.range_calls) == 1


async def test_concurrent_duplicate_range_fetches_once(mail_state, transport):
    transport.add("INBOX", _headers(range(10, 0, -1)))
    index = _index(mail_state)

    await asyncio.gather(index.load_range(0, 5), index.load_range(0, 5))
    assert len(transport.range_calls) == 1


async def test_total_change_triggers_reload(mail_state, transport):
    transport.add("INBOX", _headers(range(20, 0, -1)))
    index = _index(mail_state)
    await index.load_range(0, 5)

    # Another client delivered mail
    transport.add("INBOX", _headers([21]))
    await index.load_range(10, 15)

    assert index.mutations_detected == 1
    assert transport.page_calls == [("INBOX", 1)]
    assert index.get_email_at_index(0).uid == 21
    assert index.total == 21
    # The stale range result was not merged
    assert not index.is_range_loaded(10, 15)


async def test_failed_range_is_retried_with_backoff(mail_state, transport):
    transport.add("INBOX", _headers(range(10, 0, -1)))
    transport.fail_ranges = 2
    index = _index(mail_state)

    await index.load_range(0, 5)
    assert not index.is_range_loaded(0, 5)

    # retry_initial is 10ms, doubling
    await asyncio.sleep(0.1)
    assert index.is_range_loaded(0, 5)
    assert len(transport.range_calls) == 3


async def test_skipped_uids_are_requested_again(mail_state, transport):
    transport.add("INBOX", _headers(range(10, 0, -1)))
    transport.skip_once = {8}
    index = _index(mail_state)

    await index.load_range(0, 5)
    assert index.find_uid(8) is None

    await asyncio.sleep(0.05)
    assert index.find_uid(8) is not None
    assert index.get_email_at_index(2).uid == 8
    assert len(transport.range_calls) == 2
    assert index.loaded_ranges == [LoadedRange(0, 5)]


async def test_fully_skipped_range_is_requested_again(mail_state, transport):
    transport.add("INBOX", _headers(range(4, 0, -1)))
    transport.skip_once = {4, 3}
    index = _index(mail_state)

    await index.load_range(0, 2)
    assert not index.is_range_loaded(0, 2)

    await asyncio.sleep(0.05)
    assert index.is_range_loaded(0, 2)
    assert [index.get_email_at_index(i).uid for i in (0, 1)] == [4, 3]
    assert len(transport.range_calls) == 2


# =============================================================================
# Reload
# =============================================================================

async def test_reload_purges_stale_uids_in_overlap_window(mail_state, transport, store):
    index = _index(mail_state)
    index.hydrate(_headers([1, 2, 3, 4, 5]), 5)

    # Server now has three messages, and returns them on page 1
    transport.add("INBOX", _headers([1, 3, 5]))
    assert await index.reload()

    uids = [h.uid for h in index.emails()]
    assert 2 not in uids
    # 4 is outside the 3-item overlap window and stays unverified
    assert uids == [1, 3, 4, 5]
    assert index.loaded_ranges == [LoadedRange(0, 4)]
    assert [h.display_index for h in index.emails()] == [0, 1, 2, 3]
    assert store.header_writes == 1


async def test_reload_puts_new_mail_ahead_of_cache(mail_state, transport):
    index = _index(mail_state)
    index.hydrate(_headers([5, 4, 3]), 3)

    transport.add("INBOX", _headers([7, 6, 5, 4, 3]))
    await index.reload()

    assert [h.uid for h in index.emails()] == [7, 6, 5, 4, 3]
    assert index.total == 5


async def test_reload_without_overlap_replaces_index(mail_state, transport):
    index = _index(mail_state)
    index.hydrate(_headers([2, 1]), 2)

    transport.add("INBOX", _headers([9, 8]))
    transport.totals["INBOX"] = 2
    await index.reload()

    assert [h.uid for h in index.emails()] == [9, 8]


async def test_reload_without_credentials_is_skipped(mail_state, transport, sample_account):
    mail_state.update_account(dataclasses.replace(sample_account, password=""))
    assert await _index(mail_state).reload() is False
    assert transport.page_calls == []


async def test_reload_discards_inflight_range(mail_state, transport):
    transport.add("INBOX", _headers(range(20, 0, -1)))
    index = _index(mail_state)
    index.hydrate(_headers(range(20, 15, -1)), 20)

    original = transport.fetch_emails_range

    async def slow_range(*args):
        await asyncio.sleep(0.02)
        return await original(*args)

    transport.fetch_emails_range = slow_range
    range_task = asyncio.create_task(index.load_range(10, 15))
    await asyncio.sleep(0)
    await index.reload()
    await range_task

    assert not index.is_range_loaded(10, 15)


# =============================================================================
# Pagination
# =============================================================================

async def test_load_more_pages_sequentially(mail_state, transport):
    transport.add("INBOX", _headers(range(12, 0, -1)))
    index = _index(mail_state)
    await index.reload()
    assert index.has_more and index.current_page == 1

    await index.load_more()
    assert index.current_page == 2
    assert index.get_email_at_index(5).uid == 7

    await index.load_more()
    assert index.current_page == 3
    assert not index.has_more
    assert index.loaded_ranges == [LoadedRange(0, 12)]


async def test_load_more_with_skipped_uids_does_not_advance(mail_state, transport):
    transport.add("INBOX", _headers(range(12, 0, -1)))
    index = _index(mail_state)
    await index.reload()

    transport.skip_once = {6}
    await index.load_more()
    assert index.current_page == 1

    await asyncio.sleep(0.05)
    assert index.current_page == 2
    assert index.find_uid(6) is not None


async def test_load_more_offline_parks_until_resume(mail_state, transport):
    transport.add("INBOX", _headers(range(12, 0, -1)))
    index = _index(mail_state)
    await index.reload()

    mail_state.online = False
    await index.load_more()
    assert index.current_page == 1

    mail_state.online = True
    index.resume()
    await asyncio.sleep(0.02)
    assert index.current_page == 2


async def test_load_more_mutation_reloads(mail_state, transport):
    transport.add("INBOX", _headers(range(12, 0, -1)))
    index = _index(mail_state)
    await index.reload()

    transport.add("INBOX", _headers([13]))
    await index.load_more()

    assert index.mutations_detected == 1
    assert index.get_email_at_index(0).uid == 13
    assert index.loaded_ranges == [LoadedRange(0, 6)]


# =============================================================================
# Accessors and teardown
# =============================================================================

async def test_load_cached_hydrates_from_store(mail_state, store):
    await store.save_email_headers("personal", "INBOX", _headers([3, 2, 1]), 40)
    index = _index(mail_state)

    assert await index.load_cached()
    assert index.total == 40
    assert index.has_more
    assert index.get_email_at_index(2).uid == 1


def test_mark_has_attachments_and_remove(mail_state):
    index = _index(mail_state)
    index.hydrate(_headers([3, 2, 1]), 3)

    assert index.mark_has_attachments(2, True)
    assert not index.mark_has_attachments(2, True)
    assert not index.mark_has_attachments(99, True)
    assert index.find_uid(2).has_attachments

    assert index.remove_uids({1, 3}) == 2
    assert index.uids() == {2}


async def test_close_cancels_pending_retries(mail_state, transport):
    transport.add("INBOX", _headers(range(10, 0, -1)))
    transport.fail_ranges = 1
    index = _index(mail_state)

    await index.load_range(0, 5)
    index.close()
    await asyncio.sleep(0.05)

    assert index.closed
    assert len(transport.range_calls) == 1


@pytest.mark.parametrize("start,end", [(5, 5), (7, 3)])
async def test_empty_ranges_are_ignored(mail_state, transport, start, end):
    await _index(mail_state).load_range(start, end)
    assert transport.range_calls == []


def test_index_for_reuses_instances(mail_state):
    assert mail_state.index_for("personal", "INBOX") is mail_state.index_for("personal", "INBOX")
    assert isinstance(mail_state.index_for("personal", "Sent"), SparseMailboxIndex)

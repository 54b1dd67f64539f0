# =============================================================================
# Repository Tests
# =============================================================================

import pytest

from mailmirror.core import AttachmentInfo
from mailmirror.storage import Database, Repository

from conftest import make_body, make_header


@pytest.fixture
async def repo(temp_dir):
    db = Database(temp_dir / "test.db")
    await db.connect()
    yield Repository(db)
    await db.close()


async def test_unknown_mailbox_has_no_cached_headers(repo):
    assert await repo.get_email_headers("personal", "INBOX") is None


async def test_header_list_round_trip_keeps_order(repo):
    headers = [make_header(uid, has_attachments=uid == 2) for uid in (3, 2, 1)]
    await repo.save_email_headers("personal", "INBOX", headers, 120)

    cached = await repo.get_email_headers("personal", "INBOX")
    assert cached.total == 120
    assert [h.uid for h in cached.emails] == [3, 2, 1]
    assert cached.emails[1].has_attachments
    assert cached.emails[0].from_ == headers[0].from_
    assert cached.emails[0].date == headers[0].date


async def test_saving_headers_replaces_previous_list(repo):
    await repo.save_email_headers("personal", "INBOX", [make_header(u) for u in (3, 2, 1)], 3)
    await repo.save_email_headers("personal", "INBOX", [make_header(5)], 1)

    cached = await repo.get_email_headers("personal", "INBOX")
    assert [h.uid for h in cached.emails] == [5]
    assert cached.total == 1
    # Other mailboxes are untouched
    assert await repo.get_email_headers("personal", "Sent") is None


async def test_saved_ids_and_bodies(repo):
    first = make_body(make_header(1), raw=b"raw-1")
    second = make_body(
        make_header(2),
        attachments=[AttachmentInfo("report.pdf", "application/pdf", 2048)],
        has_attachments=True,
    )
    await repo.save_email(first, "personal", "INBOX")
    await repo.save_emails([second], "personal", "INBOX")

    assert await repo.is_email_saved("personal", "INBOX", 1)
    assert not await repo.is_email_saved("personal", "INBOX", 3)
    assert not await repo.is_email_saved("work", "INBOX", 1)
    assert await repo.get_saved_email_ids("personal", "INBOX") == {1, 2}

    local = await repo.get_local_emails("personal", "INBOX")
    assert [b.uid for b in local] == [2, 1]
    assert local[0].attachments[0].filename == "report.pdf"
    assert local[1].raw == b"raw-1"
    assert local[1].text == "Body of message 1"


async def test_archived_flag_survives_resave(repo):
    body = make_body(make_header(1))
    await repo.save_email(body, "personal", "INBOX")

    assert await repo.set_archived("personal", "INBOX", 1)
    assert not await repo.set_archived("personal", "INBOX", 99)

    body.text = "edited"
    await repo.save_email(body, "personal", "INBOX")

    assert await repo.get_archived_email_ids("personal", "INBOX") == {1}
    assert await repo.get_local_emails("personal", "INBOX", include_archived=False) == []


async def test_delete_account_data(repo):
    await repo.save_email_headers("personal", "INBOX", [make_header(1)], 1)
    await repo.save_email(make_body(make_header(1)), "personal", "INBOX")
    await repo.save_email(make_body(make_header(1)), "work", "INBOX")

    await repo.delete_account_data("personal")

    assert await repo.get_email_headers("personal", "INBOX") is None
    assert await repo.get_saved_email_ids("personal", "INBOX") == set()
    assert await repo.get_saved_email_ids("work", "INBOX") == {1}


async def test_database_requires_connect(temp_dir):
    db = Database(temp_dir / "other.db")
    with pytest.raises(RuntimeError):
        db.conn

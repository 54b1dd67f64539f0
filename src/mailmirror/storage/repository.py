# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# The production MailStore: persists header lists and hydrated bodies.
#
# It handles:
#   - Converting between message models and database rows (JSON payloads)
#   - Whole-list header cache writes, one transaction per mailbox
#   - Saved/archived UID bookkeeping for the pipelines
#
# All methods are async for non-blocking database access.
# =============================================================================

import json
import logging
from typing import TYPE_CHECKING

from mailmirror.core import CachedHeaders, MessageBody, MessageHeader, MessageValidationError

if TYPE_CHECKING:
    from mailmirror.storage.database import Database


logger = logging.getLogger(__name__)


class Repository:
    """
    Data access layer implementing the MailStore contract.

    Usage:
        >>> repo = Repository(database)
        >>> await repo.save_email_headers("personal", "INBOX", headers, total=120)
        >>> cached = await repo.get_email_headers("personal", "INBOX")
        >>> await repo.save_email(body, "personal", "INBOX")

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    # =========================================================================
    # Header Cache
    # =========================================================================

    async def save_email_headers(
        self,
        account_id: str,
        mailbox: str,
        emails: list[MessageHeader],
        total: int,
    ) -> None:
        """
        Replace the persisted header list of a mailbox.

        The whole list is written in a single transaction, so readers never
        see a half-written list.
        """
        conn = self.db.conn
        try:
            await conn.execute(
                """INSERT INTO header_lists (account_id, mailbox, total, updated_at)
                   VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(account_id, mailbox)
                   DO UPDATE SET total=excluded.total, updated_at=excluded.updated_at""",
                (account_id, mailbox, total),
            )
            await conn.execute(
                "DELETE FROM headers WHERE account_id = ? AND mailbox = ?",
                (account_id, mailbox),
            )
            await conn.executemany(
                """INSERT INTO headers (account_id, mailbox, position, uid, data)
                   VALUES (?, ?, ?, ?, ?)""",
                [
                    (account_id, mailbox, position, header.uid, json.dumps(header.to_dict()))
                    for position, header in enumerate(emails)
                ],
            )
        except Exception:
            await conn.rollback()
            raise
        await conn.commit()

    async def get_email_headers(self, account_id: str, mailbox: str) -> CachedHeaders | None:
        """
        Load a persisted header list, newest first.

        Returns:
            The cached list, or None if the mailbox was never cached.
        """
        async with self.db.conn.execute(
            "SELECT total FROM header_lists WHERE account_id = ? AND mailbox = ?",
            (account_id, mailbox),
        ) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            total = row[0]

        async with self.db.conn.execute(
            """SELECT data FROM headers WHERE account_id = ? AND mailbox = ?
               ORDER BY position""",
            (account_id, mailbox),
        ) as cursor:
            rows = await cursor.fetchall()

        emails = []
        for (data,) in rows:
            try:
                emails.append(MessageHeader.from_dict(json.loads(data)))
            except (MessageValidationError, json.JSONDecodeError) as e:
                logger.warning(f"Dropping unreadable cached header in {account_id}/{mailbox}: {e}")

        return CachedHeaders(emails=emails, total=total)

    # =========================================================================
    # Saved Bodies
    # =========================================================================

    async def is_email_saved(self, account_id: str, mailbox: str, uid: int) -> bool:
        async with self.db.conn.execute(
            "SELECT 1 FROM saved_emails WHERE account_id = ? AND mailbox = ? AND uid = ?",
            (account_id, mailbox, uid),
        ) as cursor:
            return await cursor.fetchone() is not None

    async def get_saved_email_ids(self, account_id: str, mailbox: str) -> set[int]:
        async with self.db.conn.execute(
            "SELECT uid FROM saved_emails WHERE account_id = ? AND mailbox = ?",
            (account_id, mailbox),
        ) as cursor:
            return {row[0] for row in await cursor.fetchall()}

    async def get_archived_email_ids(self, account_id: str, mailbox: str) -> set[int]:
        async with self.db.conn.execute(
            """SELECT uid FROM saved_emails
               WHERE account_id = ? AND mailbox = ? AND archived = 1""",
            (account_id, mailbox),
        ) as cursor:
            return {row[0] for row in await cursor.fetchall()}

    async def save_email(self, body: MessageBody, account_id: str, mailbox: str) -> None:
        """Save (or overwrite) one hydrated message. The archived flag is kept."""
        await self._insert_body(body, account_id, mailbox)
        await self.db.conn.commit()

    async def save_emails(self, bodies: list[MessageBody], account_id: str, mailbox: str) -> None:
        """Save several hydrated messages in one transaction."""
        for body in bodies:
            await self._insert_body(body, account_id, mailbox)
        await self.db.conn.commit()

    async def _insert_body(self, body: MessageBody, account_id: str, mailbox: str) -> None:
        await self.db.conn.execute(
            """INSERT INTO saved_emails
               (account_id, mailbox, uid, message_id, date, data, raw)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(account_id, mailbox, uid) DO UPDATE SET
                   message_id=excluded.message_id, date=excluded.date,
                   data=excluded.data, raw=excluded.raw,
                   saved_at=CURRENT_TIMESTAMP""",
            (account_id, mailbox, body.uid, body.message_id,
             body.date.isoformat() if body.date else None,
             json.dumps(body.to_dict()), body.raw),
        )

    async def get_local_emails(
        self,
        account_id: str,
        mailbox: str,
        *,
        limit: int | None = None,
        include_archived: bool = True,
    ) -> list[MessageBody]:
        """
        Load saved bodies for a mailbox, newest first.

        Args:
            account_id: Account to read.
            mailbox: Mailbox to read.
            limit: Maximum number of bodies to return.
            include_archived: If False, archived bodies are left out.
        """
        query = "SELECT data, raw FROM saved_emails WHERE account_id = ? AND mailbox = ?"
        params: list = [account_id, mailbox]

        if not include_archived:
            query += " AND archived = 0"

        query += " ORDER BY datetime(date) DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self.db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        bodies = []
        for data, raw in rows:
            payload = json.loads(data)
            payload["raw"] = raw
            bodies.append(MessageBody.from_dict(payload))
        return bodies

    async def set_archived(self, account_id: str, mailbox: str, uid: int, archived: bool = True) -> bool:
        """
        Mark a saved message as archived (or not).

        Returns:
            True if a saved message was updated.
        """
        cursor = await self.db.conn.execute(
            """UPDATE saved_emails SET archived = ?
               WHERE account_id = ? AND mailbox = ? AND uid = ?""",
            (1 if archived else 0, account_id, mailbox, uid),
        )
        await self.db.conn.commit()
        return cursor.rowcount > 0

    async def delete_account_data(self, account_id: str) -> None:
        """Delete everything stored for an account."""
        await self.db.conn.execute("DELETE FROM header_lists WHERE account_id = ?", (account_id,))
        await self.db.conn.execute("DELETE FROM saved_emails WHERE account_id = ?", (account_id,))
        await self.db.conn.commit()

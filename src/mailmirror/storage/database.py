# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages SQLite database connection and schema migrations.
#
# Schema overview:
#   - header_lists: one row per (account, mailbox) with the server total
#   - headers: the persisted header list of each mailbox, in display order
#   - saved_emails: hydrated message bodies ("saved" = available offline),
#                   with an archived flag
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

from pathlib import Path

import aiosqlite

from mailmirror.config import Config


# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)

        # Enable foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # Enable WAL mode for better concurrent performance
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        """Create tables if they don't exist, run migrations if needed."""
        try:
            async with self.conn.execute(
                "SELECT version FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self._create_schema()

    async def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = """
        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Persisted header list per mailbox
        CREATE TABLE IF NOT EXISTS header_lists (
            account_id TEXT NOT NULL,
            mailbox TEXT NOT NULL,
            total INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (account_id, mailbox)
        );

        CREATE TABLE IF NOT EXISTS headers (
            account_id TEXT NOT NULL,
            mailbox TEXT NOT NULL,
            position INTEGER NOT NULL,
            uid INTEGER NOT NULL,
            data TEXT NOT NULL,     -- MessageHeader.to_dict() as JSON
            PRIMARY KEY (account_id, mailbox, position),
            FOREIGN KEY (account_id, mailbox)
                REFERENCES header_lists(account_id, mailbox) ON DELETE CASCADE
        );

        -- Hydrated bodies available offline
        CREATE TABLE IF NOT EXISTS saved_emails (
            account_id TEXT NOT NULL,
            mailbox TEXT NOT NULL,
            uid INTEGER NOT NULL,
            message_id TEXT,
            date TEXT,
            archived INTEGER NOT NULL DEFAULT 0,
            data TEXT NOT NULL,     -- MessageBody.to_dict() as JSON
            raw BLOB,
            saved_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (account_id, mailbox, uid)
        );

        CREATE INDEX IF NOT EXISTS idx_headers_uid ON headers(account_id, mailbox, uid);
        CREATE INDEX IF NOT EXISTS idx_saved_date ON saved_emails(account_id, mailbox, date DESC);
        CREATE INDEX IF NOT EXISTS idx_saved_archived ON saved_emails(account_id, mailbox, archived);
        """

        await self.conn.executescript(schema)

        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()

"""
SQLite-backed message history.

Uses ``aiosqlite`` with a write lock to serialise mutations.  Messages are
append-only; a session row is created on first write.  Schema is
version-tracked and migrations run on ``init()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from toolrelay.llm.types import Message

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 2

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}'
        )""",
        """CREATE TABLE IF NOT EXISTS messages (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            role TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            payload TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        )""",
        """CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)""",
    ],
    2: [
        """ALTER TABLE sessions ADD COLUMN updated_at TEXT""",
        """CREATE INDEX IF NOT EXISTS idx_messages_tool_call
           ON messages(session_id, role)""",
    ],
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageStore:
    """
    Async SQLite store implementing the ``Persistence`` protocol.

    Usage::

        store = MessageStore("~/.toolrelay/history.db")
        await store.init()
        await store.add_message("s1", Message(role="user", content="hi"))
        history = await store.get_messages("s1")
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and bring the schema up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> MessageStore:
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("MessageStore is not initialised; call init() first")
        return self._db

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def get_schema_version(self) -> int:
        cursor = await self.db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self.db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def _run_migrations(self) -> None:
        current = await self.get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        async with self._write_lock:
            for version in range(current + 1, SCHEMA_VERSION + 1):
                stmts = MIGRATIONS.get(version)
                if stmts is None:
                    raise RuntimeError(f"Missing migration for schema version {version}")
                for stmt in stmts:
                    await self.db.execute(stmt)
                logger.debug("Applied schema migration %d to %s", version, self.db_path)

            await self.db.execute("DELETE FROM schema_version")
            await self.db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            await self.db.commit()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session_id: str, metadata: dict | None = None) -> str:
        """Create *session_id* if it does not exist yet.  Returns the id."""
        async with self._write_lock:
            await self.db.execute(
                """INSERT OR IGNORE INTO sessions (session_id, created_at, updated_at, metadata)
                   VALUES (?, ?, ?, ?)""",
                (session_id, _now(), _now(), json.dumps(metadata or {})),
            )
            await self.db.commit()
        return session_id

    async def get_session(self, session_id: str) -> dict | None:
        cursor = await self.db.execute(
            """SELECT s.session_id, s.created_at, s.updated_at, s.metadata,
                      (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.session_id)
               FROM sessions s WHERE s.session_id = ?""",
            (session_id,),
        )
        row = await cursor.fetchone()
        return self._session_row(row) if row else None

    async def list_sessions(self) -> list[dict]:
        """All sessions, most recently updated first."""
        cursor = await self.db.execute(
            """SELECT s.session_id, s.created_at, s.updated_at, s.metadata,
                      (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.session_id)
               FROM sessions s
               ORDER BY COALESCE(s.updated_at, s.created_at) DESC"""
        )
        return [self._session_row(row) for row in await cursor.fetchall()]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.  Returns False if it did not exist."""
        async with self._write_lock:
            await self.db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cursor = await self.db.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            await self.db.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _session_row(row) -> dict:
        return {
            "session_id": row[0],
            "created_at": row[1],
            "updated_at": row[2],
            "metadata": json.loads(row[3]),
            "message_count": int(row[4]),
        }

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self, session_id: str, message: Message, auth_token: str | None = None
    ) -> None:
        """Append *message* to *session_id*, creating the session if needed."""
        payload = json.dumps(message.to_dict(), ensure_ascii=False)
        now = _now()
        async with self._write_lock:
            await self.db.execute(
                """INSERT OR IGNORE INTO sessions (session_id, created_at, updated_at, metadata)
                   VALUES (?, ?, ?, '{}')""",
                (session_id, now, now),
            )
            await self.db.execute(
                """INSERT INTO messages (session_id, message_id, role, timestamp, payload)
                   VALUES (?, ?, ?, ?, ?)""",
                (session_id, message.id, message.role, message.timestamp, payload),
            )
            await self.db.execute(
                "UPDATE sessions SET updated_at = ? WHERE session_id = ?", (now, session_id)
            )
            await self.db.commit()

    async def get_messages(self, session_id: str, limit: int | None = None) -> list[dict]:
        """
        Return the stored messages of a session in insertion order.

        The result is raw ``Message.to_dict`` output, meant to be fed to
        ``validate_and_normalize_thread``.  With *limit* only the newest
        *limit* messages are returned.
        """
        if limit is not None:
            cursor = await self.db.execute(
                """SELECT payload FROM (
                       SELECT seq, payload FROM messages WHERE session_id = ?
                       ORDER BY seq DESC LIMIT ?
                   ) ORDER BY seq ASC""",
                (session_id, limit),
            )
        else:
            cursor = await self.db.execute(
                "SELECT payload FROM messages WHERE session_id = ? ORDER BY seq ASC",
                (session_id,),
            )
        messages: list[dict] = []
        for (payload,) in await cursor.fetchall():
            try:
                messages.append(json.loads(payload))
            except (json.JSONDecodeError, ValueError):
                logger.warning("Skipping unreadable stored message in session %s", session_id)
        return messages

import time
import uuid

import aiosqlite

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    chart_type TEXT NOT NULL DEFAULT 'auto',
    config TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    attachments TEXT NOT NULL DEFAULT '[]',
    legacy TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages (conversation_id, created_at);

CREATE TABLE IF NOT EXISTS blobs (
    id TEXT PRIMARY KEY,
    blob BLOB NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    size INTEGER NOT NULL
);
"""


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_id() -> str:
    return str(uuid.uuid4())


class SQLiteStore:
    """Owns the SQLite connection shared by the blob and message stores."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def generate_id(self) -> str:
        return generate_id()

    async def clear_all_stores(self) -> None:
        await self.db.execute("DELETE FROM messages")
        await self.db.execute("DELETE FROM conversations")
        await self.db.execute("DELETE FROM blobs")
        await self.db.commit()

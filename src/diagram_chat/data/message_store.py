import json
import logging

import aiosqlite

from .records import AttachmentRef, Conversation, StoredMessage
from .sqlite_store import SQLiteStore, now_ms

logger = logging.getLogger(__name__)

INSERT_MESSAGE_SQL = """INSERT INTO messages
   (id, conversation_id, role, content, type, attachments, legacy, created_at)
   VALUES (?, ?, ?, ?, ?, ?, ?, ?)"""


def _message_params(msg: StoredMessage) -> tuple:
    return (
        msg.id,
        msg.conversation_id,
        msg.role,
        msg.content,
        msg.type,
        msg.attachments_json(),
        msg.legacy_json(),
        msg.created_at,
    )


def _loads(raw: str | None, default, strict: bool, what: str, row_id: str):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        if strict:
            raise
        logger.warning("Unreadable %s on row %s, treating as empty", what, row_id)
        return default


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        chart_type=row["chart_type"],
        config=_loads(row["config"], None, False, "config", row["id"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: aiosqlite.Row, strict: bool = True) -> StoredMessage:
    """Decode a message row.

    With strict=False, unreadable attachment or legacy JSON is logged and
    treated as empty so the rest of the row is still usable.
    """
    legacy = _loads(row["legacy"], {}, strict, "legacy fields", row["id"])
    refs = _loads(row["attachments"], [], strict, "attachments", row["id"])
    if not isinstance(legacy, dict) or not isinstance(refs, list):
        if strict:
            raise ValueError(f"Malformed message row {row['id']}")
        logger.warning("Malformed message row %s, dropping its attachments", row["id"])
        legacy = legacy if isinstance(legacy, dict) else {}
        refs = refs if isinstance(refs, list) else []
    return StoredMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        type=row["type"],
        attachments=[AttachmentRef.from_dict(a) for a in refs if isinstance(a, dict)],
        created_at=row["created_at"],
        images=legacy.get("images"),
        files=legacy.get("files"),
    )


class MessageStore:
    """Conversations and their ordered, immutable messages."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    @property
    def db(self) -> aiosqlite.Connection:
        return self._store.db

    def generate_id(self) -> str:
        return self._store.generate_id()

    # --- Conversations ---

    async def add_conversation_if_missing(
        self,
        conversation_id: str,
        title: str,
        chart_type: str,
        config: dict | None = None,
    ) -> None:
        now = now_ms()
        await self.db.execute(
            """INSERT OR IGNORE INTO conversations
               (id, title, chart_type, config, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (conversation_id, title, chart_type, json.dumps(config) if config else None, now, now),
        )
        await self.db.commit()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        cursor = await self.db.execute(
            "SELECT id, title, chart_type, config, created_at, updated_at FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return _row_to_conversation(row) if row else None

    async def list_conversations(self) -> list[Conversation]:
        cursor = await self.db.execute(
            "SELECT id, title, chart_type, config, created_at, updated_at FROM conversations ORDER BY updated_at DESC"
        )
        rows = await cursor.fetchall()
        return [_row_to_conversation(r) for r in rows]

    async def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation, its messages and the blobs they reference."""
        blob_ids = []
        for msg in await self.get_conversation_messages(conversation_id, strict=False):
            blob_ids.extend(a.blob_id for a in msg.attachments if a.blob_id)

        if blob_ids:
            await self.db.executemany("DELETE FROM blobs WHERE id = ?", [(b,) for b in blob_ids])
        await self.db.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        await self.db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        await self.db.commit()

    # --- Messages ---

    async def put_message(self, msg: StoredMessage) -> None:
        await self.put_messages([msg])

    async def put_messages(self, msgs: list[StoredMessage]) -> None:
        """Insert messages in a single transaction and bump their conversations."""
        try:
            await self.db.executemany(INSERT_MESSAGE_SQL, [_message_params(m) for m in msgs])
            now = now_ms()
            for cid in {m.conversation_id for m in msgs}:
                await self.db.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ?",
                    (now, cid),
                )
        except Exception:
            await self.db.rollback()
            raise
        await self.db.commit()

    async def get_conversation_messages(self, conversation_id: str, strict: bool = True) -> list[StoredMessage]:
        cursor = await self.db.execute(
            """SELECT id, conversation_id, role, content, type, attachments, legacy, created_at
               FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid""",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(r, strict) for r in rows]

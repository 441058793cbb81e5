from .records import BlobRecord
from .sqlite_store import SQLiteStore


class BlobStore:
    """Write-once storage of attachment bytes keyed by blob id."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    async def put_blob(self, record: BlobRecord) -> None:
        await self._store.db.execute(
            "INSERT INTO blobs (id, blob, name, type, size) VALUES (?, ?, ?, ?, ?)",
            (record.id, record.blob, record.name, record.type, record.size),
        )
        await self._store.db.commit()

    async def get_blob(self, blob_id: str) -> BlobRecord | None:
        cursor = await self._store.db.execute(
            "SELECT id, blob, name, type, size FROM blobs WHERE id = ?",
            (blob_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return BlobRecord(
            id=row["id"],
            blob=bytes(row["blob"]),
            name=row["name"],
            type=row["type"],
            size=row["size"],
        )

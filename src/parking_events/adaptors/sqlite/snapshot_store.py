import logging
from datetime import datetime
from typing import Any, Dict

from ...codec import PayloadCodec
from ...errors import EventDecodingError
from ...models import Snapshot, utcnow
from .handle import SQLiteHandle


class SQLiteSnapshotStore:
    """
    Stores compressed (and optionally encrypted) aggregate state per version.
    Snapshots are a cache: one that cannot be decoded is reported as missing.
    """

    def __init__(self, handle: SQLiteHandle, codec: PayloadCodec):
        self.handle = handle
        self.codec = codec

    async def save(self, aggregate_id: str, version: int, state: Dict[str, Any]):
        async with self.handle.transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO snapshots (aggregate_id, version, state, taken_at) VALUES (?, ?, ?, ?)",
                (aggregate_id, version, self.codec.encode(state), utcnow().isoformat()),
            )

    async def load(self, aggregate_id: str) -> Snapshot | None:
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT version, state, taken_at FROM snapshots WHERE aggregate_id = ? ORDER BY version DESC LIMIT 1",
                (aggregate_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        version, blob, taken_at = row
        try:
            state = self.codec.decode(blob)
        except EventDecodingError as e:
            logging.warning(f"Ignoring unreadable snapshot {aggregate_id}@{version}: {e}")
            return None
        return Snapshot(aggregate_id=aggregate_id, version=version, state=state, taken_at=datetime.fromisoformat(taken_at))

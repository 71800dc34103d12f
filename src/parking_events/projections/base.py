"""
Base class for read-model projections.

A projection owns one table. It must tolerate duplicate delivery and events
from different aggregates arriving in any order, so creation events upsert
and update events are conditional on the row existing with an older version.
"""
import logging
from typing import Awaitable, Callable, ClassVar, Dict

import aiosqlite

from ..models import Event

EventCallback = Callable[[Event], Awaitable[None]]


class SQLiteProjection:
    name: ClassVar[str] = "projection"
    table: ClassVar[str]
    create_table_sql: ClassVar[str]

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    def handlers(self) -> Dict[str, EventCallback]:
        raise NotImplementedError

    def handles(self, event_type: str) -> bool:
        return event_type in self.handlers()

    async def handle(self, event: Event):
        handler = self.handlers().get(event.type)
        if handler is None:
            return
        await handler(event)

    async def setup(self):
        await self.conn.execute(self.create_table_sql)

    async def reset(self):
        """Drops every row so the read model can be rebuilt from the event log."""
        await self.conn.execute(f"DELETE FROM {self.table}")
        logging.info(f"Projection {self.name} reset")

    async def _execute(self, sql: str, params: tuple) -> int:
        cursor = await self.conn.execute(sql, params)
        rowcount = cursor.rowcount
        await cursor.close()
        return rowcount

    async def fetch_one(self, key: str, key_column: str = "id") -> Dict | None:
        async with self.conn.execute(f"SELECT * FROM {self.table} WHERE {key_column} = ?", (key,)) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            columns = [c[0] for c in cursor.description]
        return dict(zip(columns, row))

    async def count(self) -> int:
        async with self.conn.execute(f"SELECT COUNT(*) FROM {self.table}") as cursor:
            row = await cursor.fetchone()
        return row[0]

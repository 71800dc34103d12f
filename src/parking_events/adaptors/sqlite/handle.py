"""
Connection handling shared by the SQLite event store, snapshot store and broker.

All writes go through one dedicated write connection guarded by an
`asyncio.Lock`, inside a `BEGIN IMMEDIATE` transaction so that the
compare-and-swap on the version marker is atomic even across processes
sharing the same database file. Reads use a pool of read-only connections.
"""
import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from ...errors import StoreUnavailable


class SQLiteHandle:
    def __init__(
        self,
        write_conn: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        read_pool: asyncio.Queue | None,
    ):
        self.write_conn = write_conn
        self.write_lock = write_lock
        # None for in-memory databases: shared-cache readers would hit table
        # locks while a write is open, so reads share the write connection.
        self.read_pool = read_pool
        self.closed = False

    def _ensure_open(self):
        if self.closed:
            raise StoreUnavailable("SQLite backend is closed")

    async def _rollback(self):
        if self.write_conn.in_transaction:
            await self.write_conn.execute("ROLLBACK")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serializes writers and wraps the block in a single transaction."""
        self._ensure_open()
        async with self.write_lock:
            try:
                await self.write_conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self.write_conn
                except BaseException:
                    await self._rollback()
                    raise
                try:
                    await self.write_conn.execute("COMMIT")
                except sqlite3.Error:
                    await self._rollback()
                    raise
            except sqlite3.Error as e:
                # Driver errors surface as StoreUnavailable.
                raise StoreUnavailable(f"SQLite write failed: {e}") from e

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[aiosqlite.Connection]:
        self._ensure_open()
        try:
            if self.read_pool is None:
                async with self.write_lock:
                    yield self.write_conn
                return
            conn = await self.read_pool.get()
            try:
                yield conn
            finally:
                await self.read_pool.put(conn)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite read failed: {e}") from e

    async def close(self):
        """Closes the write connection and every pooled read connection."""
        if self.closed:
            return
        self.closed = True
        connection_tasks = [self.write_conn.close()]
        if self.read_pool is not None:
            while not self.read_pool.empty():
                connection_tasks.append(self.read_pool.get_nowait().close())
        await asyncio.gather(*connection_tasks)
        logging.info("SQLite connections closed")

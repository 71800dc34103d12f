"""
Factories owning the lifecycle of every SQLite resource.

`sqlite_backend` is an async context manager: it opens the write connection and
the read pool, creates the schema, wires the event store, snapshot store and
broker to them, and closes everything on exit. Nothing is global; callers pass
the yielded backend to the command handler and the event consumer.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import aiosqlite

from ...codec import payload_codec, snapshot_codec
from ...config import Settings
from .broker import SQLiteBroker
from .event_store import SQLiteEventStore
from .handle import SQLiteHandle
from .schema import create_schema
from .snapshot_store import SQLiteSnapshotStore


@dataclass
class SQLiteBackend:
    event_store: SQLiteEventStore
    snapshot_store: SQLiteSnapshotStore
    broker: SQLiteBroker
    handle: SQLiteHandle


async def _configure(conn: aiosqlite.Connection, cache_size_kib: int, wal: bool):
    if wal:
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous = NORMAL;")
    await conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
    await conn.execute("PRAGMA busy_timeout = 5000;")


@asynccontextmanager
async def sqlite_backend(
    db_path: str,
    *,
    exchange: str = "parking.events",
    encryption_key: bytes | str | None = None,
    cache_size_kib: int = -16384,
    polling_interval: float = 0.2,
    pool_size: int = 10,
    max_deliveries: int = 5,
    retry_delay: float = 0.05,
) -> AsyncIterator[SQLiteBackend]:
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    is_memory_db = db_path == ":memory:"
    if is_memory_db:
        # A unique name keeps backends opened side by side (e.g. in tests) apart.
        db_connect_string = f"file:memdb_{uuid.uuid4().hex}?mode=memory&cache=shared"
    else:
        db_connect_string = db_path

    # isolation_level=None: transactions are begun and ended explicitly.
    write_conn = await aiosqlite.connect(db_connect_string, uri=is_memory_db, isolation_level=None)
    read_pool: asyncio.Queue | None = None
    try:
        await _configure(write_conn, cache_size_kib, wal=not is_memory_db)
        await create_schema(write_conn)

        if not is_memory_db:
            read_pool = asyncio.Queue(maxsize=pool_size)
            for _ in range(pool_size):
                conn = await aiosqlite.connect(f"file:{db_connect_string}?mode=ro", uri=True)
                await _configure(conn, cache_size_kib, wal=False)
                await read_pool.put(conn)
    except BaseException:
        await write_conn.close()
        if read_pool is not None:
            while not read_pool.empty():
                await read_pool.get_nowait().close()
        raise

    handle = SQLiteHandle(write_conn, asyncio.Lock(), read_pool)
    broker = SQLiteBroker(
        handle,
        exchange,
        polling_interval=polling_interval,
        max_deliveries=max_deliveries,
        retry_delay=retry_delay,
    )
    backend = SQLiteBackend(
        event_store=SQLiteEventStore(handle, payload_codec(encryption_key)),
        snapshot_store=SQLiteSnapshotStore(handle, snapshot_codec(encryption_key)),
        broker=broker,
        handle=handle,
    )
    await broker.connect()
    try:
        yield backend
    finally:
        await broker.close()
        await handle.close()


def open_backend(settings: Settings):
    return sqlite_backend(
        settings.db_path,
        exchange=settings.exchange,
        encryption_key=settings.encryption_key,
        polling_interval=settings.polling_interval,
        pool_size=settings.pool_size,
        max_deliveries=settings.broker_max_deliveries,
    )


@asynccontextmanager
async def read_model_connection(path: str = ":memory:") -> AsyncIterator[aiosqlite.Connection]:
    """Opens the database a service keeps its read models in."""
    conn = await aiosqlite.connect(path, isolation_level=None)
    try:
        if path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        yield conn
    finally:
        await conn.close()

"""
This module provides the SQLite implementation of the `EventStore` protocol.

Appends compare-and-swap the `aggregate_versions` marker and insert the new
rows in the same transaction, so of two writers holding the same expected
version exactly one commits. The `UNIQUE (aggregate_id, version)` constraint
on `events` backs the marker up.
"""
import json
import logging
from datetime import datetime
from typing import AsyncIterable, List

import pydantic_core

from ...codec import PayloadCodec
from ...errors import ConcurrencyConflict, EventDecodingError
from ...models import Event
from .handle import SQLiteHandle

_EVENT_COLUMNS = "position, event_id, aggregate_id, version, event_type, schema_version, payload, metadata, occurred_at"


class SQLiteEventStore:
    def __init__(self, handle: SQLiteHandle, codec: PayloadCodec, batch_size: int = 500):
        self.handle = handle
        self.codec = codec
        self.batch_size = batch_size

    async def append(self, aggregate_id: str, expected_version: int, events: List[Event]) -> int:
        """
        Persists `events` at versions expected_version+1.. and advances the
        marker, or raises `ConcurrencyConflict` without writing anything.
        """
        async with self.handle.transaction() as conn:
            async with conn.execute(
                "SELECT version FROM aggregate_versions WHERE aggregate_id = ?", (aggregate_id,)
            ) as cursor:
                row = await cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version != expected_version:
                raise ConcurrencyConflict(aggregate_id, expected_version, current_version)
            if not events:
                return current_version

            new_version = expected_version + len(events)
            if row is None:
                await conn.execute(
                    "INSERT INTO aggregate_versions (aggregate_id, version) VALUES (?, ?)",
                    (aggregate_id, new_version),
                )
            else:
                cursor = await conn.execute(
                    "UPDATE aggregate_versions SET version = ? WHERE aggregate_id = ? AND version = ?",
                    (new_version, aggregate_id, expected_version),
                )
                if cursor.rowcount != 1:
                    raise ConcurrencyConflict(aggregate_id, expected_version, current_version)

            params = [
                (
                    event.event_id,
                    aggregate_id,
                    expected_version + i + 1,
                    event.type,
                    event.schema_version,
                    self.codec.encode(event.payload),
                    json.dumps(event.metadata) if event.metadata else None,
                    event.occurred_at.isoformat(),
                )
                for i, event in enumerate(events)
            ]
            await conn.executemany(
                "INSERT INTO events (event_id, aggregate_id, version, event_type, schema_version, payload, metadata, occurred_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
        logging.debug(f"Appended {len(events)} event(s) to {aggregate_id}, now at version {new_version}")
        return new_version

    def _row_to_event(self, row) -> Event:
        _position, event_id, aggregate_id, version, event_type, schema_version, payload, metadata_json, occurred_at = row
        try:
            return Event(
                event_id=event_id,
                aggregate_id=aggregate_id,
                version=version,
                type=event_type,
                schema_version=schema_version,
                payload=self.codec.decode(payload),
                metadata=json.loads(metadata_json) if metadata_json else None,
                occurred_at=datetime.fromisoformat(occurred_at),
            )
        except (ValueError, pydantic_core.ValidationError) as e:
            # Skipping a row would silently corrupt the replayed state.
            logging.error(f"Invalid event row {aggregate_id}@{version}: {e}")
            raise EventDecodingError(f"Invalid event row {aggregate_id}@{version}: {e}") from e

    async def load_events(self, aggregate_id: str, from_version: int = 0) -> AsyncIterable[Event]:
        """Yields events with version > from_version in ascending order."""
        async with self.handle.reader() as conn:
            async with conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE aggregate_id = ? AND version > ? ORDER BY version",
                (aggregate_id, from_version),
            ) as cursor:
                rows = await cursor.fetchall()
        for row in rows:
            yield self._row_to_event(row)

    async def load_all(self, after_position: int = 0) -> AsyncIterable[Event]:
        """Yields every event in commit order, reading in batches."""
        position = after_position
        while True:
            async with self.handle.reader() as conn:
                async with conn.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM events WHERE position > ? ORDER BY position LIMIT ?",
                    (position, self.batch_size),
                ) as cursor:
                    rows = await cursor.fetchall()
            if not rows:
                return
            for row in rows:
                yield self._row_to_event(row)
            position = rows[-1][0]

    async def current_version(self, aggregate_id: str) -> int:
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT version FROM aggregate_versions WHERE aggregate_id = ?", (aggregate_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

"""
A durable fanout broker on top of the same SQLite database as the event store.

Publishing writes the message once and one delivery row per queue currently
bound to the exchange. Each consumer polls its own deliveries, acknowledges by
deleting the row after the handler succeeds, and otherwise reschedules it with
exponential backoff until `max_deliveries` is reached, at which point the
message moves to `broker_dead_letters`. A crash between handling and
acknowledgement redelivers the message, which gives at-least-once delivery.
A message body is deleted once no queue still holds a delivery for it.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import List

from ...errors import BrokerUnavailable, PoisonMessage
from ...models import DeadLetter, Event, utcnow
from ...protocols import MessageHandler
from .handle import SQLiteHandle


class SQLiteBroker:
    def __init__(
        self,
        handle: SQLiteHandle,
        exchange: str = "parking.events",
        *,
        polling_interval: float = 0.2,
        max_deliveries: int = 5,
        retry_delay: float = 0.05,
        batch_size: int = 50,
    ):
        self.handle = handle
        self.exchange = exchange
        self._polling_interval = polling_interval
        self._max_deliveries = max_deliveries
        self._retry_delay = retry_delay
        self._batch_size = batch_size
        self._connected = False

    async def connect(self):
        self._connected = True

    async def close(self):
        self._connected = False

    def _ensure_connected(self):
        if not self._connected or self.handle.closed:
            raise BrokerUnavailable(f"Broker for exchange {self.exchange} is not connected")

    async def bind_queue(self, queue: str):
        self._ensure_connected()
        async with self.handle.transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO broker_bindings (queue, exchange, bound_at) VALUES (?, ?, ?)",
                (queue, self.exchange, utcnow().isoformat()),
            )
        logging.info(f"Queue {queue} bound to exchange {self.exchange}")

    async def publish(self, event: Event):
        self._ensure_connected()
        async with self.handle.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO broker_messages (exchange, body, published_at) VALUES (?, ?, ?)",
                (self.exchange, event.to_message(), utcnow().isoformat()),
            )
            message_id = cursor.lastrowid
            cursor = await conn.execute(
                "INSERT INTO broker_deliveries (queue, message_id, attempts, available_at) "
                "SELECT queue, ?, 0, 0 FROM broker_bindings WHERE exchange = ?",
                (message_id, self.exchange),
            )
            if cursor.rowcount == 0:
                # Nobody is bound; the event store already keeps the event.
                await conn.execute("DELETE FROM broker_messages WHERE id = ?", (message_id,))

    async def _due_deliveries(self, queue: str):
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT d.message_id, d.attempts, m.body FROM broker_deliveries d "
                "JOIN broker_messages m ON m.id = d.message_id "
                "WHERE d.queue = ? AND d.available_at <= ? ORDER BY d.message_id LIMIT ?",
                (queue, time.time(), self._batch_size),
            ) as cursor:
                return await cursor.fetchall()

    @staticmethod
    async def _prune(conn, message_id: int):
        """Drops a message body once every bound queue has acknowledged or dead-lettered it."""
        await conn.execute(
            "DELETE FROM broker_messages WHERE id = ? "
            "AND NOT EXISTS (SELECT 1 FROM broker_deliveries WHERE message_id = ?)",
            (message_id, message_id),
        )

    async def _ack(self, queue: str, message_id: int):
        async with self.handle.transaction() as conn:
            await conn.execute(
                "DELETE FROM broker_deliveries WHERE queue = ? AND message_id = ?", (queue, message_id)
            )
            await self._prune(conn, message_id)

    async def _dead_letter(self, queue: str, message_id: int, body: str, error: str, attempts: int):
        logging.error(f"Dead-lettering message {message_id} on {queue} after {attempts} deliveries: {error}")
        async with self.handle.transaction() as conn:
            await conn.execute(
                "INSERT INTO broker_dead_letters (queue, message_id, body, error, attempts, dead_at) VALUES (?, ?, ?, ?, ?, ?)",
                (queue, message_id, body, error, attempts, utcnow().isoformat()),
            )
            await conn.execute(
                "DELETE FROM broker_deliveries WHERE queue = ? AND message_id = ?", (queue, message_id)
            )
            await self._prune(conn, message_id)

    async def _retry_later(self, queue: str, message_id: int, attempts: int):
        delay = self._retry_delay * 2 ** (attempts - 1)
        async with self.handle.transaction() as conn:
            await conn.execute(
                "UPDATE broker_deliveries SET attempts = ?, available_at = ? WHERE queue = ? AND message_id = ?",
                (attempts, time.time() + delay, queue, message_id),
            )

    async def _deliver(self, queue: str, handler: MessageHandler, message_id: int, attempts: int, body: str):
        attempts += 1
        try:
            await handler(body)
        except asyncio.CancelledError:
            raise
        except PoisonMessage as e:
            await self._dead_letter(queue, message_id, body, str(e), attempts)
            return
        except Exception as e:
            if attempts >= self._max_deliveries:
                await self._dead_letter(queue, message_id, body, str(e), attempts)
            else:
                logging.warning(f"Delivery {attempts} of message {message_id} on {queue} failed: {e}")
                await self._retry_later(queue, message_id, attempts)
            return
        await self._ack(queue, message_id)

    async def consume(self, queue: str, handler: MessageHandler):
        """Polls `queue` and feeds each due message to `handler` until cancelled or closed."""
        await self.bind_queue(queue)
        while self._connected:
            full_batch = False
            try:
                rows = await self._due_deliveries(queue)
                for message_id, attempts, body in rows:
                    await self._deliver(queue, handler, message_id, attempts, body)
                full_batch = len(rows) == self._batch_size
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._connected or self.handle.closed:
                    break
                logging.error(f"Broker poll loop error on {queue}: {e}")
            # A full batch means more may be due right away.
            if not full_batch:
                await asyncio.sleep(self._polling_interval)

    async def pending(self, queue: str) -> int:
        """Number of deliveries not yet acknowledged or dead-lettered for `queue`."""
        async with self.handle.reader() as conn:
            async with conn.execute("SELECT COUNT(*) FROM broker_deliveries WHERE queue = ?", (queue,)) as cursor:
                row = await cursor.fetchone()
        return row[0]

    async def record_dead_letter(self, dead: DeadLetter):
        """Stores a dead letter raised above the broker, e.g. by one projection of a consumer."""
        async with self.handle.transaction() as conn:
            await conn.execute(
                "INSERT INTO broker_dead_letters (queue, projection, event_type, aggregate_id, body, error, attempts, dead_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    dead.queue,
                    dead.projection,
                    dead.event_type,
                    dead.aggregate_id,
                    dead.body or "",
                    dead.error,
                    dead.attempts,
                    dead.timestamp.isoformat(),
                ),
            )

    async def dead_letters(self, queue: str) -> List[DeadLetter]:
        async with self.handle.reader() as conn:
            async with conn.execute(
                "SELECT projection, event_type, aggregate_id, body, error, attempts, dead_at "
                "FROM broker_dead_letters WHERE queue = ? ORDER BY id",
                (queue,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            DeadLetter(
                queue=queue,
                projection=projection,
                event_type=event_type,
                aggregate_id=aggregate_id,
                error=error,
                attempts=attempts,
                body=body,
                timestamp=datetime.fromisoformat(dead_at),
            )
            for projection, event_type, aggregate_id, body, error, attempts, dead_at in rows
        ]

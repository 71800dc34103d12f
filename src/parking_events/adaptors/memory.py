"""
In-process implementations of the store and broker protocols.

No external dependencies. The event store uses an `asyncio.Lock` as its atomic
unit, which is sufficient within a single event loop. The broker fans every
published message out to one `asyncio.Queue` per bound queue and redelivers
failed messages with backoff before dead-lettering them.
"""
import asyncio
import logging
from collections import defaultdict, deque
from typing import Any, AsyncIterable, Dict, List

from ..errors import BrokerUnavailable, ConcurrencyConflict, PoisonMessage
from ..models import DeadLetter, Event, Snapshot, utcnow
from ..protocols import MessageHandler


class InMemoryEventStore:
    def __init__(self):
        self._streams: Dict[str, List[Event]] = defaultdict(list)
        # Latest-version marker, one entry per aggregate.
        self._versions: Dict[str, int] = {}
        self._log: List[Event] = []
        self._lock = asyncio.Lock()

    async def append(self, aggregate_id: str, expected_version: int, events: List[Event]) -> int:
        async with self._lock:
            current_version = self._versions.get(aggregate_id, 0)
            if current_version != expected_version:
                raise ConcurrencyConflict(aggregate_id, expected_version, current_version)
            if not events:
                return current_version
            committed = [
                event.model_copy(update={"aggregate_id": aggregate_id, "version": current_version + i + 1})
                for i, event in enumerate(events)
            ]
            self._streams[aggregate_id].extend(committed)
            self._log.extend(committed)
            self._versions[aggregate_id] = current_version + len(committed)
            return self._versions[aggregate_id]

    async def load_events(self, aggregate_id: str, from_version: int = 0) -> AsyncIterable[Event]:
        for event in list(self._streams.get(aggregate_id, [])):
            if event.version > from_version:
                yield event

    async def load_all(self, after_position: int = 0) -> AsyncIterable[Event]:
        for event in self._log[after_position:]:
            yield event

    async def current_version(self, aggregate_id: str) -> int:
        return self._versions.get(aggregate_id, 0)


class InMemorySnapshotStore:
    def __init__(self):
        self._snapshots: Dict[str, List[Snapshot]] = defaultdict(list)

    async def save(self, aggregate_id: str, version: int, state: Dict[str, Any]):
        self._snapshots[aggregate_id].append(Snapshot(aggregate_id=aggregate_id, version=version, state=dict(state)))

    async def load(self, aggregate_id: str) -> Snapshot | None:
        snapshots = self._snapshots.get(aggregate_id)
        if not snapshots:
            return None
        return max(snapshots, key=lambda s: s.version)


class InMemoryBroker:
    """
    Fanout broker living in one process. Messages are JSON strings; every
    queue bound at publish time receives its own copy.
    """

    def __init__(self, max_deliveries: int = 5, retry_delay: float = 0.01, history_limit: int = 1000):
        self._queues: Dict[str, asyncio.Queue] = {}
        self._dead_letters: Dict[str, List[DeadLetter]] = defaultdict(list)
        # Most recent published bodies, oldest first. For tests and debugging.
        self._history: deque = deque(maxlen=history_limit)
        self._max_deliveries = max_deliveries
        self._retry_delay = retry_delay
        self._connected = False

    async def connect(self):
        self._connected = True

    async def close(self):
        self._connected = False

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def bind_queue(self, queue: str):
        if queue not in self._queues:
            self._queues[queue] = asyncio.Queue()
            logging.info(f"Queue {queue} bound to in-memory fanout")

    async def publish(self, event: Event):
        if not self._connected:
            raise BrokerUnavailable("InMemoryBroker is not connected")
        body = event.to_message()
        self._history.append(body)
        for queue in self._queues.values():
            await queue.put((body, 1))

    async def consume(self, queue: str, handler: MessageHandler):
        await self.bind_queue(queue)
        pending = self._queues[queue]
        while True:
            body, attempt = await pending.get()
            try:
                await handler(body)
            except asyncio.CancelledError:
                raise
            except PoisonMessage as e:
                logging.error(f"Dead-lettering undecodable message on {queue}: {e}")
                self._dead_letters[queue].append(DeadLetter(queue=queue, error=str(e), attempts=attempt, body=body))
            except Exception as e:
                if attempt >= self._max_deliveries:
                    logging.error(f"Dead-lettering message on {queue} after {attempt} deliveries: {e}")
                    self._dead_letters[queue].append(
                        DeadLetter(queue=queue, error=str(e), attempts=attempt, body=body, timestamp=utcnow())
                    )
                else:
                    logging.warning(f"Delivery {attempt} on {queue} failed, redelivering: {e}")
                    asyncio.get_running_loop().call_later(
                        self._retry_delay * 2 ** (attempt - 1), pending.put_nowait, (body, attempt + 1)
                    )
            finally:
                pending.task_done()

    async def drain(self, queue: str):
        """Waits until every message currently queued for `queue` has been handled. For testing."""
        await self._queues[queue].join()

    async def record_dead_letter(self, dead: DeadLetter):
        self._dead_letters[dead.queue].append(dead)

    async def dead_letters(self, queue: str) -> List[DeadLetter]:
        return list(self._dead_letters.get(queue, []))

    @property
    def history(self) -> List[str]:
        return list(self._history)

"""
This module defines the abstract protocols for storage, messaging and projections.

By using `Protocol`-based interfaces, the command handler and the event consumer
are decoupled from the concrete backends. The in-memory and SQLite adaptors
both satisfy these contracts, and other databases or brokers can be added
without touching the orchestration code.
"""
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, List, Protocol

from .models import DeadLetter, Event, Snapshot

MessageHandler = Callable[[str], Awaitable[None]]


class EventStore(Protocol):
    """
    Append-only, per-aggregate versioned log.
    `append` is the only mutual-exclusion point of the whole system.
    """

    async def append(self, aggregate_id: str, expected_version: int, events: List[Event]) -> int:
        ...

    def load_events(self, aggregate_id: str, from_version: int = 0) -> AsyncIterable[Event]:
        ...

    def load_all(self, after_position: int = 0) -> AsyncIterable[Event]:
        ...

    async def current_version(self, aggregate_id: str) -> int:
        ...


class SnapshotStore(Protocol):
    async def save(self, aggregate_id: str, version: int, state: Dict[str, Any]):
        ...

    async def load(self, aggregate_id: str) -> Snapshot | None:
        ...


class MessageBroker(Protocol):
    """
    Fanout bus: every published event is delivered at least once to every
    queue bound at publish time.
    """

    async def connect(self):
        ...

    async def close(self):
        ...

    async def publish(self, event: Event):
        ...

    async def bind_queue(self, queue: str):
        ...

    async def consume(self, queue: str, handler: MessageHandler):
        ...

    async def record_dead_letter(self, dead: DeadLetter):
        ...

    async def dead_letters(self, queue: str) -> List[DeadLetter]:
        ...


class Projection(Protocol):
    name: str

    def handles(self, event_type: str) -> bool:
        ...

    async def handle(self, event: Event):
        ...

    async def setup(self):
        ...

    async def reset(self):
        ...

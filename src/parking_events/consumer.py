"""
The per-service event consumer.

It binds the service's queue to the fanout exchange, decodes each delivered
message and routes it by `event.type` to every projection that handles it.
Each projection runs inside its own error boundary: it is retried with
exponential backoff, and if it keeps failing the event is dead-lettered for
that projection only. Other projections still see the event and the message is
still acknowledged.
"""
import asyncio
import logging
from collections import deque
from typing import List, Sequence

import pydantic_core

from .errors import PoisonMessage, ProjectionFailure
from .models import DeadLetter, Event
from .protocols import EventStore, MessageBroker, Projection


class EventConsumer:
    def __init__(
        self,
        broker: MessageBroker,
        queue: str,
        projections: Sequence[Projection],
        *,
        max_attempts: int = 3,
        backoff: float = 0.05,
        max_dead_letters: int = 1000,
    ):
        self.broker = broker
        self.queue = queue
        self.projections = list(projections)
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._task: asyncio.Task | None = None
        # Recent dead letters for inspection; the broker keeps the durable record.
        self._dead_letters: deque = deque(maxlen=max_dead_letters)
        self.processed = 0

    async def start(self):
        if self._task:
            return
        for projection in self.projections:
            await projection.setup()
        await self.broker.bind_queue(self.queue)
        self._task = asyncio.create_task(self.broker.consume(self.queue, self.on_message), name=f"consumer-{self.queue}")
        logging.info(f"Event consumer listening on {self.queue} with {len(self.projections)} projection(s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logging.info(f"Event consumer on {self.queue} stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def on_message(self, body: str | bytes):
        try:
            event = Event.from_message(body)
        except pydantic_core.ValidationError as e:
            raise PoisonMessage(f"Undecodable message on {self.queue}: {e}") from e
        await self.dispatch(event, body if isinstance(body, str) else body.decode("utf-8", "replace"))

    async def dispatch(self, event: Event, body: str | None = None):
        routes = [p for p in self.projections if p.handles(event.type)]
        if not routes:
            logging.info(f"No projection on {self.queue} handles {event.type}; ignoring")
            return
        for projection in routes:
            await self._run_isolated(projection, event, body)
        self.processed += 1

    async def _run_isolated(self, projection: Projection, event: Event, body: str | None):
        for attempt in range(1, self.max_attempts + 1):
            try:
                await projection.handle(event)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt == self.max_attempts:
                    failure = ProjectionFailure(projection.name, event.type, e)
                    logging.error(f"Dead-lettering {event.aggregate_id}@{event.version}: {failure}")
                    dead = DeadLetter(
                        queue=self.queue,
                        projection=projection.name,
                        event_type=event.type,
                        aggregate_id=event.aggregate_id,
                        error=str(e),
                        attempts=attempt,
                        body=body if body is not None else event.to_message(),
                    )
                    self._dead_letters.append(dead)
                    await self._record(dead)
                    return
                delay = self.backoff * 2 ** (attempt - 1)
                logging.warning(
                    f"Projection {projection.name} failed on {event.type} {event.aggregate_id} "
                    f"(attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def _record(self, dead: DeadLetter):
        try:
            await self.broker.record_dead_letter(dead)
        except Exception as e:
            # The message is still acknowledged; the in-process copy remains.
            logging.error(f"Could not persist dead letter for {dead.projection} on {self.queue}: {e!r}")

    async def rebuild(self, event_store: EventStore):
        """Resets every projection and replays the whole event log through them."""
        for projection in self.projections:
            await projection.setup()
            await projection.reset()
        count = 0
        async for event in event_store.load_all():
            await self.dispatch(event)
            count += 1
        logging.info(f"Rebuilt {len(self.projections)} projection(s) on {self.queue} from {count} event(s)")
        return count

    @property
    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

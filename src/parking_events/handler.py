"""
The command handler: the single place where a command becomes durable and
visible to other services.

    load (snapshot + trailing events) -> execute -> append -> publish -> snapshot

Only `ConcurrencyConflict` is retried, always from a fresh load. Events are
published strictly after they are committed, in commit order; a publish
failure is logged and reported but never undoes the commit.
"""
import logging
from typing import Any, Dict, List, Mapping, Type

import pydantic_core

from .aggregate import Aggregate, Command
from .errors import (
    AggregateNotFound,
    BrokerUnavailable,
    ConcurrencyConflict,
    EventDecodingError,
    InvariantViolation,
    StoreUnavailable,
    UnknownEventType,
    ValidationError,
)
from .models import CommandError, CommandResult, Event
from .protocols import EventStore, MessageBroker, SnapshotStore


class CommandHandler:
    def __init__(
        self,
        aggregate_cls: Type[Aggregate],
        event_store: EventStore,
        snapshot_store: SnapshotStore,
        broker: MessageBroker,
        *,
        snapshot_every: int = 2,
        max_retries: int = 3,
        strict_replay: bool | None = None,
        commands: Mapping[str, Type[Command]] | None = None,
    ):
        if snapshot_every < 1:
            raise ValueError("snapshot_every must be at least 1")
        self.aggregate_cls = aggregate_cls
        self.event_store = event_store
        self.snapshot_store = snapshot_store
        self.broker = broker
        self.snapshot_every = snapshot_every
        self.max_retries = max_retries
        self.strict_replay = strict_replay
        # Command name -> class, used by `submit` for raw request payloads.
        self.commands: Dict[str, Type[Command]] = dict(commands or {})

    async def load(self, aggregate_id: str) -> Aggregate:
        snapshot = await self.snapshot_store.load(aggregate_id)
        if snapshot is not None:
            try:
                self.aggregate_cls.state_type.model_validate(snapshot.state)
            except pydantic_core.ValidationError as e:
                # Snapshots are a cache; fall back to the full history.
                logging.warning(f"Ignoring snapshot {aggregate_id}@{snapshot.version} with invalid state: {e}")
                snapshot = None
        from_version = snapshot.version if snapshot else 0
        events = [e async for e in self.event_store.load_events(aggregate_id, from_version)]
        aggregate = self.aggregate_cls.create(aggregate_id, strict_replay=self.strict_replay)
        aggregate.rehydrate(snapshot, events)
        return aggregate

    async def save(self, aggregate: Aggregate) -> CommandResult:
        """Appends the aggregate's uncommitted events, then publishes and snapshots them."""
        pending = list(aggregate.uncommitted_events)
        if not pending:
            return self._result(aggregate, [], changed=False)

        expected_version = aggregate.version
        committed_version = await self.event_store.append(aggregate.id, expected_version, pending)
        committed = [
            event.model_copy(update={"version": expected_version + i + 1}) for i, event in enumerate(pending)
        ]
        aggregate.mark_committed(committed_version)

        published = await self._publish(committed)
        if committed_version // self.snapshot_every > expected_version // self.snapshot_every:
            await self._snapshot(aggregate)
        return self._result(aggregate, committed, changed=True, published=published)

    async def handle(self, command: Command) -> CommandResult:
        """Runs `command` against its aggregate, retrying on concurrency conflicts."""
        attempt = 0
        while True:
            aggregate = await self.load(command.aggregate_id)
            aggregate.execute(command)
            try:
                return await self.save(aggregate)
            except ConcurrencyConflict as e:
                if attempt >= self.max_retries:
                    logging.warning(f"Giving up on {type(command).__name__} for {command.aggregate_id}: {e}")
                    raise
                attempt += 1
                logging.info(
                    f"{e}; reloading {command.aggregate_id} (retry {attempt}/{self.max_retries})"
                )

    async def submit(self, command: Command | Mapping[str, Any], command_type: str | None = None) -> CommandResult:
        """
        Like `handle`, but never raises for expected failures: the outcome is a
        `CommandResult` whose `error.category` tells business rejections apart
        from conflicts and infrastructure failures.
        """
        try:
            if not isinstance(command, Command):
                command = self._parse(command, command_type)
            return await self.handle(command)
        except ValidationError as e:
            return self._failure(command, "validation", str(e))
        except AggregateNotFound as e:
            return self._failure(command, "not_found", str(e))
        except InvariantViolation as e:
            return self._failure(command, "rejected", str(e))
        except ConcurrencyConflict as e:
            return self._failure(command, "conflict", str(e), retryable=True)
        except (StoreUnavailable, BrokerUnavailable, OSError) as e:
            logging.error(f"Infrastructure failure while handling command: {e!r}")
            return self._failure(command, "infrastructure", str(e), retryable=True)
        except (UnknownEventType, EventDecodingError) as e:
            # The stored history cannot be replayed; retrying will not change that.
            logging.error(f"Cannot rebuild aggregate for command: {e!r}")
            return self._failure(command, "infrastructure", str(e))

    def _parse(self, data: Mapping[str, Any], command_type: str | None) -> Command:
        name = command_type or data.get("type")
        command_cls = self.commands.get(name)
        if command_cls is None:
            raise ValidationError(f"Unknown command type: {name!r}")
        return command_cls.parse({k: v for k, v in data.items() if k != "type"})

    async def _publish(self, events: List[Event]) -> bool:
        for event in events:
            try:
                await self.broker.publish(event)
            except Exception as e:
                # The commit stands; later events are not published out of order.
                logging.error(
                    f"Failed to publish {event.type} {event.aggregate_id}@{event.version} after commit: {e!r}"
                )
                return False
        return True

    async def _snapshot(self, aggregate: Aggregate):
        try:
            await self.snapshot_store.save(aggregate.id, aggregate.version, aggregate.snapshot_state())
            logging.debug(f"Snapshot saved for {aggregate.id} at version {aggregate.version}")
        except Exception as e:
            logging.warning(f"Snapshot for {aggregate.id}@{aggregate.version} not saved: {e!r}")

    @staticmethod
    def _result(aggregate: Aggregate, events: List[Event], changed: bool, published: bool = True) -> CommandResult:
        return CommandResult(
            ok=True,
            aggregate_id=aggregate.id,
            version=aggregate.version,
            state=aggregate.snapshot_state(),
            events=events,
            changed=changed,
            published=published,
        )

    @staticmethod
    def _failure(command, category: str, message: str, retryable: bool = False) -> CommandResult:
        aggregate_id = getattr(command, "aggregate_id", None)
        if aggregate_id is None and isinstance(command, Mapping):
            aggregate_id = command.get("aggregate_id")
        return CommandResult(
            ok=False,
            aggregate_id=aggregate_id,
            error=CommandError(category=category, message=message, retryable=retryable),
        )

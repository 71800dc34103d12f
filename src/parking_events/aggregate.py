"""
The aggregate base class and the typed building blocks it works with.

An aggregate turns a command into at most one new event, applies events to
its in-memory state, and rebuilds that state from a snapshot plus the events
stored after it. `apply` is the single state transition function used both
for freshly produced events and for historical ones.
"""
import logging
from typing import Any, Callable, ClassVar, Dict, Generic, Iterable, List, Mapping, Type, TypeVar

import pydantic_core
from pydantic import BaseModel, ConfigDict

from .errors import EventSourcingError, UnknownEventType, ValidationError
from .models import Event, Snapshot

_event_registry: Dict[str, Type["EventPayload"]] = {}


class EventPayload(BaseModel):
    """
    Typed payload of one event type. Unknown fields are ignored and missing
    optional fields take their defaults, so payloads written by newer or older
    deployments still parse.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_type: ClassVar[str]
    schema_version: ClassVar[int] = 1

    @classmethod
    def from_event(cls, event: Event) -> "EventPayload":
        return cls.model_validate(event.payload)


P = TypeVar("P", bound=Type[EventPayload])


def register_event(cls: P) -> P:
    """Class decorator adding a payload class to the event type registry."""
    existing = _event_registry.get(cls.event_type)
    if existing is not None and existing is not cls:
        raise ValueError(f"Event type {cls.event_type!r} is already registered by {existing.__name__}")
    _event_registry[cls.event_type] = cls
    return cls


def payload_class(event_type: str) -> Type[EventPayload] | None:
    return _event_registry.get(event_type)


def parse_payload(event: Event) -> EventPayload | None:
    cls = payload_class(event.type)
    if cls is None:
        return None
    return cls.from_event(event)


class Command(BaseModel):
    """A request to change one aggregate, validated for shape before any load."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    aggregate_id: str

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "Command":
        try:
            command = cls.model_validate(dict(data))
        except pydantic_core.ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "command" for err in e.errors())
            raise ValidationError(f"Invalid {cls.__name__}: {fields}", errors=e.errors()) from e
        if not command.aggregate_id:
            raise ValidationError(f"Invalid {cls.__name__}: aggregate_id")
        return command


S = TypeVar("S", bound=BaseModel)


class Aggregate(Generic[S]):
    """
    Base class for event-sourced aggregates.

    Subclasses declare `state_type`, map command classes to methods in
    `command_handlers()` and event types to appliers in `event_appliers()`.
    Command methods validate against `self.state` and call `self._record(payload)`.
    """

    aggregate_type: ClassVar[str] = "aggregate"
    state_type: ClassVar[Type[BaseModel]]
    strict_replay: ClassVar[bool] = False

    def __init__(self, aggregate_id: str, strict_replay: bool | None = None):
        if not aggregate_id:
            raise ValidationError("Aggregate ID is required.")
        self.id = aggregate_id
        self.version = 0
        self.state: S = self.state_type()
        self.uncommitted_events: List[Event] = []
        if strict_replay is not None:
            self.strict_replay = strict_replay

    @classmethod
    def create(cls, aggregate_id: str, **kwargs) -> "Aggregate[S]":
        return cls(aggregate_id, **kwargs)

    @property
    def exists(self) -> bool:
        return self.version > 0 or bool(self.uncommitted_events)

    def command_handlers(self) -> Dict[type, Callable[[Any], None]]:
        raise NotImplementedError

    def event_appliers(self) -> Dict[str, Callable[[Event], None]]:
        raise NotImplementedError

    def execute(self, command: Command) -> List[Event]:
        """Runs a command and returns the events it produced (zero or one)."""
        handler = self.command_handlers().get(type(command))
        if handler is None:
            raise ValidationError(f"{type(self).__name__} does not accept {type(command).__name__}")
        if command.aggregate_id != self.id:
            raise ValidationError(
                f"{type(command).__name__} targets {command.aggregate_id}, not {self.id}"
            )
        produced_from = len(self.uncommitted_events)
        handler(command)
        return self.uncommitted_events[produced_from:]

    def _record(self, payload: EventPayload) -> Event:
        event = Event(
            aggregate_id=self.id,
            type=payload.event_type,
            schema_version=payload.schema_version,
            payload=payload.model_dump(mode="json"),
        )
        self.apply(event)
        self.uncommitted_events.append(event)
        return event

    def apply(self, event: Event) -> bool:
        """
        Applies one event to the in-memory state. Returns False when the event
        type (or its schema version) is unknown and was skipped.
        """
        applier = self.event_appliers().get(event.type)
        known = payload_class(event.type)
        if applier is None or (known is not None and event.schema_version > known.schema_version):
            message = (
                f"Aggregate {self.id}: unhandled event {event.type} "
                f"(schema v{event.schema_version}) at version {event.version}"
            )
            if self.strict_replay:
                raise UnknownEventType(message)
            logging.warning(f"{message}; skipping")
            return False
        applier(event)
        return True

    def rehydrate(self, snapshot: Snapshot | None, events: Iterable[Event]):
        if snapshot is not None:
            self.state = self.state_type.model_validate(snapshot.state)
            self.version = snapshot.version
        for event in events:
            if event.version and event.version <= self.version:
                # Already folded into the snapshot.
                continue
            if event.version and event.version != self.version + 1:
                raise EventSourcingError(
                    f"Aggregate {self.id}: expected event version {self.version + 1}, got {event.version}"
                )
            self.apply(event)
            self.version += 1
        logging.debug(f"Aggregate {self.id} rehydrated to version {self.version}")

    @classmethod
    def replay(cls, aggregate_id: str, events: Iterable[Event], snapshot: Snapshot | None = None, **kwargs):
        aggregate = cls(aggregate_id, **kwargs)
        aggregate.rehydrate(snapshot, events)
        return aggregate

    def snapshot_state(self) -> Dict[str, Any]:
        return self.state.model_dump(mode="json")

    def mark_committed(self, version: int):
        self.version = version
        self.uncommitted_events = []

"""
Event-sourced aggregate persistence core shared by the parking services.
"""
from .adaptors.memory import InMemoryBroker, InMemoryEventStore, InMemorySnapshotStore
from .adaptors.sqlite import open_backend, read_model_connection, sqlite_backend
from .aggregate import Aggregate, Command, EventPayload, register_event
from .config import Settings, configure_logging
from .consumer import EventConsumer
from .errors import (
    AggregateNotFound,
    BrokerUnavailable,
    ConcurrencyConflict,
    EventDecodingError,
    EventSourcingError,
    InvariantViolation,
    PoisonMessage,
    ProjectionFailure,
    StoreUnavailable,
    UnknownEventType,
    ValidationError,
)
from .handler import CommandHandler
from .models import CommandError, CommandResult, DeadLetter, Event, Snapshot

__all__ = [
    "Aggregate",
    "AggregateNotFound",
    "BrokerUnavailable",
    "Command",
    "CommandError",
    "CommandHandler",
    "CommandResult",
    "ConcurrencyConflict",
    "DeadLetter",
    "Event",
    "EventConsumer",
    "EventDecodingError",
    "EventPayload",
    "EventSourcingError",
    "InMemoryBroker",
    "InMemoryEventStore",
    "InMemorySnapshotStore",
    "InvariantViolation",
    "PoisonMessage",
    "ProjectionFailure",
    "Settings",
    "Snapshot",
    "StoreUnavailable",
    "UnknownEventType",
    "ValidationError",
    "configure_logging",
    "open_backend",
    "read_model_connection",
    "register_event",
    "sqlite_backend",
]

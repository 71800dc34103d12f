"""
This module defines the core data models for the event sourcing system using Pydantic.
These models serve as the data transfer objects (DTOs) shared by the aggregates,
the stores, the broker and the projections.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """
    An immutable fact describing one state transition of one aggregate.

    `type` is the explicit discriminant; consumers dispatch on it and never
    on which payload fields happen to be present. `version` is 0 until the
    event store commits it.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        validation_alias=AliasChoices("event_id", "eventId"),
        serialization_alias="eventId",
    )
    aggregate_id: str = Field(
        validation_alias=AliasChoices("aggregate_id", "aggregateId"),
        serialization_alias="aggregateId",
    )
    type: str
    schema_version: int = Field(
        default=1,
        validation_alias=AliasChoices("schema_version", "schemaVersion"),
        serialization_alias="schemaVersion",
    )
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("occurred_at", "occurredAt"),
        serialization_alias="occurredAt",
    )
    version: int = 0
    metadata: Dict[str, Any] | None = None

    def to_message(self) -> str:
        """Serializes the event to its camelCase wire form."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_message(cls, body: str | bytes) -> "Event":
        return cls.model_validate_json(body)


class Snapshot(BaseModel):
    aggregate_id: str
    version: int
    state: Dict[str, Any]
    taken_at: datetime = Field(default_factory=utcnow)


class CommandError(BaseModel):
    category: Literal["validation", "rejected", "not_found", "conflict", "infrastructure"]
    message: str
    retryable: bool = False


class CommandResult(BaseModel):
    ok: bool
    aggregate_id: str | None = None
    version: int | None = None
    state: Dict[str, Any] | None = None
    events: List[Event] = Field(default_factory=list)
    # False when the command was accepted but produced no event.
    changed: bool = False
    published: bool = True
    error: CommandError | None = None


class DeadLetter(BaseModel):
    """A message, or one projection's handling of it, that exhausted its retry budget."""

    queue: str
    projection: str | None = None
    event_type: str | None = None
    aggregate_id: str | None = None
    error: str
    attempts: int
    body: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

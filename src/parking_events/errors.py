"""
Exception taxonomy shared by the write side (aggregates, stores, command
handler) and the read side (broker, consumer, projections).

Callers can tell "rejected by a business rule" apart from "infrastructure
failure" by catching `InvariantViolation` separately from the
`StoreUnavailable`/`BrokerUnavailable` family and raw driver errors.
"""


class EventSourcingError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(EventSourcingError, ValueError):
    """A command is malformed or misses required fields."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class InvariantViolation(EventSourcingError):
    """A command breaks a business rule given the aggregate's current state."""


class AggregateNotFound(InvariantViolation):
    """A command targets an aggregate that does not exist yet."""


class ConcurrencyConflict(EventSourcingError, ValueError):
    """The latest-version marker did not match the expected version at append time."""

    def __init__(self, aggregate_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Concurrency conflict: expected version {expected_version}, "
            f"but aggregate {aggregate_id} is at {actual_version}"
        )
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class UnknownEventType(EventSourcingError):
    """Replay met an event type (or schema version) the aggregate does not know."""


class EventDecodingError(EventSourcingError):
    """A stored blob could not be decrypted or decoded."""


class StoreUnavailable(EventSourcingError):
    """The durable store is closed or its driver failed."""


class BrokerUnavailable(EventSourcingError):
    """The message broker is not connected."""


class ProjectionFailure(EventSourcingError):
    """A projection kept failing for one event after all retries."""

    def __init__(self, projection: str, event_type: str, cause: BaseException):
        super().__init__(f"Projection {projection} failed on {event_type}: {cause}")
        self.projection = projection
        self.event_type = event_type
        self.cause = cause


class PoisonMessage(EventSourcingError):
    """A delivered message cannot be decoded; retrying it is pointless."""

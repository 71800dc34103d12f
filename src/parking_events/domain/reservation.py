"""
Parking reservation aggregate.

A reservation is created as `pending` and moves through
pending -> checked_in | cancelled -> checked_out | cancelled.
`checked_out` and `cancelled` are terminal.
"""
import logging
from datetime import datetime
from typing import Dict, Literal

from pydantic import BaseModel, model_validator

from ..aggregate import Aggregate, Command, EventPayload, register_event
from ..errors import AggregateNotFound, InvariantViolation
from ..models import utcnow

ReservationStatus = Literal["pending", "checked_in", "checked_out", "cancelled"]

TERMINAL_STATUSES = frozenset({"checked_out", "cancelled"})

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"checked_in", "cancelled"}),
    "checked_in": frozenset({"checked_out", "cancelled"}),
    "checked_out": frozenset(),
    "cancelled": frozenset(),
}


class CreateReservation(Command):
    user_id: str
    slot_id: str
    parking_site_id: str
    floor_id: str
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.start_time >= self.end_time:
            raise ValueError("End time must be after start time.")
        return self


class UpdateParkingStatus(Command):
    new_status: ReservationStatus


@register_event
class ReservationCreated(EventPayload):
    event_type = "ReservationCreated"

    user_id: str
    slot_id: str
    parking_site_id: str | None = None
    floor_id: str | None = None
    status: ReservationStatus = "pending"
    start_time: datetime
    end_time: datetime
    created_at: datetime


@register_event
class ParkingStatusUpdated(EventPayload):
    event_type = "ParkingStatusUpdated"

    new_status: ReservationStatus
    previous_status: ReservationStatus | None = None
    user_id: str | None = None
    updated_at: datetime


class ReservationState(BaseModel):
    user_id: str | None = None
    slot_id: str | None = None
    parking_site_id: str | None = None
    floor_id: str | None = None
    status: ReservationStatus | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ReservationAggregate(Aggregate[ReservationState]):
    aggregate_type = "reservation"
    state_type = ReservationState

    def command_handlers(self):
        return {
            CreateReservation: self.create_reservation,
            UpdateParkingStatus: self.update_status,
        }

    def event_appliers(self):
        return {
            ReservationCreated.event_type: self._on_created,
            ParkingStatusUpdated.event_type: self._on_status_updated,
        }

    def create_reservation(self, command: CreateReservation):
        if self.exists:
            raise InvariantViolation(f"Reservation {self.id} already exists.")
        self._record(
            ReservationCreated(
                user_id=command.user_id,
                slot_id=command.slot_id,
                parking_site_id=command.parking_site_id,
                floor_id=command.floor_id,
                start_time=command.start_time,
                end_time=command.end_time,
                created_at=utcnow(),
            )
        )

    def update_status(self, command: UpdateParkingStatus):
        if not self.exists:
            raise AggregateNotFound(f"Reservation {self.id} does not exist yet. Cannot update status.")
        current = self.state.status
        if current is None:
            # The creation event was skipped on replay (e.g. a newer schema version).
            raise InvariantViolation(f"Reservation {self.id} state is not materialised; cannot update status.")
        if current in TERMINAL_STATUSES:
            raise InvariantViolation(f"Cannot update status from the current status: {current}.")
        if current == command.new_status:
            logging.info(f"Reservation {self.id} is already {current}; no change applied")
            return
        if command.new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvariantViolation(f"Cannot move reservation {self.id} from {current} to {command.new_status}.")
        self._record(
            ParkingStatusUpdated(
                new_status=command.new_status,
                previous_status=current,
                user_id=self.state.user_id,
                updated_at=utcnow(),
            )
        )

    def _on_created(self, event):
        data = ReservationCreated.from_event(event)
        self.state = ReservationState(
            user_id=data.user_id,
            slot_id=data.slot_id,
            parking_site_id=data.parking_site_id,
            floor_id=data.floor_id,
            status=data.status,
            start_time=data.start_time,
            end_time=data.end_time,
            created_at=data.created_at,
            updated_at=data.created_at,
        )

    def _on_status_updated(self, event):
        data = ParkingStatusUpdated.from_event(event)
        self.state = self.state.model_copy(update={"status": data.new_status, "updated_at": data.updated_at})

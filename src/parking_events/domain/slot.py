"""Parking slot aggregate."""
import logging
from typing import Literal

from pydantic import BaseModel

from ..aggregate import Aggregate, Command, EventPayload, register_event
from ..errors import AggregateNotFound, InvariantViolation
from ..models import utcnow

SlotStatus = Literal["available", "occupied", "maintenance"]


class CreateSlot(Command):
    name: str
    floor: str | None = None
    details: str | None = None
    parking_site_id: str
    floor_id: str


class UpdateSlotStatus(Command):
    new_status: SlotStatus


@register_event
class SlotCreated(EventPayload):
    event_type = "SlotCreated"

    name: str
    floor: str | None = None
    details: str | None = None
    parking_site_id: str | None = None
    floor_id: str | None = None
    status: SlotStatus = "available"


@register_event
class SlotStatusUpdated(EventPayload):
    event_type = "SlotStatusUpdated"

    new_status: SlotStatus
    updated_at: str | None = None


class SlotState(BaseModel):
    name: str | None = None
    floor: str | None = None
    details: str | None = None
    parking_site_id: str | None = None
    floor_id: str | None = None
    status: SlotStatus | None = None


class SlotAggregate(Aggregate[SlotState]):
    aggregate_type = "slot"
    state_type = SlotState

    def command_handlers(self):
        return {CreateSlot: self.create_slot, UpdateSlotStatus: self.update_status}

    def event_appliers(self):
        return {
            SlotCreated.event_type: self._on_created,
            SlotStatusUpdated.event_type: self._on_status_updated,
        }

    def create_slot(self, command: CreateSlot):
        if self.exists:
            raise InvariantViolation(f"Slot {self.id} already exists.")
        self._record(
            SlotCreated(
                name=command.name,
                floor=command.floor,
                details=command.details,
                parking_site_id=command.parking_site_id,
                floor_id=command.floor_id,
            )
        )

    def update_status(self, command: UpdateSlotStatus):
        if not self.exists:
            raise AggregateNotFound(f"Slot {self.id} does not exist yet.")
        if self.state.status == command.new_status:
            logging.info(f"Slot {self.id} is already {command.new_status}; no change applied")
            return
        self._record(SlotStatusUpdated(new_status=command.new_status, updated_at=utcnow().isoformat()))

    def _on_created(self, event):
        data = SlotCreated.from_event(event)
        self.state = SlotState(**data.model_dump())

    def _on_status_updated(self, event):
        data = SlotStatusUpdated.from_event(event)
        self.state = self.state.model_copy(update={"status": data.new_status})

from .reservation import (
    CreateReservation,
    ParkingStatusUpdated,
    ReservationAggregate,
    ReservationCreated,
    ReservationState,
    UpdateParkingStatus,
)
from .slot import CreateSlot, SlotAggregate, SlotCreated, SlotState, SlotStatusUpdated, UpdateSlotStatus
from .user import RegisterUser, UserAggregate, UserCreated, UserState

__all__ = [
    "CreateReservation",
    "ParkingStatusUpdated",
    "ReservationAggregate",
    "ReservationCreated",
    "ReservationState",
    "UpdateParkingStatus",
    "CreateSlot",
    "SlotAggregate",
    "SlotCreated",
    "SlotState",
    "SlotStatusUpdated",
    "UpdateSlotStatus",
    "RegisterUser",
    "UserAggregate",
    "UserCreated",
    "UserState",
]

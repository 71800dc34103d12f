from .activity import ActivityProjection
from .base import SQLiteProjection
from .reservation import ReservationProjection
from .slot import SlotProjection
from .user import UserProjection

__all__ = ["ActivityProjection", "ReservationProjection", "SQLiteProjection", "SlotProjection", "UserProjection"]

import logging

from ..domain.slot import SlotCreated, SlotStatusUpdated
from ..models import Event
from .base import SQLiteProjection


class SlotProjection(SQLiteProjection):
    name = "slots"
    table = "slots"
    create_table_sql = """
        CREATE TABLE IF NOT EXISTS slots (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            floor TEXT,
            details TEXT,
            parking_site_id TEXT,
            floor_id TEXT,
            status TEXT NOT NULL,
            version INTEGER NOT NULL
        )
    """

    def handlers(self):
        return {
            SlotCreated.event_type: self.on_slot_created,
            SlotStatusUpdated.event_type: self.on_status_updated,
        }

    async def on_slot_created(self, event: Event):
        data = SlotCreated.from_event(event)
        await self._execute(
            """
            INSERT INTO slots (id, name, floor, details, parking_site_id, floor_id, status, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO NOTHING
            """,
            (
                event.aggregate_id,
                data.name,
                data.floor,
                data.details,
                data.parking_site_id,
                data.floor_id,
                data.status,
                event.version or 1,
            ),
        )
        logging.info(f"[{self.name}] projected new slot {data.name} ({event.aggregate_id})")

    async def on_status_updated(self, event: Event):
        data = SlotStatusUpdated.from_event(event)
        await self._execute(
            "UPDATE slots SET status = ?, version = ? WHERE id = ? AND version < ?",
            (data.new_status, event.version, event.aggregate_id, event.version),
        )

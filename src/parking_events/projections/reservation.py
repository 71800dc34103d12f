import logging

from ..domain.reservation import ParkingStatusUpdated, ReservationCreated
from ..models import Event, utcnow
from .base import SQLiteProjection


class ReservationProjection(SQLiteProjection):
    """Maintains the `reservations` table queried by the reservation API."""

    name = "reservations"
    table = "reservations"
    create_table_sql = """
        CREATE TABLE IF NOT EXISTS reservations (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            slot_id TEXT NOT NULL,
            parking_site_id TEXT,
            floor_id TEXT,
            status TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            reserved_at TEXT NOT NULL,
            version INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    def handlers(self):
        return {
            ReservationCreated.event_type: self.on_reservation_created,
            ParkingStatusUpdated.event_type: self.on_status_updated,
        }

    async def on_reservation_created(self, event: Event):
        data = ReservationCreated.from_event(event)
        # A re-delivered creation event must not roll back later status updates.
        await self._execute(
            """
            INSERT INTO reservations (id, user_id, slot_id, parking_site_id, floor_id, status,
                                      start_time, end_time, reserved_at, version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                user_id = excluded.user_id,
                slot_id = excluded.slot_id,
                parking_site_id = excluded.parking_site_id,
                floor_id = excluded.floor_id,
                start_time = excluded.start_time,
                end_time = excluded.end_time,
                reserved_at = excluded.reserved_at
            WHERE reservations.version <= excluded.version
            """,
            (
                event.aggregate_id,
                data.user_id,
                data.slot_id,
                data.parking_site_id,
                data.floor_id,
                data.status,
                data.start_time.isoformat(),
                data.end_time.isoformat(),
                data.created_at.isoformat(),
                event.version or 1,
                utcnow().isoformat(),
            ),
        )
        logging.info(f"[{self.name}] projected reservation {event.aggregate_id}")

    async def on_status_updated(self, event: Event):
        data = ParkingStatusUpdated.from_event(event)
        updated = await self._execute(
            "UPDATE reservations SET status = ?, version = ?, updated_at = ? WHERE id = ? AND version < ?",
            (data.new_status, event.version, data.updated_at.isoformat(), event.aggregate_id, event.version),
        )
        if not updated:
            logging.info(
                f"[{self.name}] status update v{event.version} for {event.aggregate_id} skipped (row missing or newer)"
            )

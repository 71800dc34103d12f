from ..domain.reservation import ParkingStatusUpdated, ReservationCreated
from ..models import Event
from .base import SQLiteProjection


class ActivityProjection(SQLiteProjection):
    """
    Recent reservation activity per user, hosted by the activity-history
    service. Reacts to the same reservation events as `ReservationProjection`
    but keeps its own, independently owned table.
    """

    name = "recent_activity"
    table = "recent_activity"
    create_table_sql = """
        CREATE TABLE IF NOT EXISTS recent_activity (
            reservation_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            slot_id TEXT NOT NULL,
            status TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
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
        await self._execute(
            """
            INSERT INTO recent_activity (reservation_id, user_id, slot_id, status, start_time, end_time, version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (reservation_id) DO NOTHING
            """,
            (
                event.aggregate_id,
                data.user_id,
                data.slot_id,
                data.status,
                data.start_time.isoformat(),
                data.end_time.isoformat(),
                event.version or 1,
                event.occurred_at.isoformat(),
            ),
        )

    async def on_status_updated(self, event: Event):
        data = ParkingStatusUpdated.from_event(event)
        await self._execute(
            "UPDATE recent_activity SET status = ?, version = ?, updated_at = ? WHERE reservation_id = ? AND version < ?",
            (data.new_status, event.version, data.updated_at.isoformat(), event.aggregate_id, event.version),
        )

    async def recent_for_user(self, user_id: str, limit: int = 10):
        async with self.conn.execute(
            "SELECT reservation_id, slot_id, status, start_time, end_time, updated_at FROM recent_activity "
            "WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
            columns = [c[0] for c in cursor.description]
        return [dict(zip(columns, row)) for row in rows]

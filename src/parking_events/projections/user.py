from ..domain.user import UserCreated
from ..models import Event
from .base import SQLiteProjection


class UserProjection(SQLiteProjection):
    name = "users"
    table = "users"
    create_table_sql = """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT NOT NULL,
            status TEXT NOT NULL,
            version INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    def handlers(self):
        return {UserCreated.event_type: self.on_user_created}

    async def on_user_created(self, event: Event):
        data = UserCreated.from_event(event)
        await self._execute(
            """
            INSERT INTO users (id, name, email, status, version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET name = excluded.name, email = excluded.email
            WHERE users.version <= excluded.version
            """,
            (event.aggregate_id, data.name, data.email, data.status, event.version or 1, event.occurred_at.isoformat()),
        )

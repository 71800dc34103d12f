import aiosqlite


async def create_schema(conn: aiosqlite.Connection):
    # Schema management is centralized here. The factory runs it on the write
    # connection before any read connection is opened.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            position INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id TEXT NOT NULL UNIQUE,
            aggregate_id TEXT NOT NULL,
            version INTEGER NOT NULL CHECK (version >= 1),
            event_type TEXT NOT NULL,
            schema_version INTEGER NOT NULL DEFAULT 1,
            payload BLOB NOT NULL,
            metadata TEXT,
            occurred_at TEXT NOT NULL,
            UNIQUE (aggregate_id, version)
        )
    """
    )
    # Latest-version marker: the compare-and-swap anchor for appends.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS aggregate_versions (
            aggregate_id TEXT PRIMARY KEY,
            version INTEGER NOT NULL
        )
    """
    )
    # Snapshots are kept per version; loading picks the highest one.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS snapshots (
            aggregate_id TEXT NOT NULL,
            version INTEGER NOT NULL,
            state BLOB NOT NULL,
            taken_at TEXT NOT NULL,
            PRIMARY KEY (aggregate_id, version)
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS broker_bindings (
            queue TEXT PRIMARY KEY,
            exchange TEXT NOT NULL,
            bound_at TEXT NOT NULL
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS broker_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            exchange TEXT NOT NULL,
            body TEXT NOT NULL,
            published_at TEXT NOT NULL
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS broker_deliveries (
            queue TEXT NOT NULL,
            message_id INTEGER NOT NULL REFERENCES broker_messages (id),
            attempts INTEGER NOT NULL DEFAULT 0,
            available_at REAL NOT NULL DEFAULT 0,
            PRIMARY KEY (queue, message_id)
        )
    """
    )
    # Broker-level rows carry a message_id; projection-level rows name the projection.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS broker_dead_letters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            queue TEXT NOT NULL,
            message_id INTEGER,
            projection TEXT,
            event_type TEXT,
            aggregate_id TEXT,
            body TEXT NOT NULL,
            error TEXT NOT NULL,
            attempts INTEGER NOT NULL,
            dead_at TEXT NOT NULL
        )
    """
    )

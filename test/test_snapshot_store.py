import pytest
from pytest_asyncio import fixture
import os
import tempfile

from cryptography.fernet import Fernet

from parking_events import InMemorySnapshotStore, sqlite_backend


@fixture(params=["memory", "sqlite"])
async def snapshot_store(request):
    if request.param == "memory":
        yield InMemorySnapshotStore()
        return
    async with sqlite_backend(":memory:") as backend:
        yield backend.snapshot_store


@pytest.mark.asyncio
async def test_missing_snapshot(snapshot_store):
    assert await snapshot_store.load("R1") is None


@pytest.mark.asyncio
async def test_latest_snapshot_wins(snapshot_store):
    await snapshot_store.save("R1", 2, {"status": "checked_in"})
    await snapshot_store.save("R1", 4, {"status": "checked_out"})
    await snapshot_store.save("R2", 2, {"status": "pending"})

    snapshot = await snapshot_store.load("R1")
    assert snapshot.version == 4
    assert snapshot.state == {"status": "checked_out"}
    assert snapshot.aggregate_id == "R1"


@pytest.mark.asyncio
async def test_older_snapshots_are_kept():
    async with sqlite_backend(":memory:") as backend:
        await backend.snapshot_store.save("R1", 2, {"status": "checked_in"})
        await backend.snapshot_store.save("R1", 4, {"status": "checked_out"})
        async with backend.handle.reader() as conn:
            async with conn.execute("SELECT version FROM snapshots WHERE aggregate_id = 'R1' ORDER BY version") as cursor:
                rows = await cursor.fetchall()
    assert [r[0] for r in rows] == [2, 4]


@pytest.mark.asyncio
async def test_snapshots_are_compressed_and_encrypted():
    key = Fernet.generate_key()
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "snapshots.db")
        async with sqlite_backend(db_path, encryption_key=key) as backend:
            await backend.snapshot_store.save("R1", 2, {"user_id": "secret-user", "status": "pending"})
            async with backend.handle.reader() as conn:
                async with conn.execute("SELECT state FROM snapshots") as cursor:
                    (blob,) = await cursor.fetchone()
            assert b"secret-user" not in blob
            assert (await backend.snapshot_store.load("R1")).state["user_id"] == "secret-user"

        # Snapshots are only a cache: one that cannot be read counts as missing.
        async with sqlite_backend(db_path, encryption_key=Fernet.generate_key()) as backend:
            assert await backend.snapshot_store.load("R1") is None


@pytest.mark.asyncio
async def test_corrupt_snapshot_is_ignored():
    async with sqlite_backend(":memory:") as backend:
        async with backend.handle.transaction() as conn:
            await conn.execute(
                "INSERT INTO snapshots (aggregate_id, version, state, taken_at) VALUES (?, ?, ?, ?)",
                ("R1", 2, b"not zlib", "2025-01-01T00:00:00+00:00"),
            )
        assert await backend.snapshot_store.load("R1") is None

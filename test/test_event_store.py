import pytest
from pytest_asyncio import fixture
import asyncio
import os
import tempfile

from cryptography.fernet import Fernet

from parking_events import (
    ConcurrencyConflict,
    Event,
    EventDecodingError,
    InMemoryEventStore,
    StoreUnavailable,
    sqlite_backend,
)


def make_event(aggregate_id="R1", event_type="ReservationCreated", **payload):
    return Event(aggregate_id=aggregate_id, type=event_type, payload=payload)


@fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "events.db")


@fixture(params=["memory", "sqlite-memory", "sqlite-file"])
async def event_store(request, db_path):
    if request.param == "memory":
        yield InMemoryEventStore()
        return
    path = ":memory:" if request.param == "sqlite-memory" else db_path
    async with sqlite_backend(path) as backend:
        yield backend.event_store


@pytest.mark.asyncio
async def test_append_assigns_contiguous_versions(event_store):
    version = await event_store.append("R1", 0, [make_event(step=1), make_event(step=2)])
    assert version == 2
    version = await event_store.append("R1", 2, [make_event(step=3)])
    assert version == 3

    events = [e async for e in event_store.load_events("R1")]
    assert [e.version for e in events] == [1, 2, 3]
    assert [e.payload["step"] for e in events] == [1, 2, 3]
    assert await event_store.current_version("R1") == 3


@pytest.mark.asyncio
async def test_load_events_from_version(event_store):
    await event_store.append("R1", 0, [make_event(step=i) for i in range(5)])
    tail = [e async for e in event_store.load_events("R1", from_version=3)]
    assert [e.version for e in tail] == [4, 5]


@pytest.mark.asyncio
async def test_unknown_aggregate_is_empty(event_store):
    assert await event_store.current_version("nope") == 0
    assert [e async for e in event_store.load_events("nope")] == []


@pytest.mark.asyncio
async def test_stale_expected_version_conflicts_and_writes_nothing(event_store):
    await event_store.append("R1", 0, [make_event()])

    with pytest.raises(ConcurrencyConflict) as exc_info:
        await event_store.append("R1", 0, [make_event(step="late")])
    assert str(exc_info.value).startswith("Concurrency conflict")
    assert exc_info.value.actual_version == 1

    events = [e async for e in event_store.load_events("R1")]
    assert len(events) == 1
    assert await event_store.current_version("R1") == 1


@pytest.mark.asyncio
async def test_empty_append_checks_the_marker(event_store):
    await event_store.append("R1", 0, [make_event()])
    assert await event_store.append("R1", 1, []) == 1
    with pytest.raises(ConcurrencyConflict):
        await event_store.append("R1", 0, [])


@pytest.mark.asyncio
async def test_exactly_one_of_two_racing_appends_wins(event_store):
    await event_store.append("R1", 0, [make_event()])

    results = await asyncio.gather(
        event_store.append("R1", 1, [make_event(event_type="ParkingStatusUpdated", new_status="checked_in")]),
        event_store.append("R1", 1, [make_event(event_type="ParkingStatusUpdated", new_status="cancelled")]),
        return_exceptions=True,
    )

    assert sorted(type(r).__name__ for r in results) == ["ConcurrencyConflict", "int"]
    assert 2 in results
    assert await event_store.current_version("R1") == 2


@pytest.mark.asyncio
async def test_versions_stay_contiguous_under_concurrent_writers(event_store):
    async def writer(n):
        while True:
            current = await event_store.current_version("R1")
            try:
                return await event_store.append("R1", current, [make_event(writer=n)])
            except ConcurrencyConflict:
                await asyncio.sleep(0)

    await asyncio.gather(*[writer(n) for n in range(15)])

    events = [e async for e in event_store.load_events("R1")]
    assert [e.version for e in events] == list(range(1, 16))
    assert sorted(e.payload["writer"] for e in events) == list(range(15))


@pytest.mark.asyncio
async def test_load_all_follows_commit_order(event_store):
    await event_store.append("R1", 0, [make_event("R1", step=1)])
    await event_store.append("R2", 0, [make_event("R2", step=2)])
    await event_store.append("R1", 1, [make_event("R1", step=3)])

    log = [e async for e in event_store.load_all()]
    assert [(e.aggregate_id, e.version) for e in log] == [("R1", 1), ("R2", 1), ("R1", 2)]

    after_first = [e async for e in event_store.load_all(after_position=1)]
    assert [e.payload["step"] for e in after_first] == [2, 3]


@pytest.mark.asyncio
async def test_event_fields_survive_storage(event_store):
    original = Event(
        aggregate_id="R1",
        type="ReservationCreated",
        schema_version=1,
        payload={"user_id": "u-1", "slot_id": "S-1"},
        metadata={"correlation_id": "c-1"},
    )
    await event_store.append("R1", 0, [original])
    (stored,) = [e async for e in event_store.load_events("R1")]

    assert stored.event_id == original.event_id
    assert stored.type == original.type
    assert stored.payload == original.payload
    assert stored.metadata == original.metadata
    assert stored.occurred_at == original.occurred_at
    assert stored.version == 1


@pytest.mark.asyncio
async def test_sqlite_load_all_batches(db_path):
    async with sqlite_backend(db_path) as backend:
        backend.event_store.batch_size = 3
        for i in range(7):
            await backend.event_store.append(f"R{i}", 0, [make_event(f"R{i}")])
        log = [e async for e in backend.event_store.load_all()]
    assert [e.aggregate_id for e in log] == [f"R{i}" for i in range(7)]


@pytest.mark.asyncio
async def test_sqlite_data_survives_reopen(db_path):
    async with sqlite_backend(db_path) as backend:
        await backend.event_store.append("R1", 0, [make_event(step=1), make_event(step=2)])

    async with sqlite_backend(db_path) as backend:
        assert await backend.event_store.current_version("R1") == 2
        with pytest.raises(ConcurrencyConflict):
            await backend.event_store.append("R1", 1, [make_event(step=3)])


@pytest.mark.asyncio
async def test_sqlite_encrypts_payloads_at_rest(db_path):
    key = Fernet.generate_key()
    async with sqlite_backend(db_path, encryption_key=key) as backend:
        await backend.event_store.append("R1", 0, [make_event(user_id="secret-user")])

        async with backend.handle.reader() as conn:
            async with conn.execute("SELECT payload FROM events") as cursor:
                (blob,) = await cursor.fetchone()
        assert b"secret-user" not in blob

        (event,) = [e async for e in backend.event_store.load_events("R1")]
        assert event.payload == {"user_id": "secret-user"}

    async with sqlite_backend(db_path, encryption_key=Fernet.generate_key()) as backend:
        with pytest.raises(EventDecodingError):
            [e async for e in backend.event_store.load_events("R1")]


@pytest.mark.asyncio
async def test_sqlite_store_is_unavailable_after_close(db_path):
    async with sqlite_backend(db_path) as backend:
        store = backend.event_store
    with pytest.raises(StoreUnavailable):
        await store.append("R1", 0, [make_event()])
    with pytest.raises(StoreUnavailable):
        await store.current_version("R1")


@pytest.mark.asyncio
async def test_sqlite_driver_errors_are_store_unavailable(db_path):
    async with sqlite_backend(db_path) as backend:
        await backend.event_store.append("R1", 0, [make_event()])

        with pytest.raises(StoreUnavailable):
            async with backend.handle.transaction() as conn:
                await conn.execute("INSERT INTO events (event_id) VALUES ('broken')")
        with pytest.raises(StoreUnavailable):
            async with backend.handle.reader() as conn:
                await conn.execute("SELECT * FROM no_such_table")

        # The failed transaction was rolled back and the handle is still usable.
        assert await backend.event_store.append("R1", 1, [make_event()]) == 2
        assert not backend.handle.write_conn.in_transaction

@pytest.mark.asyncio
async def test_separate_memory_backends_are_isolated():
    async with sqlite_backend(":memory:") as first, sqlite_backend(":memory:") as second:
        await first.event_store.append("R1", 0, [make_event()])
        assert await second.event_store.current_version("R1") == 0

import pytest
from pytest_asyncio import fixture
import asyncio
import os
import tempfile

from parking_events import BrokerUnavailable, Event, InMemoryBroker, PoisonMessage, sqlite_backend


async def eventually(predicate, timeout=3.0, interval=0.01):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def make_event(version=1, aggregate_id="R1"):
    return Event(aggregate_id=aggregate_id, type="ReservationCreated", version=version, payload={"slot_id": "S-1"})


class Recorder:
    """Message handler that fails the first `failures` deliveries."""

    def __init__(self, failures=0, poison=False):
        self.failures = failures
        self.poison = poison
        self.calls = 0
        self.bodies = []

    async def __call__(self, body):
        self.calls += 1
        if self.poison:
            raise PoisonMessage("cannot decode")
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        self.bodies.append(body)


@fixture(params=["memory", "sqlite"])
async def broker(request):
    if request.param == "memory":
        async with InMemoryBroker(max_deliveries=3, retry_delay=0.01) as b:
            yield b
        return
    async with sqlite_backend(":memory:", polling_interval=0.01, max_deliveries=3, retry_delay=0.01) as backend:
        yield backend.broker


@fixture
async def consuming(broker):
    """Starts consumers on demand and cancels them at teardown."""
    tasks = []

    async def start(queue, handler):
        await broker.bind_queue(queue)
        tasks.append(asyncio.create_task(broker.consume(queue, handler)))

    yield start
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@pytest.mark.asyncio
async def test_every_bound_queue_gets_a_copy(broker, consuming):
    reservations, activity = Recorder(), Recorder()
    await consuming("reservation-service.events", reservations)
    await consuming("activity-service.events", activity)

    await broker.publish(make_event(1))
    await broker.publish(make_event(2))

    await eventually(lambda: len(reservations.bodies) == 2 and len(activity.bodies) == 2)
    assert [Event.from_message(b).version for b in reservations.bodies] == [1, 2]
    assert reservations.bodies == activity.bodies


@pytest.mark.asyncio
async def test_queue_bound_after_publish_misses_the_message(broker, consuming):
    await broker.publish(make_event(1))
    late = Recorder()
    await consuming("late.events", late)
    await broker.publish(make_event(2))

    await eventually(lambda: len(late.bodies) == 1)
    assert Event.from_message(late.bodies[0]).version == 2


@pytest.mark.asyncio
async def test_failed_delivery_is_redelivered(broker, consuming):
    flaky = Recorder(failures=2)
    await consuming("flaky.events", flaky)
    await broker.publish(make_event())

    await eventually(lambda: len(flaky.bodies) == 1)
    assert flaky.calls == 3
    assert await broker.dead_letters("flaky.events") == []


@pytest.mark.asyncio
async def test_exhausted_message_is_dead_lettered(broker, consuming):
    broken = Recorder(failures=100)
    await consuming("broken.events", broken)
    await broker.publish(make_event())

    await eventually(lambda: _has_dead_letter(broker, "broken.events"))
    (dead,) = await broker.dead_letters("broken.events")
    assert dead.attempts == 3
    assert "transient failure 3" in dead.error
    assert Event.from_message(dead.body).aggregate_id == "R1"
    assert broken.calls == 3


@pytest.mark.asyncio
async def test_poison_message_skips_retries(broker, consuming):
    poisoned = Recorder(poison=True)
    await consuming("poison.events", poisoned)
    await broker.publish(make_event())

    await eventually(lambda: _has_dead_letter(broker, "poison.events"))
    (dead,) = await broker.dead_letters("poison.events")
    assert dead.attempts == 1
    assert poisoned.calls == 1


async def _has_dead_letter(broker, queue):
    return bool(await broker.dead_letters(queue))


@pytest.mark.asyncio
async def test_publish_requires_connection():
    broker = InMemoryBroker()
    with pytest.raises(BrokerUnavailable):
        await broker.publish(make_event())

    async with sqlite_backend(":memory:") as backend:
        await backend.broker.close()
        with pytest.raises(BrokerUnavailable):
            await backend.broker.publish(make_event())


@pytest.mark.asyncio
async def test_in_memory_drain_waits_for_handling():
    async with InMemoryBroker() as broker:
        recorder = Recorder()
        await broker.bind_queue("q")
        task = asyncio.create_task(broker.consume("q", recorder))
        for version in range(1, 4):
            await broker.publish(make_event(version))
        await broker.drain("q")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    assert len(recorder.bodies) == 3


@pytest.mark.asyncio
async def test_sqlite_deliveries_survive_restart():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "broker.db")
        async with sqlite_backend(db_path) as backend:
            await backend.broker.bind_queue("reservation-service.events")
            await backend.broker.publish(make_event())
            assert await backend.broker.pending("reservation-service.events") == 1

        async with sqlite_backend(db_path, polling_interval=0.01) as backend:
            recorder = Recorder()
            task = asyncio.create_task(backend.broker.consume("reservation-service.events", recorder))
            await eventually(lambda: len(recorder.bodies) == 1)
            await eventually(lambda: _pending_is_zero(backend.broker, "reservation-service.events"))
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


async def _pending_is_zero(broker, queue):
    return await broker.pending(queue) == 0


async def _stored_messages(backend):
    async with backend.handle.reader() as conn:
        async with conn.execute("SELECT COUNT(*) FROM broker_messages") as cursor:
            (count,) = await cursor.fetchone()
    return count


@pytest.mark.asyncio
async def test_sqlite_messages_are_pruned_once_every_queue_is_done():
    async with sqlite_backend(":memory:", polling_interval=0.01, max_deliveries=2, retry_delay=0.01) as backend:
        broker = backend.broker
        await broker.publish(make_event(1))
        assert await _stored_messages(backend) == 0

        ok, broken = Recorder(), Recorder(failures=100)
        await broker.bind_queue("ok.events")
        await broker.bind_queue("broken.events")
        await broker.publish(make_event(2))
        assert await _stored_messages(backend) == 1

        tasks = [
            asyncio.create_task(broker.consume("ok.events", ok)),
            asyncio.create_task(broker.consume("broken.events", broken)),
        ]
        try:
            await eventually(lambda: _has_dead_letter(broker, "broken.events"))
            await eventually(lambda: _pending_is_zero(broker, "ok.events"))
            assert len(ok.bodies) == 1
            assert await _stored_messages(backend) == 0
            (dead,) = await broker.dead_letters("broken.events")
            assert Event.from_message(dead.body).version == 2
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


@pytest.mark.asyncio
async def test_in_memory_history_keeps_the_latest_messages():
    async with InMemoryBroker(history_limit=2) as broker:
        for version in range(1, 5):
            await broker.publish(make_event(version))
    assert [Event.from_message(b).version for b in broker.history] == [3, 4]

import argparse
import asyncio
import os
import tempfile
import time
from datetime import datetime, timedelta, timezone

from parking_events import CommandHandler, sqlite_backend
from parking_events.domain import CreateReservation, ReservationAggregate, UpdateParkingStatus


async def run_reservation(handler: CommandHandler, reservation_id: str):
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    await handler.handle(
        CreateReservation(
            aggregate_id=reservation_id,
            user_id="bench-user",
            slot_id="bench-slot",
            parking_site_id="ps-01",
            floor_id="f-1",
            start_time=start,
            end_time=start + timedelta(hours=1),
        )
    )
    await handler.handle(UpdateParkingStatus(aggregate_id=reservation_id, new_status="checked_in"))
    await handler.handle(UpdateParkingStatus(aggregate_id=reservation_id, new_status="checked_out"))


async def contend(handler: CommandHandler, reservation_id: str, writers: int):
    """Many writers race on one aggregate; each retries on conflict."""
    statuses = ["checked_in", "cancelled"]
    await asyncio.gather(
        *[
            handler.handle(UpdateParkingStatus(aggregate_id=reservation_id, new_status=statuses[i % 2]))
            for i in range(writers)
        ],
        return_exceptions=True,
    )


async def run_benchmark(db_path: str, num_reservations: int):
    async with sqlite_backend(db_path) as backend:
        handler = CommandHandler(
            ReservationAggregate, backend.event_store, backend.snapshot_store, backend.broker, max_retries=10
        )
        start_time = time.perf_counter()
        await asyncio.gather(*[run_reservation(handler, f"bench-{i}") for i in range(num_reservations)])
        duration = time.perf_counter() - start_time
        commands = num_reservations * 3
        print(f"{db_path:<12} {commands} commands in {duration:.2f}s ({commands / duration:,.0f} commands/s)")

        await run_reservation_prefix(handler)
        start_time = time.perf_counter()
        await contend(handler, "contended", writers=20)
        print(f"{db_path:<12} contended aggregate settled at version "
              f"{await backend.event_store.current_version('contended')} in {time.perf_counter() - start_time:.2f}s")


async def run_reservation_prefix(handler: CommandHandler):
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    await handler.handle(
        CreateReservation(
            aggregate_id="contended",
            user_id="bench-user",
            slot_id="bench-slot",
            parking_site_id="ps-01",
            floor_id="f-1",
            start_time=start,
            end_time=start + timedelta(hours=1),
        )
    )


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--num-reservations", type=int, default=200)
    args = parser.parse_args()

    await run_benchmark(":memory:", args.num_reservations)
    with tempfile.TemporaryDirectory() as tmpdir:
        await run_benchmark(os.path.join(tmpdir, "bench.db"), args.num_reservations)


if __name__ == "__main__":
    asyncio.run(main())

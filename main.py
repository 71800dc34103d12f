import argparse
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from parking_events import CommandHandler, EventConsumer, Settings, configure_logging, open_backend, read_model_connection
from parking_events.domain import CreateReservation, ReservationAggregate, UpdateParkingStatus
from parking_events.projections import ActivityProjection, ReservationProjection


async def walkthrough(settings: Settings):
    async with open_backend(settings) as backend, read_model_connection(settings.read_model_path) as read_db:
        reservations = ReservationProjection(read_db)
        consumer = EventConsumer(
            backend.broker,
            settings.queue_name,
            [reservations, ActivityProjection(read_db)],
            max_attempts=settings.projection_max_attempts,
            backoff=settings.projection_backoff,
        )
        handler = CommandHandler(
            ReservationAggregate,
            backend.event_store,
            backend.snapshot_store,
            backend.broker,
            snapshot_every=settings.snapshot_every,
            max_retries=settings.max_conflict_retries,
            strict_replay=settings.strict_replay,
            commands={"CreateReservation": CreateReservation, "UpdateParkingStatus": UpdateParkingStatus},
        )

        async with consumer:
            reservation_id = f"R-{uuid.uuid4().hex[:8]}"
            start = datetime.now(timezone.utc) + timedelta(hours=1)
            created = await handler.submit(
                {
                    "type": "CreateReservation",
                    "aggregate_id": reservation_id,
                    "user_id": "u-1",
                    "slot_id": "S-ps01-0900",
                    "parking_site_id": "ps-01",
                    "floor_id": "ps-01-f1",
                    "start_time": start.isoformat(),
                    "end_time": (start + timedelta(hours=2)).isoformat(),
                }
            )
            print(f"create      -> ok={created.ok} version={created.version}")

            for status in ("checked_in", "checked_in", "checked_out", "cancelled"):
                result = await handler.submit(UpdateParkingStatus(aggregate_id=reservation_id, new_status=status))
                outcome = f"version={result.version} changed={result.changed}" if result.ok else result.error.message
                print(f"{status:<11} -> ok={result.ok} {outcome}")

            snapshot = await backend.snapshot_store.load(reservation_id)
            print(f"latest snapshot at version {snapshot.version if snapshot else None}")

            # Give the consumer a few polling rounds to catch up.
            for _ in range(25):
                row = await reservations.fetch_one(reservation_id)
                if row and row["version"] == created.version + 2:
                    break
                await asyncio.sleep(settings.polling_interval)
            print(f"read model  -> {row}")


async def main():
    parser = argparse.ArgumentParser(description="Walk a reservation through its lifecycle.")
    parser.add_argument("--db", default=":memory:", help="event store database path")
    parser.add_argument("--read-db", default=":memory:", help="read model database path")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    settings = Settings.from_env(db_path=args.db, read_model_path=args.read_db, log_level=args.log_level)
    configure_logging(settings.log_level)
    logging.getLogger(__name__).info(f"Using event store at {settings.db_path}")
    await walkthrough(settings)


if __name__ == "__main__":
    asyncio.run(main())

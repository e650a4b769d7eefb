import argparse
import logging
import time

from src import config
from src.application.booking_service import BookingService
from src.infrastructure.db.session import get_db_session
from src.infrastructure.gateways.catalog_client import AvailabilityClient, CatalogClient


def run_once(limit: int) -> int:
    with get_db_session() as db:
        # No broker in this process; clients reconcile over REST.
        service = BookingService(
            db=db,
            catalog=CatalogClient(),
            availability=AvailabilityClient(),
        )
        expired = service.expire_unanswered_assignments(limit=limit)
        return len(expired)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reject and redispatch targeted bookings nobody answered in time.",
    )
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument(
        "--interval",
        type=float,
        default=0,
        help="Seconds between sweeps; 0 runs a single sweep.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL)

    while True:
        count = run_once(args.limit)
        print(f"Sweep complete: {count} unanswered assignments redispatched.")
        if args.interval <= 0:
            return
        time.sleep(args.interval)


if __name__ == "__main__":
    main()

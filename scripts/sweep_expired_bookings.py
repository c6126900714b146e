import logging
import os

from ferry_engine.application.expiry_sweeper import ExpirySweeper
from ferry_engine.config import get_settings
from ferry_engine.infrastructure.db.session import SessionLocal

logger = logging.getLogger("sweep_expired_bookings")


def main() -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    summary = ExpirySweeper(SessionLocal, get_settings()).run()
    print(
        f"Processed {summary.processed}, expired {len(summary.expired)}, "
        f"released {summary.seats_released} seat(s), skipped {summary.skipped}, "
        f"failed {len(summary.failures)}."
    )
    for failure in summary.failures:
        logger.error("Booking %s failed to expire: %s", failure.booking_id, failure.error)
    return 1 if summary.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())

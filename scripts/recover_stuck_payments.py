import logging
import os

from ferry_engine.application.webhook_reconciler import WebhookReconciler
from ferry_engine.config import get_settings
from ferry_engine.infrastructure.db.session import SessionLocal
from ferry_engine.infrastructure.gateway.midtrans_client import MidtransClient

logger = logging.getLogger("recover_stuck_payments")


def main() -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    gateway = MidtransClient.from_settings(settings)
    try:
        summary = WebhookReconciler(SessionLocal, settings, gateway).recover_stuck_payments()
    finally:
        gateway.close()

    print(
        f"Checked {summary.checked}, recovered {len(summary.recovered)}, "
        f"unchanged {summary.unchanged}, skipped {summary.skipped}, "
        f"failed {len(summary.failures)}."
    )
    for failure in summary.failures:
        logger.error("Order %s could not be recovered: %s", failure.order_id, failure.error)
    return 1 if summary.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())

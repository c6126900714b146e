# ferry_engine/config.py

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

# Hold windows longer than this are never granted, whatever the environment says.
MAX_HOLD_MINUTES = 15


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineSettings:
    hold_minutes: int = MAX_HOLD_MINUTES
    cancellation_lead_hours: int = 24
    checkin_opens_hours_before: int = 3
    checkin_closes_hours_after: int = 1
    max_passengers_per_booking: int = 10
    sweeper_batch_size: int = 200
    payment_recovery_after_minutes: int = 5
    recovery_batch_size: int = 100
    ticket_code_attempts: int = 5
    booking_code_attempts: int = 5
    midtrans_server_key: str = ""
    midtrans_is_production: bool = False
    gateway_timeout_seconds: float = 10.0
    app_url: str = "http://localhost:8000"
    ticket_signing_secret: str = "dev-ticket-secret"
    cron_secret: str = ""

    @property
    def effective_hold_minutes(self) -> int:
        return max(1, min(self.hold_minutes, MAX_HOLD_MINUTES))

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            hold_minutes=int(os.getenv("BOOKING_HOLD_MINUTES", str(MAX_HOLD_MINUTES))),
            cancellation_lead_hours=int(os.getenv("CANCELLATION_LEAD_HOURS", "24")),
            checkin_opens_hours_before=int(os.getenv("CHECKIN_OPENS_HOURS_BEFORE", "3")),
            checkin_closes_hours_after=int(os.getenv("CHECKIN_CLOSES_HOURS_AFTER", "1")),
            max_passengers_per_booking=int(os.getenv("MAX_PASSENGERS_PER_BOOKING", "10")),
            sweeper_batch_size=int(os.getenv("SWEEPER_BATCH_SIZE", "200")),
            payment_recovery_after_minutes=int(
                os.getenv("PAYMENT_RECOVERY_AFTER_MINUTES", "5")
            ),
            recovery_batch_size=int(os.getenv("RECOVERY_BATCH_SIZE", "100")),
            midtrans_server_key=os.getenv("MIDTRANS_SERVER_KEY", ""),
            midtrans_is_production=_env_bool("MIDTRANS_IS_PRODUCTION", False),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")),
            app_url=os.getenv("APP_URL", "http://localhost:8000"),
            ticket_signing_secret=os.getenv("TICKET_SIGNING_SECRET", "dev-ticket-secret"),
            cron_secret=os.getenv("CRON_SECRET", ""),
        )


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings.from_env()

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

DEFAULT_DATA_DIR = "data"
MIN_DURATION_MINUTES = 15
# Consecutive closed candidates a count-bounded series may skip before it stops.
MAX_SKIPPED_CANDIDATES = 52
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class BookingSettings:
    data_dir: str = DEFAULT_DATA_DIR
    min_duration_minutes: int = MIN_DURATION_MINUTES
    max_skipped_candidates: int = MAX_SKIPPED_CANDIDATES
    holiday_country: str | None = None
    log_level: str = DEFAULT_LOG_LEVEL

    def __post_init__(self) -> None:
        if self.min_duration_minutes < 0:
            raise ValueError("min_duration_minutes must not be negative")
        if self.max_skipped_candidates < 0:
            raise ValueError("max_skipped_candidates must not be negative")

    @staticmethod
    def from_env() -> "BookingSettings":
        return BookingSettings(
            data_dir=os.getenv("LAB_BOOKING_DATA_DIR", DEFAULT_DATA_DIR),
            min_duration_minutes=int(os.getenv("LAB_BOOKING_MIN_DURATION_MINUTES", str(MIN_DURATION_MINUTES))),
            max_skipped_candidates=int(os.getenv("LAB_BOOKING_MAX_SKIPPED_CANDIDATES", str(MAX_SKIPPED_CANDIDATES))),
            holiday_country=(os.getenv("LAB_BOOKING_HOLIDAY_COUNTRY") or None),
            log_level=os.getenv("LAB_BOOKING_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        )


def configure_logging(settings: BookingSettings | None = None) -> None:
    effective = settings or BookingSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, effective.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

from __future__ import annotations

import calendar
from datetime import date, time, timedelta
import logging
from typing import Callable, Iterator

from .errors import BookingValidationError
from .models import PatternType, RecurrencePattern
from .operating_calendar import Closed, LabCalendar
from .settings import MAX_SKIPPED_CANDIDATES

logger = logging.getLogger(__name__)

STEP_DAYS = {
    PatternType.WEEKLY: 7,
    PatternType.BIWEEKLY: 14,
}


def validate_pattern(pattern: RecurrencePattern) -> None:
    if pattern.end_date is not None and pattern.occurrences is not None:
        raise BookingValidationError("Recurrence takes an end date or an occurrence count, not both.", "invalid_recurrence")
    if pattern.end_date is None and pattern.occurrences is None:
        raise BookingValidationError("Recurrence needs an end date or an occurrence count.", "invalid_recurrence")
    if pattern.occurrences is not None and pattern.occurrences <= 0:
        raise BookingValidationError("Occurrence count must be greater than zero.", "invalid_recurrence")
    if pattern.pattern_type is PatternType.CUSTOM:
        if pattern.interval_days is None or pattern.interval_days <= 0:
            raise BookingValidationError("Custom recurrence needs a positive interval in days.", "invalid_recurrence")


def add_months(anchor: date, months: int) -> date:
    """Same day of month ``months`` later, clamped to the month's last day."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor.day, last_day))


def next_candidate(current: date, pattern: RecurrencePattern) -> date:
    if pattern.pattern_type is PatternType.MONTHLY:
        return add_months(current, 1)
    step = STEP_DAYS.get(pattern.pattern_type, pattern.interval_days or 0)
    return current + timedelta(days=step)


def expand(
    start_date: date,
    start_time: time,
    end_time: time,
    pattern: RecurrencePattern,
    lab_calendar: LabCalendar,
    on_skip: Callable[[date, str], None] | None = None,
    max_skipped: int = MAX_SKIPPED_CANDIDATES,
    on_truncate: Callable[[date, str], None] | None = None,
) -> Iterator[date]:
    """Return a fresh, finite iterator over the series' open dates.

    Each candidate steps from the previous one, so a monthly series started
    on the 31st lands on the 28th after February and stays there. Closed
    dates are skipped without counting toward ``pattern.occurrences``.

    A series bounded by ``pattern.end_date`` always walks to its end date. A
    series bounded by an occurrence count stops once ``max_skipped`` closed
    candidates have been skipped in a row; ``on_truncate`` then receives the
    first candidate that was never examined.

    Configuration errors are raised here, before the first date is produced.
    """
    validate_pattern(pattern)
    if start_time >= end_time:
        raise BookingValidationError("Reservation start time must be earlier than end time.", "invalid_time_range")
    return _generate(start_date, pattern, lab_calendar, on_skip, max_skipped, on_truncate)


def _generate(
    anchor: date,
    pattern: RecurrencePattern,
    lab_calendar: LabCalendar,
    on_skip: Callable[[date, str], None] | None,
    max_skipped: int,
    on_truncate: Callable[[date, str], None] | None,
) -> Iterator[date]:
    accepted = 0
    skipped_in_a_row = 0
    candidate = anchor
    while True:
        if pattern.end_date is not None and candidate >= pattern.end_date:
            return
        if pattern.occurrences is not None and accepted >= pattern.occurrences:
            return

        resolved = lab_calendar.resolve(candidate)
        if isinstance(resolved, Closed):
            if pattern.occurrences is not None and skipped_in_a_row >= max_skipped:
                reason = f"Recurrence stopped after {skipped_in_a_row} closed dates in a row."
                logger.warning(f"Recurrence from {anchor.isoformat()} stopped at {candidate.isoformat()}: {reason}")
                if on_truncate is not None:
                    on_truncate(candidate, reason)
                return
            skipped_in_a_row += 1
            if on_skip is not None:
                on_skip(candidate, resolved.reason)
        else:
            skipped_in_a_row = 0
            accepted += 1
            yield candidate

        candidate = next_candidate(candidate, pattern)

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable

import holidays as pyholidays

from .errors import BookingValidationError
from .models import ClosureRule, Lab, OperatingHoursRule

_HOLIDAY_CACHE: dict[tuple[str, int], dict[date, str]] = {}


@dataclass(frozen=True)
class OpenWindow:
    open_time: time
    close_time: time

    def contains(self, start: time, end: time) -> bool:
        return self.open_time <= start and end <= self.close_time

    def __str__(self) -> str:
        return f"{self.open_time.isoformat(timespec='minutes')}-{self.close_time.isoformat(timespec='minutes')}"


@dataclass(frozen=True)
class Closed:
    reason: str


@dataclass(frozen=True)
class LabCalendar:
    """Read-only view of one lab's opening rules, built per operation."""

    lab: Lab
    operating_hours: tuple[OperatingHoursRule, ...] = ()
    closures: tuple[ClosureRule, ...] = ()
    holiday_country: str | None = None
    _hours_by_weekday: dict[int, OperatingHoursRule] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_weekday: dict[int, OperatingHoursRule] = {}
        for rule in self.operating_hours:
            if rule.lab_id != self.lab.lab_id:
                raise ValueError(f"Operating hours rule belongs to lab {rule.lab_id}, not {self.lab.lab_id}.")
            if rule.weekday in by_weekday:
                raise ValueError(f"Lab {self.lab.lab_id} has more than one operating hours rule for weekday {rule.weekday}.")
            by_weekday[rule.weekday] = rule
        object.__setattr__(self, "_hours_by_weekday", by_weekday)

    def resolve(self, target_date: date) -> OpenWindow | Closed:
        applicable = [closure for closure in self.closures if closure.applies_to(self.lab.lab_id)]

        for closure in applicable:
            if closure.specific_date == target_date:
                return Closed(closure.reason or f"Lab is closed on {target_date.isoformat()}.")
        holiday_name = public_holiday_name(target_date, self.holiday_country)
        if holiday_name is not None:
            return Closed(f"Lab is closed for {holiday_name}.")

        for closure in applicable:
            if closure.weekday is not None and closure.weekday == target_date.weekday():
                return Closed(closure.reason or f"Lab is closed every {target_date.strftime('%A')}.")

        rule = self._hours_by_weekday.get(target_date.weekday())
        if rule is not None:
            if rule.is_closed:
                return Closed(f"Lab is closed on {target_date.strftime('%A')}s.")
            return OpenWindow(rule.open_time, rule.close_time)  # type: ignore[arg-type]

        if self.lab.default_open is not None and self.lab.default_close is not None:
            return OpenWindow(self.lab.default_open, self.lab.default_close)
        return Closed("Lab has no operating hours configured.")

    def is_open(self, target_date: date) -> bool:
        return isinstance(self.resolve(target_date), OpenWindow)

    def validate_window(self, start: datetime, end: datetime) -> OpenWindow:
        if start >= end:
            raise BookingValidationError("Reservation start time must be earlier than end time.", "invalid_time_range")
        if start.date() != end.date():
            raise BookingValidationError("Reservation must start and end on the same day.", "crosses_midnight")

        resolved = self.resolve(start.date())
        if isinstance(resolved, Closed):
            raise BookingValidationError(resolved.reason, "lab_closed")
        if not resolved.contains(start.time(), end.time()):
            raise BookingValidationError(
                f"Reservation time must be within operating hours ({resolved}).",
                "outside_operating_hours",
            )
        return resolved

    def closed_days(self, start_inclusive: date, end_exclusive: date) -> list[tuple[date, str]]:
        closed: list[tuple[date, str]] = []
        cursor = start_inclusive
        while cursor < end_exclusive:
            resolved = self.resolve(cursor)
            if isinstance(resolved, Closed):
                closed.append((cursor, resolved.reason))
            cursor += timedelta(days=1)
        return closed


def build_calendar(
    lab: Lab,
    operating_hours: Iterable[OperatingHoursRule],
    closures: Iterable[ClosureRule],
    holiday_country: str | None = None,
) -> LabCalendar:
    return LabCalendar(
        lab=lab,
        operating_hours=tuple(operating_hours),
        closures=tuple(closure for closure in closures if closure.applies_to(lab.lab_id)),
        holiday_country=holiday_country,
    )


def public_holiday_name(target_date: date, country: str | None) -> str | None:
    if not country:
        return None
    key = (country.upper(), target_date.year)
    if key not in _HOLIDAY_CACHE:
        holiday_map = pyholidays.country_holidays(key[0], years=[key[1]])
        _HOLIDAY_CACHE[key] = {day: str(name) for day, name in holiday_map.items()}
    return _HOLIDAY_CACHE[key].get(target_date)

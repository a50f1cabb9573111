from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"


class Resolution(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PatternType(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"


BLOCKING_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.APPROVED})
TERMINAL_STATUSES = frozenset({ReservationStatus.DECLINED, ReservationStatus.CANCELLED})


def _time_or_none(value: Any) -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def _date_or_none(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _datetime_or_none(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: date | time | datetime | None, timespec: str | None = None) -> str | None:
    if value is None:
        return None
    if timespec is not None:
        return value.isoformat(timespec=timespec)
    return value.isoformat()


@dataclass(frozen=True)
class Lab:
    lab_id: int
    name: str
    capacity: int = 0
    default_open: time | None = None
    default_close: time | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lab_id": self.lab_id,
            "name": self.name,
            "capacity": self.capacity,
            "default_open": _iso(self.default_open, "minutes"),
            "default_close": _iso(self.default_close, "minutes"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Lab":
        return Lab(
            lab_id=int(data["lab_id"]),
            name=str(data["name"]),
            capacity=int(data.get("capacity") or 0),
            default_open=_time_or_none(data.get("default_open")),
            default_close=_time_or_none(data.get("default_close")),
        )


@dataclass(frozen=True)
class Workstation:
    workstation_id: int
    lab_id: int
    identifier: str
    active: bool = True
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workstation_id": self.workstation_id,
            "lab_id": self.lab_id,
            "identifier": self.identifier,
            "active": self.active,
            "description": self.description,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Workstation":
        return Workstation(
            workstation_id=int(data["workstation_id"]),
            lab_id=int(data["lab_id"]),
            identifier=str(data["identifier"]),
            active=bool(data.get("active", True)),
            description=(str(data["description"]) if data.get("description") is not None else None),
        )


@dataclass(frozen=True)
class OperatingHoursRule:
    lab_id: int
    weekday: int
    open_time: time | None = None
    close_time: time | None = None
    is_closed: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.weekday <= 6:
            raise ValueError("weekday must be between 0 (Monday) and 6 (Sunday).")
        if not self.is_closed:
            if self.open_time is None or self.close_time is None:
                raise ValueError("Open days need both an open and a close time.")
            if self.open_time >= self.close_time:
                raise ValueError("Open time must be earlier than close time.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "lab_id": self.lab_id,
            "weekday": self.weekday,
            "open_time": _iso(self.open_time, "minutes"),
            "close_time": _iso(self.close_time, "minutes"),
            "is_closed": self.is_closed,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "OperatingHoursRule":
        return OperatingHoursRule(
            lab_id=int(data["lab_id"]),
            weekday=int(data["weekday"]),
            open_time=_time_or_none(data.get("open_time")),
            close_time=_time_or_none(data.get("close_time")),
            is_closed=bool(data.get("is_closed", False)),
        )


@dataclass(frozen=True)
class ClosureRule:
    """A closed day: either one specific date or every given weekday.

    ``lab_id=None`` applies the closure to every lab.
    """

    lab_id: int | None = None
    specific_date: date | None = None
    weekday: int | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        if (self.specific_date is None) == (self.weekday is None):
            raise ValueError("A closure needs exactly one of specific_date or weekday.")
        if self.weekday is not None and not 0 <= self.weekday <= 6:
            raise ValueError("weekday must be between 0 (Monday) and 6 (Sunday).")

    def applies_to(self, lab_id: int) -> bool:
        return self.lab_id is None or self.lab_id == lab_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "lab_id": self.lab_id,
            "specific_date": _iso(self.specific_date),
            "weekday": self.weekday,
            "reason": self.reason,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ClosureRule":
        return ClosureRule(
            lab_id=(int(data["lab_id"]) if data.get("lab_id") is not None else None),
            specific_date=_date_or_none(data.get("specific_date")),
            weekday=(int(data["weekday"]) if data.get("weekday") is not None else None),
            reason=(str(data["reason"]) if data.get("reason") is not None else None),
        )


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    lab_id: int
    user_id: str
    start: datetime
    end: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    whole_lab: bool = False
    workstation_ids: tuple[int, ...] = ()
    description: str | None = None
    recurring_group_id: str | None = None
    status_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("Reservation start time must be earlier than end time.")
        if self.whole_lab and self.workstation_ids:
            raise ValueError("Whole-lab reservations do not list workstations.")
        if not self.whole_lab and not self.workstation_ids:
            raise ValueError("Partial reservations need at least one workstation.")

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    def values(self) -> "ReservationValues":
        return ReservationValues(
            start=self.start,
            end=self.end,
            description=self.description,
            whole_lab=self.whole_lab,
            workstation_ids=self.workstation_ids,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "lab_id": self.lab_id,
            "user_id": self.user_id,
            "start": self.start.isoformat(timespec="minutes"),
            "end": self.end.isoformat(timespec="minutes"),
            "status": self.status.value,
            "whole_lab": self.whole_lab,
            "workstation_ids": list(self.workstation_ids),
            "description": self.description,
            "recurring_group_id": self.recurring_group_id,
            "status_reason": self.status_reason,
            "created_at": _iso(self.created_at, "seconds"),
            "updated_at": _iso(self.updated_at, "seconds"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Reservation":
        return Reservation(
            reservation_id=str(data["reservation_id"]),
            lab_id=int(data["lab_id"]),
            user_id=str(data["user_id"]),
            start=datetime.fromisoformat(str(data["start"])),
            end=datetime.fromisoformat(str(data["end"])),
            status=ReservationStatus(str(data.get("status", ReservationStatus.PENDING.value))),
            whole_lab=bool(data.get("whole_lab", False)),
            workstation_ids=tuple(int(value) for value in data.get("workstation_ids") or []),
            description=(str(data["description"]) if data.get("description") is not None else None),
            recurring_group_id=(str(data["recurring_group_id"]) if data.get("recurring_group_id") else None),
            status_reason=(str(data["status_reason"]) if data.get("status_reason") is not None else None),
            created_at=_datetime_or_none(data.get("created_at")),
            updated_at=_datetime_or_none(data.get("updated_at")),
        )


@dataclass(frozen=True)
class RecurrencePattern:
    pattern_type: PatternType
    interval_days: int | None = None
    end_date: date | None = None
    occurrences: int | None = None
    recurring_group_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recurring_group_id": self.recurring_group_id,
            "pattern_type": self.pattern_type.value,
            "interval_days": self.interval_days,
            "end_date": _iso(self.end_date),
            "occurrences": self.occurrences,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RecurrencePattern":
        return RecurrencePattern(
            pattern_type=PatternType(str(data["pattern_type"]).upper()),
            interval_days=(int(data["interval_days"]) if data.get("interval_days") is not None else None),
            end_date=_date_or_none(data.get("end_date")),
            occurrences=(int(data["occurrences"]) if data.get("occurrences") is not None else None),
            recurring_group_id=(str(data["recurring_group_id"]) if data.get("recurring_group_id") else None),
        )


@dataclass(frozen=True)
class ReservationValues:
    """The editable fields of a reservation."""

    start: datetime
    end: datetime
    description: str | None = None
    whole_lab: bool = False
    workstation_ids: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(timespec="minutes"),
            "end": self.end.isoformat(timespec="minutes"),
            "description": self.description,
            "whole_lab": self.whole_lab,
            "workstation_ids": list(self.workstation_ids),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationValues":
        return ReservationValues(
            start=datetime.fromisoformat(str(data["start"])),
            end=datetime.fromisoformat(str(data["end"])),
            description=(str(data["description"]) if data.get("description") is not None else None),
            whole_lab=bool(data.get("whole_lab", False)),
            workstation_ids=tuple(int(value) for value in data.get("workstation_ids") or []),
        )


@dataclass(frozen=True)
class ReservationChange:
    """Requested new values; ``None`` keeps the current value."""

    start: datetime | None = None
    end: datetime | None = None
    description: str | None = None
    whole_lab: bool | None = None
    workstation_ids: tuple[int, ...] | None = None

    def apply_to(self, current: ReservationValues) -> ReservationValues:
        whole_lab = current.whole_lab if self.whole_lab is None else self.whole_lab
        if whole_lab:
            workstation_ids: tuple[int, ...] = ()
        elif self.workstation_ids is not None:
            workstation_ids = tuple(dict.fromkeys(self.workstation_ids))
        else:
            workstation_ids = current.workstation_ids
        return ReservationValues(
            start=self.start or current.start,
            end=self.end or current.end,
            description=current.description if self.description is None else self.description,
            whole_lab=whole_lab,
            workstation_ids=workstation_ids,
        )


@dataclass(frozen=True)
class EditProposal:
    proposal_id: str
    reservation_id: str
    proposed_by: str
    original_status: ReservationStatus
    original: ReservationValues
    proposed: ReservationValues
    resolution: Resolution = Resolution.PENDING
    created_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.resolution is Resolution.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "reservation_id": self.reservation_id,
            "proposed_by": self.proposed_by,
            "original_status": self.original_status.value,
            "original": self.original.to_dict(),
            "proposed": self.proposed.to_dict(),
            "resolution": self.resolution.value,
            "created_at": _iso(self.created_at, "seconds"),
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at, "seconds"),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "EditProposal":
        return EditProposal(
            proposal_id=str(data["proposal_id"]),
            reservation_id=str(data["reservation_id"]),
            proposed_by=str(data["proposed_by"]),
            original_status=ReservationStatus(str(data["original_status"])),
            original=ReservationValues.from_dict(data["original"]),
            proposed=ReservationValues.from_dict(data["proposed"]),
            resolution=Resolution(str(data.get("resolution", Resolution.PENDING.value))),
            created_at=_datetime_or_none(data.get("created_at")),
            resolved_by=(str(data["resolved_by"]) if data.get("resolved_by") is not None else None),
            resolved_at=_datetime_or_none(data.get("resolved_at")),
        )


@dataclass(frozen=True)
class Caller:
    """Identity and precomputed capabilities supplied by the auth layer."""

    user_id: str
    managed_lab_ids: frozenset[int] = field(default_factory=frozenset)
    is_admin: bool = False

    def manages(self, lab_id: int) -> bool:
        return self.is_admin or lab_id in self.managed_lab_ids

    def owns(self, reservation: Reservation) -> bool:
        return reservation.user_id == self.user_id

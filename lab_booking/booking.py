from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, Iterable, Sequence

from .errors import BookingValidationError, ConflictError, NotFoundError
from .models import BLOCKING_STATUSES, Reservation, ReservationStatus

if TYPE_CHECKING:
    from .repository import BookingRepository

logger = logging.getLogger(__name__)


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Return True when two time intervals overlap by even one minute.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise ValueError("exist_start must be earlier than exist_end.")

    return new_start < exist_end and new_end > exist_start


def shares_resources(whole_lab: bool, workstation_ids: Iterable[int], existing: Reservation) -> bool:
    if whole_lab or existing.whole_lab:
        return True
    return not set(workstation_ids).isdisjoint(existing.workstation_ids)


def find_conflicts(
    existing_reservations: Iterable[Reservation],
    lab_id: int,
    workstation_ids: Sequence[int],
    whole_lab: bool,
    start: datetime,
    end: datetime,
    exclude_reservation_id: str | None = None,
    blocking_statuses: Iterable[ReservationStatus] = BLOCKING_STATUSES,
) -> list[Reservation]:
    """Return the blocking reservations that collide with the candidate, by start time.

    Only reservations of the same lab in ``blocking_statuses`` (PENDING and
    APPROVED by default) block. A whole-lab candidate collides with anything
    in the window; a partial one only with whole-lab reservations or ones
    sharing a workstation.
    """
    if start >= end:
        raise ValueError("start must be earlier than end.")

    blocking = frozenset(blocking_statuses)
    conflicts: dict[str, Reservation] = {}
    for reservation in existing_reservations:
        if reservation.reservation_id == exclude_reservation_id:
            continue
        if reservation.lab_id != lab_id or reservation.status not in blocking:
            continue
        if not has_time_overlap(start, end, reservation.start, reservation.end):
            continue
        if shares_resources(whole_lab, workstation_ids, reservation):
            conflicts[reservation.reservation_id] = reservation
    return sorted(conflicts.values(), key=lambda row: (row.start, row.reservation_id))


def can_reserve(
    new_start: datetime,
    new_end: datetime,
    existing_reservations: Iterable[Reservation],
    lab_id: int,
    workstation_ids: Sequence[int] = (),
    whole_lab: bool = False,
) -> bool:
    """Return True if the requested interval does not collide with any existing reservation."""
    return not find_conflicts(existing_reservations, lab_id, workstation_ids, whole_lab, new_start, new_end)


class ConflictDetector:
    def __init__(self, repository: "BookingRepository") -> None:
        self.repository = repository

    def validate_selection(self, lab_id: int, workstation_ids: Iterable[int], whole_lab: bool) -> tuple[int, ...]:
        """Check the requested workstations and return them de-duplicated.

        Whole-lab selections always resolve to an empty tuple.
        """
        if whole_lab:
            return ()

        selected = tuple(dict.fromkeys(int(value) for value in workstation_ids))
        if not selected:
            raise BookingValidationError("Select at least one workstation or reserve the whole lab.", "no_workstations_selected")

        for workstation_id in selected:
            workstation = self.repository.get_workstation(workstation_id)
            if workstation is None:
                raise NotFoundError(f"Workstation {workstation_id} not found.", "workstation_not_found")
            if workstation.lab_id != lab_id:
                logger.warning(f"Workstation {workstation_id} belongs to lab {workstation.lab_id}, requested for lab {lab_id}")
                raise BookingValidationError(
                    f"Workstation {workstation.identifier} does not belong to lab {lab_id}.",
                    "workstation_not_in_lab",
                )
            if not workstation.active:
                raise BookingValidationError(f"Workstation {workstation.identifier} is inactive.", "workstation_inactive")
        return selected

    def find_conflicts(
        self,
        lab_id: int,
        workstation_ids: Sequence[int],
        whole_lab: bool,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
        blocking_statuses: Iterable[ReservationStatus] = BLOCKING_STATUSES,
    ) -> list[Reservation]:
        candidates = self.repository.reservations_in_range(lab_id, start, end, blocking_only=True)
        return find_conflicts(
            candidates, lab_id, workstation_ids, whole_lab, start, end, exclude_reservation_id, blocking_statuses
        )

    def ensure_available(
        self,
        lab_id: int,
        workstation_ids: Sequence[int],
        whole_lab: bool,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
        blocking_statuses: Iterable[ReservationStatus] = BLOCKING_STATUSES,
    ) -> None:
        conflicts = self.find_conflicts(lab_id, workstation_ids, whole_lab, start, end, exclude_reservation_id, blocking_statuses)
        if conflicts:
            logger.debug(f"{len(conflicts)} conflicting reservation(s) in lab {lab_id} for {start.isoformat()}-{end.isoformat()}")
            raise ConflictError(
                f"Requested time {start.isoformat(timespec='minutes')}~{end.isoformat(timespec='minutes')} "
                "overlaps with an existing reservation.",
                conflicts,
            )

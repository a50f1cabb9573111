from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
import logging
from typing import Any, Callable, Iterable
from uuid import uuid4

from .booking import ConflictDetector
from .edits import withdraw_pending_edit
from .errors import (
    BookingError,
    BookingValidationError,
    ErrorKind,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
)
from .models import (
    TERMINAL_STATUSES,
    Caller,
    Lab,
    RecurrencePattern,
    Reservation,
    ReservationStatus,
)
from .operating_calendar import LabCalendar
from .recurrence import expand
from .repository import BookingRepository
from .settings import BookingSettings

logger = logging.getLogger(__name__)

APPROVED_ONLY = frozenset({ReservationStatus.APPROVED})


@dataclass(frozen=True)
class ReservationRequest:
    lab_id: int
    start: datetime
    end: datetime
    whole_lab: bool = False
    workstation_ids: tuple[int, ...] = ()
    description: str | None = None
    recurrence: RecurrencePattern | None = None


@dataclass(frozen=True)
class SkippedOccurrence:
    occurrence_date: date
    reason: str
    kind: ErrorKind = ErrorKind.VALIDATION
    rule: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.occurrence_date.isoformat(),
            "reason": self.reason,
            "kind": self.kind.value,
            "rule": self.rule,
        }


@dataclass(frozen=True)
class CreationResult:
    accepted: list[Reservation]
    skipped: list[SkippedOccurrence] = field(default_factory=list)
    recurring_group_id: str | None = None
    pattern: RecurrencePattern | None = None


class NoValidOccurrencesError(BookingValidationError):
    def __init__(self, skipped: list[SkippedOccurrence]) -> None:
        super().__init__("No valid occurrence dates could be generated.", "no_valid_occurrences")
        self.skipped = skipped


class ReservationLifecycle:
    """Creation and status transitions of reservations and recurring groups.

    Every mutating call runs as one repository transaction, so the conflict
    check and the write it gates cannot interleave with another operation.
    """

    def __init__(
        self,
        repository: BookingRepository,
        detector: ConflictDetector | None = None,
        now_provider: Callable[[], datetime] | None = None,
        settings: BookingSettings | None = None,
    ) -> None:
        self.repository = repository
        self.detector = detector or ConflictDetector(repository)
        self.clock: Callable[[], datetime] = now_provider or datetime.now
        self.settings = settings or BookingSettings()

    # -- lookups --------------------------------------------------------

    def require_lab(self, lab_id: int) -> Lab:
        lab = self.repository.get_lab(lab_id)
        if lab is None:
            raise NotFoundError(f"Lab {lab_id} not found.", "lab_not_found")
        return lab

    def require_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.repository.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found.", "reservation_not_found")
        return reservation

    def calendar(self, lab: Lab) -> LabCalendar:
        return self.repository.calendar_for(lab, holiday_country=self.settings.holiday_country)

    # -- validation -----------------------------------------------------

    def validate_times(self, start: datetime, end: datetime, now: datetime | None) -> None:
        """``now=None`` skips the not-in-the-past rule."""
        if start >= end:
            raise BookingValidationError("Reservation start time must be earlier than end time.", "invalid_time_range")
        if now is not None and start < now:
            raise BookingValidationError("Reservation start time cannot be in the past.", "start_in_past")
        minimum = timedelta(minutes=self.settings.min_duration_minutes)
        if end - start < minimum:
            raise BookingValidationError(
                f"Reservation duration must be at least {self.settings.min_duration_minutes} minutes.",
                "duration_too_short",
            )

    def validate_window(
        self,
        lab_calendar: LabCalendar,
        workstation_ids: tuple[int, ...],
        whole_lab: bool,
        start: datetime,
        end: datetime,
        now: datetime | None,
        exclude_reservation_id: str | None = None,
    ) -> None:
        self.validate_times(start, end, now)
        lab_calendar.validate_window(start, end)
        self.detector.ensure_available(
            lab_calendar.lab.lab_id,
            workstation_ids,
            whole_lab,
            start,
            end,
            exclude_reservation_id=exclude_reservation_id,
        )

    # -- creation -------------------------------------------------------

    def plan(self, request: ReservationRequest, user_id: str) -> CreationResult:
        """Decide every occurrence without writing anything.

        A single reservation raises its specific error; a recurring request
        collects per-date skip reasons and only fails when nothing is left.
        """
        now = self.clock()
        lab = self.require_lab(request.lab_id)
        lab_calendar = self.calendar(lab)
        workstation_ids = self.detector.validate_selection(lab.lab_id, request.workstation_ids, request.whole_lab)

        if request.recurrence is None:
            self.validate_window(lab_calendar, workstation_ids, request.whole_lab, request.start, request.end, now)
            reservation = self._build(request, user_id, workstation_ids, request.start, request.end, None, now)
            return CreationResult(accepted=[reservation])

        if request.start.date() != request.end.date():
            raise BookingValidationError("Reservation must start and end on the same day.", "crosses_midnight")

        group_id = str(uuid4())
        pattern = replace(request.recurrence, recurring_group_id=group_id)
        skipped: list[SkippedOccurrence] = []

        def record_closed(occurrence_date: date, reason: str) -> None:
            skipped.append(SkippedOccurrence(occurrence_date, reason, ErrorKind.VALIDATION, "lab_closed"))

        def record_truncated(occurrence_date: date, reason: str) -> None:
            skipped.append(SkippedOccurrence(occurrence_date, reason, ErrorKind.VALIDATION, "too_many_closed_dates"))

        accepted: list[Reservation] = []
        occurrence_dates = expand(
            request.start.date(),
            request.start.time(),
            request.end.time(),
            pattern,
            lab_calendar,
            on_skip=record_closed,
            max_skipped=self.settings.max_skipped_candidates,
            on_truncate=record_truncated,
        )
        for occurrence_date in occurrence_dates:
            start = datetime.combine(occurrence_date, request.start.time())
            end = datetime.combine(occurrence_date, request.end.time())
            try:
                self.validate_window(lab_calendar, workstation_ids, request.whole_lab, start, end, now)
            except BookingError as error:
                logger.warning(f"Skipping occurrence on {occurrence_date.isoformat()}: {error.message}")
                skipped.append(SkippedOccurrence(occurrence_date, error.message, error.kind, error.rule))
                continue
            accepted.append(self._build(request, user_id, workstation_ids, start, end, group_id, now))

        skipped.sort(key=lambda row: row.occurrence_date)
        if not accepted:
            raise NoValidOccurrencesError(skipped)
        return CreationResult(accepted=accepted, skipped=skipped, recurring_group_id=group_id, pattern=pattern)

    def create(self, request: ReservationRequest, user_id: str) -> CreationResult:
        with self.repository.transaction():
            result = self.plan(request, user_id)
            self.repository.add_reservations(result.accepted)
            if result.pattern is not None:
                self.repository.save_pattern(result.pattern)
            for reservation in result.accepted:
                self.repository.record_event(
                    "RESERVATION_CREATED",
                    {
                        "reservation_id": reservation.reservation_id,
                        "lab_id": reservation.lab_id,
                        "user_id": user_id,
                        "start": reservation.start.isoformat(timespec="minutes"),
                        "end": reservation.end.isoformat(timespec="minutes"),
                        "recurring_group_id": reservation.recurring_group_id,
                    },
                    reservation.created_at,
                )

        logger.info(
            f"Created {len(result.accepted)} reservation(s) for user {user_id} in lab {request.lab_id}"
            + (f" (group {result.recurring_group_id}, {len(result.skipped)} skipped)" if result.recurring_group_id else "")
        )
        return result

    def _build(
        self,
        request: ReservationRequest,
        user_id: str,
        workstation_ids: tuple[int, ...],
        start: datetime,
        end: datetime,
        group_id: str | None,
        now: datetime,
    ) -> Reservation:
        return Reservation(
            reservation_id=str(uuid4()),
            lab_id=request.lab_id,
            user_id=user_id,
            start=start,
            end=end,
            status=ReservationStatus.PENDING,
            whole_lab=request.whole_lab,
            workstation_ids=workstation_ids,
            description=request.description,
            recurring_group_id=group_id,
            created_at=now,
            updated_at=now,
        )

    # -- transitions ----------------------------------------------------

    def approve(self, reservation_id: str, approved_by: str | None = None) -> Reservation:
        with self.repository.transaction():
            reservation = self.require_reservation(reservation_id)
            approved = self._approve(reservation, approved_by, self.clock())
        logger.info(f"Reservation {reservation_id} approved by {approved_by}")
        return approved

    def _approve(self, reservation: Reservation, approved_by: str | None, now: datetime) -> Reservation:
        if reservation.status is not ReservationStatus.PENDING:
            raise StateConflictError(
                f"Only PENDING reservations can be approved (reservation is {reservation.status.value}).",
                "not_pending",
            )
        # Another reservation may have been approved since this one was created.
        self.detector.ensure_available(
            reservation.lab_id,
            reservation.workstation_ids,
            reservation.whole_lab,
            reservation.start,
            reservation.end,
            exclude_reservation_id=reservation.reservation_id,
            blocking_statuses=APPROVED_ONLY,
        )
        approved = replace(reservation, status=ReservationStatus.APPROVED, updated_at=now)
        self.repository.save_reservation(approved)
        self.repository.record_event(
            "RESERVATION_APPROVED",
            {"reservation_id": reservation.reservation_id, "approved_by": approved_by},
            now,
        )
        return approved

    def decline(self, reservation_id: str, reason: str | None = None, declined_by: str | None = None) -> Reservation:
        with self.repository.transaction():
            reservation = self.require_reservation(reservation_id)
            declined = self._decline(reservation, reason, declined_by, self.clock())
        logger.info(f"Reservation {reservation_id} declined by {declined_by}")
        return declined

    def _decline(self, reservation: Reservation, reason: str | None, declined_by: str | None, now: datetime) -> Reservation:
        if reservation.status is not ReservationStatus.PENDING:
            raise StateConflictError(
                f"Only PENDING reservations can be declined (reservation is {reservation.status.value}).",
                "not_pending",
            )
        declined = replace(reservation, status=ReservationStatus.DECLINED, status_reason=reason, updated_at=now)
        self.repository.save_reservation(declined)
        withdraw_pending_edit(self.repository, reservation.reservation_id, declined_by or "system", now)
        self.repository.record_event(
            "RESERVATION_DECLINED",
            {"reservation_id": reservation.reservation_id, "declined_by": declined_by, "reason": reason},
            now,
        )
        return declined

    def cancel(self, reservation_id: str, caller: Caller, reason: str | None = None) -> Reservation:
        with self.repository.transaction():
            reservation = self.require_reservation(reservation_id)
            if reservation.status in TERMINAL_STATUSES:
                raise StateConflictError(
                    f"Reservation is already {reservation.status.value} and cannot be cancelled.",
                    "already_terminal",
                )
            if not (caller.owns(reservation) or caller.manages(reservation.lab_id)):
                logger.warning(f"User {caller.user_id} may not cancel reservation {reservation_id}")
                raise PermissionDeniedError(
                    "Only the reservation owner or a manager of the lab can cancel it.",
                    "not_owner_or_manager",
                )

            now = self.clock()
            cancelled = replace(reservation, status=ReservationStatus.CANCELLED, status_reason=reason, updated_at=now)
            self.repository.save_reservation(cancelled)
            withdraw_pending_edit(self.repository, reservation_id, caller.user_id, now)
            self.repository.record_event(
                "RESERVATION_CANCELLED",
                {"reservation_id": reservation_id, "cancelled_by": caller.user_id, "reason": reason},
                now,
            )
        logger.info(f"Reservation {reservation_id} cancelled by {caller.user_id}")
        return cancelled

    # -- recurring groups -----------------------------------------------

    def require_group(self, recurring_group_id: str) -> list[Reservation]:
        reservations = self.repository.reservations_by_group(recurring_group_id)
        if not reservations:
            raise NotFoundError(f"No reservations found for recurring group {recurring_group_id}.", "group_not_found")
        return reservations

    def approve_group(self, recurring_group_id: str, approved_by: str | None = None) -> list[Reservation]:
        with self.repository.transaction():
            pending = self._pending_siblings(recurring_group_id)
            now = self.clock()
            approved = [self._approve(reservation, approved_by, now) for reservation in pending]
        logger.info(f"Approved {len(approved)} reservation(s) in recurring group {recurring_group_id}")
        return approved

    def decline_group(
        self, recurring_group_id: str, reason: str | None = None, declined_by: str | None = None
    ) -> list[Reservation]:
        with self.repository.transaction():
            pending = self._pending_siblings(recurring_group_id)
            now = self.clock()
            declined = [self._decline(reservation, reason, declined_by, now) for reservation in pending]
        logger.info(f"Declined {len(declined)} reservation(s) in recurring group {recurring_group_id}")
        return declined

    def _pending_siblings(self, recurring_group_id: str) -> list[Reservation]:
        pending = [row for row in self.require_group(recurring_group_id) if row.status is ReservationStatus.PENDING]
        if not pending:
            raise StateConflictError(
                f"Recurring group {recurring_group_id} has no PENDING reservations.",
                "not_pending",
            )
        return pending

    # -- queries --------------------------------------------------------

    def reservations_for_user(self, user_id: str, status: ReservationStatus | None = None) -> list[Reservation]:
        return self.repository.reservations_by_user(user_id, status)

    def pending_for_manager(self, caller: Caller, lab_ids: Iterable[int] | None = None) -> list[Reservation]:
        if caller.is_admin and lab_ids is None:
            return self.repository.reservations_by_status(ReservationStatus.PENDING)
        requested = set(lab_ids) if lab_ids is not None else set(caller.managed_lab_ids)
        allowed = [lab_id for lab_id in requested if caller.manages(lab_id)]
        return self.repository.reservations_by_status(ReservationStatus.PENDING, allowed)

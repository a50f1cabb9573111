"""Booking operations as exposed to callers.

Each method runs one unit of work and returns an ``Outcome`` instead of
raising for business-rule failures. Authorization decisions arrive
precomputed on the ``Caller``. Cancellation and edit proposals check them
here; approval and decline leave the manager check to the adapter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Any, Callable, TypeVar

from .edits import EditProposalWorkflow, GroupChange
from .errors import Outcome, capture
from .lifecycle import CreationResult, ReservationLifecycle, ReservationRequest
from .models import (
    Caller,
    EditProposal,
    Lab,
    Reservation,
    ReservationChange,
    ReservationStatus,
)
from .operating_calendar import OpenWindow
from .repository import BookingRepository
from .settings import BookingSettings

T = TypeVar("T")
R = TypeVar("R")


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DayAvailability:
    day: date
    window: OpenWindow | None
    closed_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "open": self.window.open_time.isoformat(timespec="minutes") if self.window else None,
            "close": self.window.close_time.isoformat(timespec="minutes") if self.window else None,
            "closed": self.window is None,
            "closed_reason": self.closed_reason,
        }


@dataclass(frozen=True)
class WeeklyAvailability:
    lab: Lab
    week_start: date
    week_end: date
    days: list[DayAvailability]
    reservations: list[Reservation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "lab_id": self.lab.lab_id,
            "lab_name": self.lab.name,
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "days": [day.to_dict() for day in self.days],
            "reservations": [row.to_dict() for row in self.reservations],
        }


class BookingService:
    def __init__(
        self,
        repository: BookingRepository,
        settings: BookingSettings | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or BookingSettings()
        self.lifecycle = ReservationLifecycle(repository, now_provider=now_provider, settings=self.settings)
        self.edits = EditProposalWorkflow(self.lifecycle)

    def _run(self, operation_name: str, operation: Callable[[], T]) -> Outcome[T]:
        outcome = capture(operation)
        if not outcome.ok:
            logger.warning(f"{operation_name} rejected ({outcome.kind.value}): {outcome.error}")
        return outcome

    # -- reservations ---------------------------------------------------

    def create_reservation(self, request: ReservationRequest, caller: Caller) -> Outcome[CreationResult]:
        return self._run("create_reservation", lambda: self.lifecycle.create(request, caller.user_id))

    def approve_reservation(self, reservation_id: str, caller: Caller | None = None) -> Outcome[Reservation]:
        approved_by = caller.user_id if caller else None
        return self._run("approve_reservation", lambda: self.lifecycle.approve(reservation_id, approved_by))

    def decline_reservation(
        self, reservation_id: str, caller: Caller | None = None, reason: str | None = None
    ) -> Outcome[Reservation]:
        declined_by = caller.user_id if caller else None
        return self._run("decline_reservation", lambda: self.lifecycle.decline(reservation_id, reason, declined_by))

    def cancel_reservation(self, reservation_id: str, by: Caller, reason: str | None = None) -> Outcome[Reservation]:
        return self._run("cancel_reservation", lambda: self.lifecycle.cancel(reservation_id, by, reason))

    def approve_recurring_group(self, recurring_group_id: str, caller: Caller | None = None) -> Outcome[list[Reservation]]:
        approved_by = caller.user_id if caller else None
        return self._run(
            "approve_recurring_group", lambda: self.lifecycle.approve_group(recurring_group_id, approved_by)
        )

    def decline_recurring_group(
        self, recurring_group_id: str, caller: Caller | None = None, reason: str | None = None
    ) -> Outcome[list[Reservation]]:
        declined_by = caller.user_id if caller else None
        return self._run(
            "decline_recurring_group",
            lambda: self.lifecycle.decline_group(recurring_group_id, reason, declined_by),
        )

    def get_reservation(self, reservation_id: str) -> Outcome[Reservation]:
        return self._run("get_reservation", lambda: self._read(self.lifecycle.require_reservation, reservation_id))

    def reservations_for_user(self, user_id: str, status: ReservationStatus | None = None) -> list[Reservation]:
        return self._read(self.lifecycle.reservations_for_user, user_id, status)

    def pending_for_manager(self, caller: Caller) -> list[Reservation]:
        return self._read(self.lifecycle.pending_for_manager, caller)

    def _read(self, query: Callable[..., R], *args: Any) -> R:
        # File-backed repositories refresh their working copy per transaction.
        with self.repository.transaction():
            return query(*args)

    # -- edits ----------------------------------------------------------

    def propose_edit(self, reservation_id: str, change: ReservationChange, by: Caller) -> Outcome[EditProposal]:
        def propose() -> EditProposal:
            with self.repository.transaction():
                self.edits.check_may_propose(self.lifecycle.require_reservation(reservation_id), by)
                return self.edits.propose(reservation_id, change, by.user_id)

        return self._run("propose_edit", propose)

    def resolve_edit(self, proposal_id: str, approve: bool, by: Caller) -> Outcome[EditProposal]:
        def resolve() -> EditProposal:
            with self.repository.transaction():
                self.edits.check_may_resolve(self.edits.require_proposal(proposal_id), by)
                return self.edits.resolve(proposal_id, approve, by.user_id)

        return self._run("resolve_edit", resolve)

    def propose_group_edit(self, recurring_group_id: str, change: GroupChange, by: Caller) -> Outcome[list[EditProposal]]:
        def propose() -> list[EditProposal]:
            with self.repository.transaction():
                for reservation in self.lifecycle.require_group(recurring_group_id):
                    self.edits.check_may_propose(reservation, by)
                return self.edits.propose_group(recurring_group_id, change, by.user_id)

        return self._run("propose_group_edit", propose)

    def resolve_group_edit(self, recurring_group_id: str, approve: bool, by: Caller) -> Outcome[list[EditProposal]]:
        def resolve() -> list[EditProposal]:
            with self.repository.transaction():
                for proposal in self.edits.pending_group_proposals(recurring_group_id):
                    self.edits.check_may_resolve(proposal, by)
                return self.edits.resolve_group(recurring_group_id, approve, by.user_id)

        return self._run("resolve_group_edit", resolve)

    def edit_history(self, reservation_id: str) -> Outcome[list[EditProposal]]:
        return self._run("edit_history", lambda: self._read(self.edits.history, reservation_id))

    def recurring_group(self, recurring_group_id: str) -> Outcome[list[Reservation]]:
        return self._run("recurring_group", lambda: self._read(self.lifecycle.require_group, recurring_group_id))

    # -- availability ---------------------------------------------------

    def weekly_availability(self, lab_id: int, week_start: date | None = None) -> Outcome[WeeklyAvailability]:
        return self._run("weekly_availability", lambda: self._read(self._weekly_availability, lab_id, week_start))

    def _weekly_availability(self, lab_id: int, week_start: date | None) -> WeeklyAvailability:
        lab = self.lifecycle.require_lab(lab_id)
        anchor = week_start or self.lifecycle.clock().date()
        monday = anchor - timedelta(days=anchor.weekday())
        lab_calendar = self.lifecycle.calendar(lab)

        closed = dict(lab_calendar.closed_days(monday, monday + timedelta(days=7)))
        days: list[DayAvailability] = []
        for offset in range(7):
            day = monday + timedelta(days=offset)
            if day in closed:
                days.append(DayAvailability(day, None, closed[day]))
                continue
            window = lab_calendar.resolve(day)
            days.append(DayAvailability(day, window if isinstance(window, OpenWindow) else None))

        window_start = datetime.combine(monday, datetime.min.time())
        window_end = window_start + timedelta(days=7)
        reservations = self.repository.reservations_in_range(lab_id, window_start, window_end, blocking_only=True)
        return WeeklyAvailability(
            lab=lab,
            week_start=monday,
            week_end=monday + timedelta(days=6),
            days=days,
            reservations=reservations,
        )

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import threading
from typing import Any, Iterable, Iterator, Protocol

from .errors import StateConflictError
from .models import (
    BLOCKING_STATUSES,
    ClosureRule,
    EditProposal,
    Lab,
    OperatingHoursRule,
    RecurrencePattern,
    Reservation,
    ReservationStatus,
    Resolution,
    Workstation,
)
from .operating_calendar import LabCalendar, build_calendar


class BookingRepository(Protocol):
    def transaction(self) -> Any: ...

    def get_lab(self, lab_id: int) -> Lab | None: ...

    def list_labs(self) -> list[Lab]: ...

    def get_workstation(self, workstation_id: int) -> Workstation | None: ...

    def workstations_for_lab(self, lab_id: int) -> list[Workstation]: ...

    def operating_hours_for_lab(self, lab_id: int) -> list[OperatingHoursRule]: ...

    def closures_for_lab(self, lab_id: int) -> list[ClosureRule]: ...

    def calendar_for(self, lab: Lab, holiday_country: str | None = None) -> LabCalendar: ...

    def get_reservation(self, reservation_id: str) -> Reservation | None: ...

    def reservations_in_range(
        self, lab_id: int, start: datetime, end: datetime, blocking_only: bool = False
    ) -> list[Reservation]: ...

    def reservations_by_group(self, recurring_group_id: str) -> list[Reservation]: ...

    def reservations_by_user(self, user_id: str, status: ReservationStatus | None = None) -> list[Reservation]: ...

    def reservations_by_status(
        self, status: ReservationStatus, lab_ids: Iterable[int] | None = None
    ) -> list[Reservation]: ...

    def add_reservations(self, reservations: Iterable[Reservation]) -> None: ...

    def save_reservation(self, reservation: Reservation) -> None: ...

    def save_pattern(self, pattern: RecurrencePattern) -> None: ...

    def get_pattern(self, recurring_group_id: str) -> RecurrencePattern | None: ...

    def get_edit_proposal(self, proposal_id: str) -> EditProposal | None: ...

    def pending_proposal_for(self, reservation_id: str) -> EditProposal | None: ...

    def proposals_for_reservation(
        self, reservation_id: str, resolution: Resolution | None = None
    ) -> list[EditProposal]: ...

    def add_edit_proposal(self, proposal: EditProposal) -> None: ...

    def save_edit_proposal(self, proposal: EditProposal) -> None: ...

    def record_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None: ...


class InMemoryBookingRepository:
    """Dict-backed repository.

    ``transaction()`` holds one re-entrant lock for the whole unit of work and
    puts every collection back the way it was if the block raises. Stored
    models are frozen, so restoring shallow copies of the dicts is enough.
    """

    _COLLECTIONS = (
        "labs",
        "workstations",
        "operating_hours",
        "closures",
        "reservations",
        "patterns",
        "proposals",
    )

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self.labs: dict[int, Lab] = {}
        self.workstations: dict[int, Workstation] = {}
        self.operating_hours: dict[tuple[int, int], OperatingHoursRule] = {}
        self.closures: list[ClosureRule] = []
        self.reservations: dict[str, Reservation] = {}
        self.patterns: dict[str, RecurrencePattern] = {}
        self.proposals: dict[str, EditProposal] = {}
        self.events: list[dict[str, Any]] = []

    @contextmanager
    def transaction(self) -> Iterator["InMemoryBookingRepository"]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._begin()
            snapshot = self._snapshot()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._depth -= 1
            if outermost:
                try:
                    self._commit()
                except BaseException:
                    self._restore(snapshot)
                    raise

    def _begin(self) -> None:
        self._pending_events: list[dict[str, Any]] = []

    def _commit(self) -> None:
        self.events.extend(self._pending_events)
        self._pending_events = []

    def _snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {name: getattr(self, name).copy() for name in self._COLLECTIONS}
        snapshot["_pending_events"] = list(getattr(self, "_pending_events", []))
        return snapshot

    def _restore(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # -- reference data -------------------------------------------------

    def add_lab(self, lab: Lab) -> Lab:
        with self.transaction():
            self.labs[lab.lab_id] = lab
        return lab

    def add_workstation(self, workstation: Workstation) -> Workstation:
        with self.transaction():
            if workstation.lab_id not in self.labs:
                raise ValueError(f"Lab {workstation.lab_id} does not exist.")
            same_identifier = [
                row
                for row in self.workstations.values()
                if row.lab_id == workstation.lab_id
                and row.identifier == workstation.identifier
                and row.workstation_id != workstation.workstation_id
            ]
            if same_identifier:
                raise ValueError(f"Workstation identifier {workstation.identifier} already used in lab {workstation.lab_id}.")
            self.workstations[workstation.workstation_id] = workstation
        return workstation

    def set_operating_hours(self, rule: OperatingHoursRule) -> OperatingHoursRule:
        with self.transaction():
            self.operating_hours[(rule.lab_id, rule.weekday)] = rule
        return rule

    def add_closure(self, closure: ClosureRule) -> ClosureRule:
        with self.transaction():
            self.closures.append(closure)
        return closure

    def get_lab(self, lab_id: int) -> Lab | None:
        return self.labs.get(lab_id)

    def list_labs(self) -> list[Lab]:
        return sorted(self.labs.values(), key=lambda lab: lab.lab_id)

    def get_workstation(self, workstation_id: int) -> Workstation | None:
        return self.workstations.get(workstation_id)

    def workstations_for_lab(self, lab_id: int) -> list[Workstation]:
        rows = [row for row in self.workstations.values() if row.lab_id == lab_id]
        return sorted(rows, key=lambda row: row.identifier)

    def operating_hours_for_lab(self, lab_id: int) -> list[OperatingHoursRule]:
        rows = [rule for (rule_lab, _), rule in self.operating_hours.items() if rule_lab == lab_id]
        return sorted(rows, key=lambda rule: rule.weekday)

    def closures_for_lab(self, lab_id: int) -> list[ClosureRule]:
        return [closure for closure in self.closures if closure.applies_to(lab_id)]

    def calendar_for(self, lab: Lab, holiday_country: str | None = None) -> LabCalendar:
        return build_calendar(
            lab,
            self.operating_hours_for_lab(lab.lab_id),
            self.closures_for_lab(lab.lab_id),
            holiday_country=holiday_country,
        )

    # -- reservations ---------------------------------------------------

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        return self.reservations.get(reservation_id)

    def reservations_in_range(
        self, lab_id: int, start: datetime, end: datetime, blocking_only: bool = False
    ) -> list[Reservation]:
        rows = [
            row
            for row in self.reservations.values()
            if row.lab_id == lab_id
            and row.start < end
            and row.end > start
            and (not blocking_only or row.status in BLOCKING_STATUSES)
        ]
        return sorted(rows, key=lambda row: (row.start, row.reservation_id))

    def reservations_by_group(self, recurring_group_id: str) -> list[Reservation]:
        rows = [row for row in self.reservations.values() if row.recurring_group_id == recurring_group_id]
        return sorted(rows, key=lambda row: row.start)

    def reservations_by_user(self, user_id: str, status: ReservationStatus | None = None) -> list[Reservation]:
        rows = [
            row
            for row in self.reservations.values()
            if row.user_id == user_id and (status is None or row.status is status)
        ]
        return sorted(rows, key=lambda row: row.start)

    def reservations_by_status(
        self, status: ReservationStatus, lab_ids: Iterable[int] | None = None
    ) -> list[Reservation]:
        allowed = set(lab_ids) if lab_ids is not None else None
        rows = [
            row
            for row in self.reservations.values()
            if row.status is status and (allowed is None or row.lab_id in allowed)
        ]
        return sorted(rows, key=lambda row: row.start)

    def add_reservations(self, reservations: Iterable[Reservation]) -> None:
        with self.transaction():
            for reservation in reservations:
                if reservation.reservation_id in self.reservations:
                    raise ValueError(f"Reservation {reservation.reservation_id} already exists.")
                self.reservations[reservation.reservation_id] = reservation

    def save_reservation(self, reservation: Reservation) -> None:
        with self.transaction():
            if reservation.reservation_id not in self.reservations:
                raise ValueError(f"Reservation {reservation.reservation_id} does not exist.")
            self.reservations[reservation.reservation_id] = reservation

    def save_pattern(self, pattern: RecurrencePattern) -> None:
        if pattern.recurring_group_id is None:
            raise ValueError("Recurrence pattern needs a recurring_group_id to be stored.")
        with self.transaction():
            self.patterns[pattern.recurring_group_id] = pattern

    def get_pattern(self, recurring_group_id: str) -> RecurrencePattern | None:
        return self.patterns.get(recurring_group_id)

    # -- edit proposals -------------------------------------------------

    def get_edit_proposal(self, proposal_id: str) -> EditProposal | None:
        return self.proposals.get(proposal_id)

    def pending_proposal_for(self, reservation_id: str) -> EditProposal | None:
        for proposal in self.proposals.values():
            if proposal.reservation_id == reservation_id and proposal.is_pending:
                return proposal
        return None

    def proposals_for_reservation(
        self, reservation_id: str, resolution: Resolution | None = None
    ) -> list[EditProposal]:
        rows = [
            row
            for row in self.proposals.values()
            if row.reservation_id == reservation_id and (resolution is None or row.resolution is resolution)
        ]
        return sorted(rows, key=lambda row: (row.created_at or datetime.min, row.proposal_id))

    def add_edit_proposal(self, proposal: EditProposal) -> None:
        with self.transaction():
            if proposal.is_pending and self.pending_proposal_for(proposal.reservation_id) is not None:
                raise StateConflictError(
                    f"Reservation {proposal.reservation_id} already has a pending edit proposal.",
                    "edit_already_pending",
                )
            self.proposals[proposal.proposal_id] = proposal

    def save_edit_proposal(self, proposal: EditProposal) -> None:
        with self.transaction():
            if proposal.proposal_id not in self.proposals:
                raise ValueError(f"Edit proposal {proposal.proposal_id} does not exist.")
            self.proposals[proposal.proposal_id] = proposal

    def record_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        with self.transaction():
            timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
            self._pending_events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})

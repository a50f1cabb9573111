from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, time
import logging
from typing import TYPE_CHECKING
from uuid import uuid4

from .errors import BookingValidationError, NotFoundError, PermissionDeniedError, StateConflictError
from .models import (
    BLOCKING_STATUSES,
    Caller,
    EditProposal,
    Reservation,
    ReservationChange,
    Resolution,
)

if TYPE_CHECKING:
    from .lifecycle import ReservationLifecycle
    from .repository import BookingRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupChange:
    """A change for every occurrence of a recurring group.

    Times are times of day, applied on each occurrence's own date.
    """

    start_time: time | None = None
    end_time: time | None = None
    description: str | None = None
    whole_lab: bool | None = None
    workstation_ids: tuple[int, ...] | None = None

    def for_occurrence(self, reservation: Reservation) -> ReservationChange:
        day = reservation.start.date()
        return ReservationChange(
            start=datetime.combine(day, self.start_time) if self.start_time is not None else None,
            end=datetime.combine(day, self.end_time) if self.end_time is not None else None,
            description=self.description,
            whole_lab=self.whole_lab,
            workstation_ids=self.workstation_ids,
        )


def withdraw_pending_edit(
    repository: "BookingRepository", reservation_id: str, resolver: str, now: datetime
) -> EditProposal | None:
    """Reject the pending proposal of a reservation that just became terminal."""
    proposal = repository.pending_proposal_for(reservation_id)
    if proposal is None:
        return None
    rejected = replace(proposal, resolution=Resolution.REJECTED, resolved_by=resolver, resolved_at=now)
    repository.save_edit_proposal(rejected)
    repository.record_event(
        "EDIT_REJECTED",
        {"proposal_id": proposal.proposal_id, "reservation_id": reservation_id, "resolved_by": resolver, "withdrawn": True},
        now,
    )
    return rejected


class EditProposalWorkflow:
    def __init__(self, lifecycle: "ReservationLifecycle") -> None:
        self.lifecycle = lifecycle
        self.repository = lifecycle.repository

    def require_proposal(self, proposal_id: str) -> EditProposal:
        proposal = self.repository.get_edit_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"Edit proposal {proposal_id} not found.", "proposal_not_found")
        return proposal

    def check_may_propose(self, reservation: Reservation, caller: Caller) -> None:
        if not (caller.owns(reservation) or caller.manages(reservation.lab_id)):
            raise PermissionDeniedError(
                "Only the reservation owner or a manager of its lab can propose edits.",
                "not_owner_or_manager",
            )

    def check_may_resolve(self, proposal: EditProposal, caller: Caller) -> None:
        """The owner's proposals go to a lab manager; anyone else's go to the owner."""
        reservation = self.lifecycle.require_reservation(proposal.reservation_id)
        if proposal.proposed_by == reservation.user_id:
            allowed = caller.manages(reservation.lab_id)
        else:
            allowed = caller.owns(reservation)
        if not allowed:
            raise PermissionDeniedError("Only the other party can resolve this edit proposal.", "not_counterparty")

    def propose(self, reservation_id: str, change: ReservationChange, proposer: str) -> EditProposal:
        with self.repository.transaction():
            reservation = self.lifecycle.require_reservation(reservation_id)
            proposal = self._propose(reservation, change, proposer, self.lifecycle.clock())
        logger.info(f"Edit proposal {proposal.proposal_id} created for reservation {reservation_id} by {proposer}")
        return proposal

    def _propose(self, reservation: Reservation, change: ReservationChange, proposer: str, now: datetime) -> EditProposal:
        if reservation.status not in BLOCKING_STATUSES:
            raise StateConflictError(
                f"Only PENDING or APPROVED reservations can be edited (reservation is {reservation.status.value}).",
                "not_editable",
            )
        if self.repository.pending_proposal_for(reservation.reservation_id) is not None:
            raise StateConflictError("Reservation already has a pending edit proposal.", "edit_already_pending")

        original = reservation.values()
        proposed = change.apply_to(original)
        if proposed == original:
            raise BookingValidationError("The edit does not change anything.", "empty_edit")

        proposal = EditProposal(
            proposal_id=str(uuid4()),
            reservation_id=reservation.reservation_id,
            proposed_by=proposer,
            original_status=reservation.status,
            original=original,
            proposed=proposed,
            created_at=now,
        )
        self.repository.add_edit_proposal(proposal)
        self.repository.record_event(
            "EDIT_PROPOSED",
            {
                "proposal_id": proposal.proposal_id,
                "reservation_id": reservation.reservation_id,
                "proposed_by": proposer,
                "proposed": proposed.to_dict(),
            },
            now,
        )
        return proposal

    def resolve(self, proposal_id: str, approve: bool, resolver: str) -> EditProposal:
        """Apply or discard a pending proposal.

        Approval re-validates the proposed window and mutates the reservation in
        the same transaction. If validation fails nothing is written and the
        proposal stays PENDING.
        """
        with self.repository.transaction():
            proposal = self.require_proposal(proposal_id)
            resolved = self._resolve(proposal, approve, resolver, self.lifecycle.clock())
        logger.info(f"Edit proposal {proposal_id} {resolved.resolution.value.lower()} by {resolver}")
        return resolved

    def _resolve(self, proposal: EditProposal, approve: bool, resolver: str, now: datetime) -> EditProposal:
        if not proposal.is_pending:
            raise StateConflictError(
                f"Edit proposal was already {proposal.resolution.value}.",
                "edit_already_resolved",
            )
        if not approve:
            rejected = replace(proposal, resolution=Resolution.REJECTED, resolved_by=resolver, resolved_at=now)
            self.repository.save_edit_proposal(rejected)
            self.repository.record_event(
                "EDIT_REJECTED",
                {"proposal_id": proposal.proposal_id, "reservation_id": proposal.reservation_id, "resolved_by": resolver},
                now,
            )
            return rejected

        reservation = self.lifecycle.require_reservation(proposal.reservation_id)
        if reservation.status not in BLOCKING_STATUSES:
            raise StateConflictError(
                f"Reservation is {reservation.status.value}; the edit can no longer be applied.",
                "not_editable",
            )

        proposed = proposal.proposed
        lab_calendar = self.lifecycle.calendar(self.lifecycle.require_lab(reservation.lab_id))
        workstation_ids = self.lifecycle.detector.validate_selection(
            reservation.lab_id, proposed.workstation_ids, proposed.whole_lab
        )
        self.lifecycle.validate_window(
            lab_calendar,
            workstation_ids,
            proposed.whole_lab,
            proposed.start,
            proposed.end,
            now if proposed.start != reservation.start else None,
            exclude_reservation_id=reservation.reservation_id,
        )

        updated = replace(
            reservation,
            start=proposed.start,
            end=proposed.end,
            description=proposed.description,
            whole_lab=proposed.whole_lab,
            workstation_ids=workstation_ids,
            updated_at=now,
        )
        approved = replace(proposal, resolution=Resolution.APPROVED, resolved_by=resolver, resolved_at=now)
        self.repository.save_reservation(updated)
        self.repository.save_edit_proposal(approved)
        self.repository.record_event(
            "EDIT_APPROVED",
            {
                "proposal_id": proposal.proposal_id,
                "reservation_id": reservation.reservation_id,
                "resolved_by": resolver,
                "start": updated.start.isoformat(timespec="minutes"),
                "end": updated.end.isoformat(timespec="minutes"),
            },
            now,
        )
        return approved

    def propose_group(self, recurring_group_id: str, change: GroupChange, proposer: str) -> list[EditProposal]:
        with self.repository.transaction():
            siblings = [
                row
                for row in self.lifecycle.require_group(recurring_group_id)
                if row.status in BLOCKING_STATUSES
            ]
            if not siblings:
                raise StateConflictError(
                    f"Recurring group {recurring_group_id} has no PENDING or APPROVED reservations.",
                    "not_editable",
                )
            now = self.lifecycle.clock()
            proposals = [self._propose(row, change.for_occurrence(row), proposer, now) for row in siblings]
        logger.info(f"Created {len(proposals)} edit proposal(s) for recurring group {recurring_group_id} by {proposer}")
        return proposals

    def resolve_group(self, recurring_group_id: str, approve: bool, resolver: str) -> list[EditProposal]:
        with self.repository.transaction():
            pending = self.pending_group_proposals(recurring_group_id)
            if not pending:
                raise NotFoundError(
                    f"No pending edit proposals found for recurring group {recurring_group_id}.",
                    "proposal_not_found",
                )
            now = self.lifecycle.clock()
            resolved = [self._resolve(proposal, approve, resolver, now) for proposal in pending]
        logger.info(
            f"{'Approved' if approve else 'Rejected'} {len(resolved)} edit proposal(s) in recurring group {recurring_group_id}"
        )
        return resolved

    def pending_group_proposals(self, recurring_group_id: str) -> list[EditProposal]:
        return [
            proposal
            for proposal in (
                self.repository.pending_proposal_for(row.reservation_id)
                for row in self.lifecycle.require_group(recurring_group_id)
            )
            if proposal is not None
        ]

    def history(self, reservation_id: str) -> list[EditProposal]:
        self.lifecycle.require_reservation(reservation_id)
        return self.repository.proposals_for_reservation(reservation_id)

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable

from flask import Flask, jsonify, request

from .edits import GroupChange
from .errors import ErrorKind, Outcome
from .lifecycle import CreationResult, ReservationRequest
from .models import Caller, EditProposal, PatternType, RecurrencePattern, ReservationChange, ReservationStatus
from .service import BookingService
from .settings import BookingSettings, configure_logging
from .yaml_store import BookingYamlRepository

STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STATE_CONFLICT: 409,
    ErrorKind.FORBIDDEN: 403,
}


def create_app(
    data_dir: str | Path | None = None,
    now_provider: Callable[[], datetime] | None = None,
    settings: BookingSettings | None = None,
) -> Flask:
    effective_settings = settings or BookingSettings.from_env()
    app = Flask(__name__)
    repository = BookingYamlRepository(data_dir or effective_settings.data_dir)
    service = BookingService(repository, settings=effective_settings, now_provider=now_provider)
    app.config["BOOKING_SERVICE"] = service

    def _caller() -> Caller | None:
        user_id = str(request.headers.get("X-User-Id", "")).strip()
        if not user_id:
            return None
        managed = {
            int(value)
            for value in str(request.headers.get("X-Managed-Labs", "")).split(",")
            if value.strip().isdigit()
        }
        is_admin = str(request.headers.get("X-Admin", "")).lower() in {"1", "true", "yes"}
        return Caller(user_id=user_id, managed_lab_ids=frozenset(managed), is_admin=is_admin)

    def _unauthenticated() -> Any:
        return jsonify({"ok": False, "message": "X-User-Id header is required."}), 401

    def _forbidden() -> Any:
        return jsonify({"ok": False, "message": "You do not manage this lab."}), 403

    def _respond(outcome: Outcome[Any], serialize: Callable[[Any], dict[str, Any]], status: int = 200) -> Any:
        error = outcome.error
        if error is not None:
            payload = {"ok": False, "message": error.message, "error": error.to_dict()}
            skipped = getattr(error, "skipped", None)
            if skipped:
                payload["skipped"] = [row.to_dict() for row in skipped]
            return jsonify(payload), STATUS_CODES[error.kind]
        return jsonify({"ok": True, **serialize(outcome.value)}), status

    def _managed_reservation_lab(reservation_id: str, caller: Caller) -> Any:
        """Return None when the caller manages the reservation's lab, else an error response."""
        found = service.get_reservation(reservation_id)
        if not found.ok:
            return _respond(found, lambda _: {})
        if not caller.manages(found.value.lab_id):
            return _forbidden()
        return None

    @app.post("/api/reservations")
    def create_reservation() -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        payload = request.get_json(silent=True) or {}
        try:
            reservation_request = _parse_reservation_request(payload)
        except (KeyError, TypeError, ValueError) as error:
            return jsonify({"ok": False, "message": f"Invalid reservation request: {error}"}), 400

        outcome = service.create_reservation(reservation_request, caller)
        return _respond(outcome, _serialize_creation, 201)

    @app.get("/api/reservations/<reservation_id>")
    def get_reservation(reservation_id: str) -> Any:
        return _respond(service.get_reservation(reservation_id), lambda row: {"reservation": row.to_dict()})

    @app.post("/api/reservations/<reservation_id>/approve")
    def approve_reservation(reservation_id: str) -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        denied = _managed_reservation_lab(reservation_id, caller)
        if denied is not None:
            return denied
        outcome = service.approve_reservation(reservation_id, caller)
        return _respond(outcome, lambda row: {"reservation": row.to_dict()})

    @app.post("/api/reservations/<reservation_id>/decline")
    def decline_reservation(reservation_id: str) -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        denied = _managed_reservation_lab(reservation_id, caller)
        if denied is not None:
            return denied
        payload = request.get_json(silent=True) or {}
        outcome = service.decline_reservation(reservation_id, caller, reason=payload.get("reason"))
        return _respond(outcome, lambda row: {"reservation": row.to_dict()})

    @app.post("/api/reservations/<reservation_id>/cancel")
    def cancel_reservation(reservation_id: str) -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        payload = request.get_json(silent=True) or {}
        outcome = service.cancel_reservation(reservation_id, caller, reason=payload.get("reason"))
        return _respond(outcome, lambda row: {"reservation": row.to_dict()})

    @app.post("/api/reservations/<reservation_id>/edits")
    def propose_edit(reservation_id: str) -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        payload = request.get_json(silent=True) or {}
        try:
            change = _parse_change(payload)
        except (TypeError, ValueError) as error:
            return jsonify({"ok": False, "message": f"Invalid edit request: {error}"}), 400
        outcome = service.propose_edit(reservation_id, change, caller)
        return _respond(outcome, lambda proposal: {"proposal": proposal.to_dict()}, 201)

    @app.get("/api/reservations/<reservation_id>/edits")
    def edit_history(reservation_id: str) -> Any:
        outcome = service.edit_history(reservation_id)
        return _respond(outcome, lambda rows: {"proposals": [row.to_dict() for row in rows]})

    @app.post("/api/edits/<proposal_id>/resolve")
    def resolve_edit(proposal_id: str) -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload.get("approve"), bool):
            return jsonify({"ok": False, "message": "approve must be true or false."}), 400
        outcome = service.resolve_edit(proposal_id, payload["approve"], caller)
        return _respond(outcome, lambda row: {"proposal": row.to_dict()})

    @app.post("/api/groups/<group_id>/<action>")
    def group_action(group_id: str, action: str) -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        payload = request.get_json(silent=True) or {}
        if action in {"approve", "decline"}:
            siblings = service.recurring_group(group_id)
            if not siblings.ok:
                return _respond(siblings, lambda _: {})
            if not caller.manages(siblings.unwrap()[0].lab_id):
                return _forbidden()

        if action == "approve":
            outcome: Outcome[Any] = service.approve_recurring_group(group_id, caller)
            return _respond(outcome, lambda rows: {"reservations": [row.to_dict() for row in rows]})
        if action == "decline":
            outcome = service.decline_recurring_group(group_id, caller, reason=payload.get("reason"))
            return _respond(outcome, lambda rows: {"reservations": [row.to_dict() for row in rows]})
        if action == "edits":
            try:
                change = _parse_group_change(payload)
            except (TypeError, ValueError) as error:
                return jsonify({"ok": False, "message": f"Invalid edit request: {error}"}), 400
            outcome = service.propose_group_edit(group_id, change, caller)
            return _respond(outcome, _serialize_proposals, 201)
        if action == "resolve-edits":
            if not isinstance(payload.get("approve"), bool):
                return jsonify({"ok": False, "message": "approve must be true or false."}), 400
            outcome = service.resolve_group_edit(group_id, payload["approve"], caller)
            return _respond(outcome, _serialize_proposals)
        return jsonify({"ok": False, "message": f"Unsupported action: {action}"}), 404

    @app.get("/api/labs/<int:lab_id>/availability")
    def lab_availability(lab_id: int) -> Any:
        raw_week_start = str(request.args.get("week_start", "")).strip()
        try:
            week_start = date.fromisoformat(raw_week_start) if raw_week_start else None
        except ValueError:
            return jsonify({"ok": False, "message": "week_start must be YYYY-MM-DD."}), 400
        outcome = service.weekly_availability(lab_id, week_start)
        return _respond(outcome, lambda availability: availability.to_dict())

    @app.get("/api/my-reservations")
    def my_reservations() -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        raw_status = str(request.args.get("status", "")).strip().upper()
        try:
            status = ReservationStatus(raw_status) if raw_status else None
        except ValueError:
            return jsonify({"ok": False, "message": f"Unknown status: {raw_status}"}), 400
        rows = service.reservations_for_user(caller.user_id, status)
        return jsonify({"ok": True, "reservations": [row.to_dict() for row in rows]})

    @app.get("/api/manager/pending")
    def pending_for_manager() -> Any:
        caller = _caller()
        if caller is None:
            return _unauthenticated()
        rows = service.pending_for_manager(caller)
        return jsonify({"ok": True, "reservations": [row.to_dict() for row in rows]})

    return app


def _parse_reservation_request(payload: dict[str, Any]) -> ReservationRequest:
    recurrence_payload = payload.get("recurrence") or payload.get("recurring")
    recurrence = None
    if recurrence_payload:
        recurrence = RecurrencePattern(
            pattern_type=PatternType(str(recurrence_payload["pattern_type"]).upper()),
            interval_days=(
                int(recurrence_payload["interval_days"]) if recurrence_payload.get("interval_days") is not None else None
            ),
            end_date=(date.fromisoformat(str(recurrence_payload["end_date"])) if recurrence_payload.get("end_date") else None),
            occurrences=(
                int(recurrence_payload["occurrences"]) if recurrence_payload.get("occurrences") is not None else None
            ),
        )
    return ReservationRequest(
        lab_id=int(payload["lab_id"]),
        start=datetime.fromisoformat(str(payload["start"])),
        end=datetime.fromisoformat(str(payload["end"])),
        whole_lab=bool(payload.get("whole_lab", False)),
        workstation_ids=tuple(int(value) for value in payload.get("workstation_ids") or []),
        description=(str(payload["description"]) if payload.get("description") is not None else None),
        recurrence=recurrence,
    )


def _parse_change(payload: dict[str, Any]) -> ReservationChange:
    return ReservationChange(
        start=datetime.fromisoformat(str(payload["start"])) if payload.get("start") else None,
        end=datetime.fromisoformat(str(payload["end"])) if payload.get("end") else None,
        description=(str(payload["description"]) if payload.get("description") is not None else None),
        whole_lab=(bool(payload["whole_lab"]) if payload.get("whole_lab") is not None else None),
        workstation_ids=(
            tuple(int(value) for value in payload["workstation_ids"]) if payload.get("workstation_ids") is not None else None
        ),
    )


def _parse_group_change(payload: dict[str, Any]) -> GroupChange:
    return GroupChange(
        start_time=(datetime.strptime(str(payload["start_time"]), "%H:%M").time() if payload.get("start_time") else None),
        end_time=(datetime.strptime(str(payload["end_time"]), "%H:%M").time() if payload.get("end_time") else None),
        description=(str(payload["description"]) if payload.get("description") is not None else None),
        whole_lab=(bool(payload["whole_lab"]) if payload.get("whole_lab") is not None else None),
        workstation_ids=(
            tuple(int(value) for value in payload["workstation_ids"]) if payload.get("workstation_ids") is not None else None
        ),
    )


def _serialize_creation(result: CreationResult) -> dict[str, Any]:
    return {
        "recurring_group_id": result.recurring_group_id,
        "accepted": [row.to_dict() for row in result.accepted],
        "skipped": [row.to_dict() for row in result.skipped],
    }


def _serialize_proposals(proposals: list[EditProposal]) -> dict[str, Any]:
    return {"proposals": [row.to_dict() for row in proposals]}


if __name__ == "__main__":
    configure_logging()
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)

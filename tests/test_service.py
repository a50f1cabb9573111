import threading
import unittest
from datetime import date, datetime, time

from lab_booking import (
    BookingService,
    Caller,
    ClosureRule,
    ConflictError,
    ErrorKind,
    InMemoryBookingRepository,
    Lab,
    OperatingHoursRule,
    Reservation,
    ReservationChange,
    ReservationRequest,
    ReservationStatus,
    Workstation,
)

NOW = datetime(2026, 2, 27, 9, 0)
ALICE = Caller("alice")
MANAGER = Caller("manager", managed_lab_ids=frozenset({1}))


def build_service() -> BookingService:
    repo = InMemoryBookingRepository()
    repo.add_lab(Lab(1, "Robotics"))
    for weekday in range(5):
        repo.set_operating_hours(OperatingHoursRule(1, weekday, time(9, 0), time(17, 0)))
    repo.add_workstation(Workstation(101, 1, "W1"))
    return BookingService(repo, now_provider=lambda: NOW)


def request(start_hour: int, end_hour: int, day: int = 2) -> ReservationRequest:
    return ReservationRequest(
        1, datetime(2026, 3, day, start_hour, 0), datetime(2026, 3, day, end_hour, 0), workstation_ids=(101,)
    )


class TestOutcomes(unittest.TestCase):
    def setUp(self) -> None:
        self.service = build_service()

    def test_success_carries_value(self) -> None:
        outcome = self.service.create_reservation(request(10, 11), ALICE)
        self.assertTrue(outcome.ok)
        self.assertIsNone(outcome.kind)
        self.assertEqual(len(outcome.unwrap().accepted), 1)

    def test_each_failure_kind(self) -> None:
        created = self.service.create_reservation(request(10, 11), ALICE).unwrap().accepted[0]

        conflict = self.service.create_reservation(request(10, 12), Caller("bob"))
        self.assertIs(conflict.kind, ErrorKind.CONFLICT)
        self.assertEqual(conflict.error.to_dict()["conflicting_reservation_ids"], [created.reservation_id])

        validation = self.service.create_reservation(request(7, 8), ALICE)
        self.assertIs(validation.kind, ErrorKind.VALIDATION)
        self.assertEqual(validation.error.rule, "outside_operating_hours")

        self.assertIs(self.service.get_reservation("missing").kind, ErrorKind.NOT_FOUND)
        self.assertIs(self.service.cancel_reservation(created.reservation_id, Caller("bob")).kind, ErrorKind.FORBIDDEN)

        self.assertTrue(self.service.approve_reservation(created.reservation_id, MANAGER).ok)
        repeat = self.service.approve_reservation(created.reservation_id, MANAGER)
        self.assertIs(repeat.kind, ErrorKind.STATE_CONFLICT)

        with self.assertRaises(ConflictError):
            conflict.unwrap()

    def test_edit_flow_through_service(self) -> None:
        created = self.service.create_reservation(request(10, 11), ALICE).unwrap().accepted[0]
        proposal = self.service.propose_edit(
            created.reservation_id, ReservationChange(start=datetime(2026, 3, 2, 12, 0), end=datetime(2026, 3, 2, 13, 0)), ALICE
        ).unwrap()
        self.assertTrue(self.service.resolve_edit(proposal.proposal_id, True, MANAGER).ok)
        self.assertEqual(self.service.get_reservation(created.reservation_id).unwrap().start.hour, 12)
        self.assertEqual(len(self.service.edit_history(created.reservation_id).unwrap()), 1)
        self.assertIs(self.service.edit_history("missing").kind, ErrorKind.NOT_FOUND)

    def test_edit_proposals_need_owner_or_manager_and_the_other_party_resolves(self) -> None:
        created = self.service.create_reservation(request(10, 11), ALICE).unwrap().accepted[0]
        change = ReservationChange(description="Calibration run")

        stranger = self.service.propose_edit(created.reservation_id, change, Caller("bob"))
        self.assertIs(stranger.kind, ErrorKind.FORBIDDEN)
        self.assertEqual(stranger.error.rule, "not_owner_or_manager")
        self.assertEqual(self.service.edit_history(created.reservation_id).unwrap(), [])

        by_manager = self.service.propose_edit(created.reservation_id, change, MANAGER).unwrap()
        self.assertIs(self.service.resolve_edit(by_manager.proposal_id, True, MANAGER).kind, ErrorKind.FORBIDDEN)
        self.assertIs(self.service.resolve_edit(by_manager.proposal_id, True, Caller("bob")).kind, ErrorKind.FORBIDDEN)
        self.assertTrue(self.service.resolve_edit(by_manager.proposal_id, True, ALICE).ok)

        by_owner = self.service.propose_edit(
            created.reservation_id, ReservationChange(description="Second run"), ALICE
        ).unwrap()
        denied = self.service.resolve_edit(by_owner.proposal_id, True, ALICE)
        self.assertIs(denied.kind, ErrorKind.FORBIDDEN)
        self.assertEqual(denied.error.rule, "not_counterparty")
        self.assertTrue(self.service.resolve_edit(by_owner.proposal_id, False, MANAGER).ok)


class TestConcurrentApproval(unittest.TestCase):
    def test_exactly_one_of_two_conflicting_approvals_wins(self) -> None:
        service = build_service()
        rows = [
            Reservation(
                reservation_id=reservation_id,
                lab_id=1,
                user_id=user_id,
                start=datetime(2026, 3, 2, start_hour, 0),
                end=datetime(2026, 3, 2, start_hour + 2, 0),
                workstation_ids=(101,),
                created_at=NOW,
            )
            for reservation_id, user_id, start_hour in (("a", "alice", 10), ("b", "bob", 11))
        ]
        service.repository.add_reservations(rows)

        barrier = threading.Barrier(2)
        outcomes = {}

        def approve(reservation_id: str) -> None:
            barrier.wait()
            outcomes[reservation_id] = service.approve_reservation(reservation_id, MANAGER)

        threads = [threading.Thread(target=approve, args=(reservation_id,)) for reservation_id in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        kinds = sorted((outcome.kind.value if outcome.kind else "ok") for outcome in outcomes.values())
        self.assertEqual(kinds, ["conflict", "ok"])
        statuses = sorted(service.repository.get_reservation(rid).status.value for rid in ("a", "b"))
        self.assertEqual(statuses, [ReservationStatus.APPROVED.value, ReservationStatus.PENDING.value])


class TestWeeklyAvailability(unittest.TestCase):
    def test_week_is_monday_aligned_with_closures_and_blocking_reservations(self) -> None:
        service = build_service()
        service.repository.add_closure(ClosureRule(lab_id=1, specific_date=date(2026, 3, 4), reason="Maintenance"))
        kept = service.create_reservation(request(10, 11, day=3), ALICE).unwrap().accepted[0]
        declined = service.create_reservation(request(13, 14, day=5), ALICE).unwrap().accepted[0]
        service.decline_reservation(declined.reservation_id, MANAGER, "No")

        availability = service.weekly_availability(1, date(2026, 3, 5)).unwrap()
        self.assertEqual(availability.week_start, date(2026, 3, 2))
        self.assertEqual(availability.week_end, date(2026, 3, 8))

        payload = availability.to_dict()
        self.assertEqual(len(payload["days"]), 7)
        self.assertEqual(payload["days"][0]["open"], "09:00")
        self.assertEqual(payload["days"][2]["closed_reason"], "Maintenance")
        self.assertTrue(payload["days"][5]["closed"])
        self.assertEqual([row["reservation_id"] for row in payload["reservations"]], [kept.reservation_id])

    def test_closed_days_match_the_lab_calendar(self) -> None:
        service = build_service()
        service.repository.add_closure(ClosureRule(specific_date=date(2026, 3, 3), reason="Open day"))
        lab_calendar = service.lifecycle.calendar(service.repository.get_lab(1))

        availability = service.weekly_availability(1, date(2026, 3, 2)).unwrap()

        expected = lab_calendar.closed_days(date(2026, 3, 2), date(2026, 3, 9))
        self.assertEqual(
            [(row.day, row.closed_reason) for row in availability.days if row.window is None],
            expected,
        )
        self.assertEqual([day for day, _ in expected], [date(2026, 3, 3), date(2026, 3, 7), date(2026, 3, 8)])

    def test_unknown_lab(self) -> None:
        self.assertIs(build_service().weekly_availability(42).kind, ErrorKind.NOT_FOUND)


if __name__ == "__main__":
    unittest.main()

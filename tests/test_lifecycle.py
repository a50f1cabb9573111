import unittest
from datetime import date, datetime, time

from lab_booking import (
    BookingSettings,
    BookingValidationError,
    Caller,
    ClosureRule,
    ConflictError,
    ErrorKind,
    InMemoryBookingRepository,
    Lab,
    NoValidOccurrencesError,
    OperatingHoursRule,
    PatternType,
    PermissionDeniedError,
    RecurrencePattern,
    Reservation,
    ReservationLifecycle,
    ReservationRequest,
    ReservationStatus,
    StateConflictError,
    Workstation,
)

NOW = datetime(2026, 2, 27, 9, 0)
ALICE = Caller("alice")
BOB = Caller("bob")
MANAGER = Caller("manager", managed_lab_ids=frozenset({1}))


def build_repository() -> InMemoryBookingRepository:
    repo = InMemoryBookingRepository()
    repo.add_lab(Lab(1, "Robotics"))
    for weekday in range(5):
        repo.set_operating_hours(OperatingHoursRule(1, weekday, time(9, 0), time(17, 0)))
    for weekday in (5, 6):
        repo.set_operating_hours(OperatingHoursRule(1, weekday, is_closed=True))
    repo.add_workstation(Workstation(101, 1, "W1"))
    repo.add_workstation(Workstation(102, 1, "W2"))
    return repo


def single(start: datetime, end: datetime, workstation_ids: tuple[int, ...] = (101,), whole_lab: bool = False) -> ReservationRequest:
    return ReservationRequest(lab_id=1, start=start, end=end, whole_lab=whole_lab, workstation_ids=workstation_ids)


class LifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = build_repository()
        self.lifecycle = ReservationLifecycle(self.repo, now_provider=lambda: NOW)

    def create_one(self, start: datetime, end: datetime, user_id: str = "alice", **kwargs) -> Reservation:
        return self.lifecycle.create(single(start, end, **kwargs), user_id).accepted[0]


class TestSingleCreation(LifecycleTestCase):
    def test_created_reservation_is_pending(self) -> None:
        reservation = self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        self.assertIs(reservation.status, ReservationStatus.PENDING)
        self.assertIsNone(reservation.recurring_group_id)
        self.assertEqual(reservation.created_at, NOW)
        self.assertEqual(self.repo.get_reservation(reservation.reservation_id), reservation)
        self.assertEqual([event["event_type"] for event in self.repo.events], ["RESERVATION_CREATED"])

    def test_conflict_and_touching_boundary(self) -> None:
        existing = self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        self.lifecycle.approve(existing.reservation_id, "manager")

        with self.assertRaises(ConflictError) as raised:
            self.create_one(datetime(2026, 3, 2, 10, 30), datetime(2026, 3, 2, 11, 30), user_id="bob")
        self.assertEqual([row.reservation_id for row in raised.exception.conflicts], [existing.reservation_id])

        follow_up = self.create_one(datetime(2026, 3, 2, 11, 0), datetime(2026, 3, 2, 12, 0), user_id="bob")
        self.assertIs(follow_up.status, ReservationStatus.PENDING)

    def test_pending_reservations_block_new_requests(self) -> None:
        self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        with self.assertRaises(ConflictError):
            self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 10, 30), whole_lab=True, workstation_ids=())

    def test_other_workstation_is_free(self) -> None:
        self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        other = self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0), workstation_ids=(102,))
        self.assertEqual(other.workstation_ids, (102,))

    def test_validation_rules(self) -> None:
        cases = {
            "start_in_past": (datetime(2026, 2, 26, 10, 0), datetime(2026, 2, 26, 11, 0)),
            "duration_too_short": (datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 10, 10)),
            "lab_closed": (datetime(2026, 2, 28, 10, 0), datetime(2026, 2, 28, 11, 0)),
            "outside_operating_hours": (datetime(2026, 3, 2, 8, 0), datetime(2026, 3, 2, 10, 0)),
            "invalid_time_range": (datetime(2026, 3, 2, 11, 0), datetime(2026, 3, 2, 10, 0)),
        }
        for rule, (start, end) in cases.items():
            with self.subTest(rule=rule):
                with self.assertRaises(BookingValidationError) as raised:
                    self.create_one(start, end)
                self.assertEqual(raised.exception.rule, rule)
        self.assertEqual(self.repo.reservations, {})

    def test_minimum_duration_follows_settings(self) -> None:
        lifecycle = ReservationLifecycle(
            self.repo, now_provider=lambda: NOW, settings=BookingSettings(min_duration_minutes=5)
        )
        result = lifecycle.create(single(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 10, 10)), "alice")
        self.assertEqual(len(result.accepted), 1)


class TestRecurringCreation(LifecycleTestCase):
    def recurring(self, pattern: RecurrencePattern, start: datetime, end: datetime) -> ReservationRequest:
        return ReservationRequest(lab_id=1, start=start, end=end, workstation_ids=(101,), recurrence=pattern)

    def test_weekly_series_on_consecutive_mondays(self) -> None:
        result = self.lifecycle.create(
            self.recurring(
                RecurrencePattern(PatternType.WEEKLY, occurrences=4),
                datetime(2026, 3, 2, 10, 0),
                datetime(2026, 3, 2, 11, 0),
            ),
            "alice",
        )
        self.assertEqual(
            [row.start.date() for row in result.accepted],
            [date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16), date(2026, 3, 23)],
        )
        self.assertTrue(all(row.status is ReservationStatus.PENDING for row in result.accepted))
        self.assertEqual({row.recurring_group_id for row in result.accepted}, {result.recurring_group_id})
        self.assertEqual(result.skipped, [])
        self.assertEqual(self.repo.get_pattern(result.recurring_group_id).occurrences, 4)

    def test_closed_and_conflicting_dates_are_reported_as_skipped(self) -> None:
        self.repo.add_closure(ClosureRule(lab_id=1, specific_date=date(2026, 3, 9), reason="Maintenance"))
        blocker = self.create_one(datetime(2026, 3, 16, 10, 30), datetime(2026, 3, 16, 11, 30), user_id="bob")

        result = self.lifecycle.create(
            self.recurring(
                RecurrencePattern(PatternType.WEEKLY, occurrences=4),
                datetime(2026, 3, 2, 10, 0),
                datetime(2026, 3, 2, 11, 0),
            ),
            "alice",
        )
        self.assertEqual(
            [row.start.date() for row in result.accepted],
            [date(2026, 3, 2), date(2026, 3, 23), date(2026, 3, 30)],
        )
        skipped = {row.occurrence_date: row for row in result.skipped}
        self.assertEqual(skipped[date(2026, 3, 9)].rule, "lab_closed")
        self.assertEqual(skipped[date(2026, 3, 9)].reason, "Maintenance")
        self.assertIs(skipped[date(2026, 3, 16)].kind, ErrorKind.CONFLICT)
        self.assertEqual(self.repo.get_reservation(blocker.reservation_id), blocker)

    def test_series_cut_short_by_closures_reports_the_stop(self) -> None:
        for day in (9, 16, 23):
            self.repo.add_closure(ClosureRule(lab_id=1, specific_date=date(2026, 3, day), reason="Renovation"))
        lifecycle = ReservationLifecycle(
            self.repo, now_provider=lambda: NOW, settings=BookingSettings(max_skipped_candidates=2)
        )

        result = lifecycle.create(
            self.recurring(
                RecurrencePattern(PatternType.WEEKLY, occurrences=3),
                datetime(2026, 3, 2, 10, 0),
                datetime(2026, 3, 2, 11, 0),
            ),
            "alice",
        )
        self.assertEqual([row.start.date() for row in result.accepted], [date(2026, 3, 2)])
        self.assertEqual(
            [(row.occurrence_date, row.rule) for row in result.skipped],
            [
                (date(2026, 3, 9), "lab_closed"),
                (date(2026, 3, 16), "lab_closed"),
                (date(2026, 3, 23), "too_many_closed_dates"),
            ],
        )

    def test_no_valid_occurrences_writes_nothing(self) -> None:
        with self.assertRaises(NoValidOccurrencesError) as raised:
            self.lifecycle.create(
                self.recurring(
                    RecurrencePattern(PatternType.WEEKLY, occurrences=2),
                    datetime(2026, 3, 2, 18, 0),
                    datetime(2026, 3, 2, 19, 0),
                ),
                "alice",
            )
        self.assertEqual(raised.exception.rule, "no_valid_occurrences")
        self.assertEqual(len(raised.exception.skipped), 2)
        self.assertEqual(self.repo.reservations, {})
        self.assertEqual(self.repo.patterns, {})
        self.assertEqual(self.repo.events, [])

    def test_recurring_request_may_not_cross_midnight(self) -> None:
        with self.assertRaises(BookingValidationError) as raised:
            self.lifecycle.create(
                self.recurring(
                    RecurrencePattern(PatternType.WEEKLY, occurrences=2),
                    datetime(2026, 3, 2, 16, 0),
                    datetime(2026, 3, 3, 10, 0),
                ),
                "alice",
            )
        self.assertEqual(raised.exception.rule, "crosses_midnight")

    def test_group_approve_and_decline(self) -> None:
        result = self.lifecycle.create(
            self.recurring(
                RecurrencePattern(PatternType.WEEKLY, occurrences=3),
                datetime(2026, 3, 2, 10, 0),
                datetime(2026, 3, 2, 11, 0),
            ),
            "alice",
        )
        group_id = result.recurring_group_id
        self.lifecycle.decline(result.accepted[0].reservation_id, "First week is exam week", "manager")

        approved = self.lifecycle.approve_group(group_id, "manager")
        self.assertEqual(len(approved), 2)
        statuses = [row.status for row in self.repo.reservations_by_group(group_id)]
        self.assertEqual(statuses, [ReservationStatus.DECLINED, ReservationStatus.APPROVED, ReservationStatus.APPROVED])

        with self.assertRaises(StateConflictError):
            self.lifecycle.decline_group(group_id, "Too late", "manager")


class TestTransitions(LifecycleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.reservation = self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))

    def test_approve_only_from_pending(self) -> None:
        approved = self.lifecycle.approve(self.reservation.reservation_id, "manager")
        self.assertIs(approved.status, ReservationStatus.APPROVED)
        with self.assertRaises(StateConflictError) as raised:
            self.lifecycle.approve(self.reservation.reservation_id, "manager")
        self.assertEqual(raised.exception.rule, "not_pending")
        with self.assertRaises(StateConflictError):
            self.lifecycle.decline(self.reservation.reservation_id, "no", "manager")

    def test_decline_records_reason_and_frees_the_slot(self) -> None:
        declined = self.lifecycle.decline(self.reservation.reservation_id, "Lab reserved for exams", "manager")
        self.assertIs(declined.status, ReservationStatus.DECLINED)
        self.assertEqual(declined.status_reason, "Lab reserved for exams")

        retry = self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0), user_id="bob")
        self.assertIs(retry.status, ReservationStatus.PENDING)

    def test_cancel_permissions(self) -> None:
        with self.assertRaises(PermissionDeniedError):
            self.lifecycle.cancel(self.reservation.reservation_id, BOB)
        self.assertIs(self.repo.get_reservation(self.reservation.reservation_id).status, ReservationStatus.PENDING)

        cancelled = self.lifecycle.cancel(self.reservation.reservation_id, MANAGER, "Room double-booked")
        self.assertIs(cancelled.status, ReservationStatus.CANCELLED)

        with self.assertRaises(StateConflictError) as raised:
            self.lifecycle.cancel(self.reservation.reservation_id, ALICE)
        self.assertEqual(raised.exception.rule, "already_terminal")

    def test_owner_can_cancel_approved_reservation(self) -> None:
        self.lifecycle.approve(self.reservation.reservation_id, "manager")
        cancelled = self.lifecycle.cancel(self.reservation.reservation_id, ALICE)
        self.assertIs(cancelled.status, ReservationStatus.CANCELLED)
        self.assertEqual(
            [event["event_type"] for event in self.repo.events],
            ["RESERVATION_CREATED", "RESERVATION_APPROVED", "RESERVATION_CANCELLED"],
        )

    def test_approval_rechecks_against_approved_reservations(self) -> None:
        rival = Reservation(
            reservation_id="rival",
            lab_id=1,
            user_id="bob",
            start=datetime(2026, 3, 2, 10, 30),
            end=datetime(2026, 3, 2, 11, 30),
            workstation_ids=(101,),
            created_at=NOW,
        )
        self.repo.add_reservations([rival])

        self.lifecycle.approve("rival", "manager")
        with self.assertRaises(ConflictError):
            self.lifecycle.approve(self.reservation.reservation_id, "manager")
        self.assertIs(self.repo.get_reservation(self.reservation.reservation_id).status, ReservationStatus.PENDING)


class TestQueries(LifecycleTestCase):
    def test_reservations_for_user_and_manager_queue(self) -> None:
        self.repo.add_lab(Lab(2, "Chemistry", default_open=time(8, 0), default_close=time(18, 0)))
        self.repo.add_workstation(Workstation(201, 2, "C1"))
        mine = self.create_one(datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0))
        self.lifecycle.create(
            ReservationRequest(2, datetime(2026, 3, 2, 10, 0), datetime(2026, 3, 2, 11, 0), workstation_ids=(201,)),
            "bob",
        )

        self.assertEqual(self.lifecycle.reservations_for_user("alice"), [mine])
        self.assertEqual(self.lifecycle.reservations_for_user("alice", ReservationStatus.APPROVED), [])
        self.assertEqual(self.lifecycle.pending_for_manager(MANAGER), [mine])
        self.assertEqual(len(self.lifecycle.pending_for_manager(Caller("root", is_admin=True))), 2)
        self.assertEqual(self.lifecycle.pending_for_manager(MANAGER, lab_ids=[2]), [])


if __name__ == "__main__":
    unittest.main()

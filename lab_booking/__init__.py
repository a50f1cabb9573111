from .booking import ConflictDetector, can_reserve, find_conflicts, has_time_overlap
from .edits import EditProposalWorkflow, GroupChange
from .errors import (
	BookingError,
	BookingStorageError,
	BookingValidationError,
	ConflictError,
	ErrorKind,
	NotFoundError,
	Outcome,
	PermissionDeniedError,
	StateConflictError,
)
from .lifecycle import CreationResult, NoValidOccurrencesError, ReservationLifecycle, ReservationRequest, SkippedOccurrence
from .models import (
	Caller,
	ClosureRule,
	EditProposal,
	Lab,
	OperatingHoursRule,
	PatternType,
	RecurrencePattern,
	Reservation,
	ReservationChange,
	ReservationStatus,
	ReservationValues,
	Resolution,
	Workstation,
)
from .operating_calendar import Closed, LabCalendar, OpenWindow, build_calendar
from .recurrence import expand
from .repository import BookingRepository, InMemoryBookingRepository
from .service import BookingService, DayAvailability, WeeklyAvailability
from .settings import BookingSettings, configure_logging
from .yaml_store import BookingYamlRepository

__all__ = [
	"ConflictDetector",
	"can_reserve",
	"find_conflicts",
	"has_time_overlap",
	"EditProposalWorkflow",
	"GroupChange",
	"BookingError",
	"BookingStorageError",
	"BookingValidationError",
	"ConflictError",
	"ErrorKind",
	"NotFoundError",
	"Outcome",
	"PermissionDeniedError",
	"StateConflictError",
	"CreationResult",
	"NoValidOccurrencesError",
	"ReservationLifecycle",
	"ReservationRequest",
	"SkippedOccurrence",
	"Caller",
	"ClosureRule",
	"EditProposal",
	"Lab",
	"OperatingHoursRule",
	"PatternType",
	"RecurrencePattern",
	"Reservation",
	"ReservationChange",
	"ReservationStatus",
	"ReservationValues",
	"Resolution",
	"Workstation",
	"Closed",
	"LabCalendar",
	"OpenWindow",
	"build_calendar",
	"expand",
	"BookingRepository",
	"InMemoryBookingRepository",
	"BookingService",
	"DayAvailability",
	"WeeklyAvailability",
	"BookingSettings",
	"configure_logging",
	"BookingYamlRepository",
]

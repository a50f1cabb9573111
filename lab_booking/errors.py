from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

if TYPE_CHECKING:
    from .models import Reservation


T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    STATE_CONFLICT = "state_conflict"
    FORBIDDEN = "forbidden"


class BookingError(ValueError):
    """Expected business-rule outcome. Never retried by the core."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, rule: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.rule = rule

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "rule": self.rule, "message": self.message}


class NotFoundError(BookingError):
    kind = ErrorKind.NOT_FOUND


class BookingValidationError(BookingError):
    kind = ErrorKind.VALIDATION


class ConflictError(BookingError):
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, conflicts: list["Reservation"] | None = None, rule: str | None = "overlap") -> None:
        super().__init__(message, rule)
        self.conflicts = list(conflicts or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["conflicting_reservation_ids"] = [row.reservation_id for row in self.conflicts]
        return payload


class StateConflictError(BookingError):
    kind = ErrorKind.STATE_CONFLICT


class PermissionDeniedError(BookingError):
    kind = ErrorKind.FORBIDDEN


class BookingStorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or one business error, never both."""

    value: T | None = None
    error: BookingError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @staticmethod
    def success(value: T) -> "Outcome[T]":
        return Outcome(value=value)

    @staticmethod
    def failure(error: BookingError) -> "Outcome[Any]":
        return Outcome(error=error)


def capture(operation: Callable[[], T]) -> Outcome[T]:
    try:
        return Outcome.success(operation())
    except BookingError as error:
        return Outcome.failure(error)

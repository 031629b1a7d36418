"""
Exceptions raised by the booking engine.

Services raise these; the API layer translates them into HTTP responses.
Every error has a stable ``code`` so callers can branch without parsing
messages.
"""

from datetime import date
from typing import Any


class BookingError(Exception):
    """Base class for all booking engine errors."""

    code = "booking_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


# Selection errors: resolved locally by the composer, never reach the store.


class SelectionError(BookingError):
    code = "selection_error"


class DayNotOpenError(SelectionError):
    code = "day_not_open"

    def __init__(self, coach_id: str, day: date) -> None:
        super().__init__(f"Coach {coach_id} is not available on {day.isoformat()}.")
        self.coach_id = coach_id
        self.day = day


class DayInPastError(SelectionError):
    code = "day_in_past"

    def __init__(self, day: date) -> None:
        super().__init__(f"{day.isoformat()} is in the past. Please choose another day.")
        self.day = day


class InvalidDayError(SelectionError):
    code = "invalid_day"

    def __init__(self, day: Any, month: int, year: int) -> None:
        super().__init__(f"{year}-{month:02d} has no day {day!r}.")
        self.day = day


class NoDaySelectedError(SelectionError):
    code = "no_day_selected"

    def __init__(self) -> None:
        super().__init__("Please select a day first.")


class UnknownSlotError(SelectionError):
    code = "unknown_slot"

    def __init__(self, slot_label: str) -> None:
        super().__init__(f"'{slot_label}' is not a bookable time slot.")
        self.slot_label = slot_label


class SlotTakenError(SelectionError):
    code = "slot_taken"

    def __init__(self, coach_id: str, day: date, slot_label: str) -> None:
        super().__init__(
            f"The {slot_label} slot on {day.isoformat()} is already booked. "
            "Please choose another time."
        )
        self.coach_id = coach_id
        self.day = day
        self.slot_label = slot_label


# Validation errors


class BookingValidationError(BookingError):
    code = "validation_error"


class NoSessionSelectedError(BookingValidationError):
    code = "no_session_selected"

    def __init__(self) -> None:
        super().__init__("Please select at least one session.")


class MissingClientError(BookingValidationError):
    code = "missing_client"

    def __init__(self) -> None:
        super().__init__("You must be logged in to book a session.")


class InvalidMonthError(BookingValidationError):
    code = "invalid_month"

    def __init__(self, month: Any, year: Any) -> None:
        super().__init__(f"Invalid month/year: {month!r}/{year!r}.")
        self.month = month
        self.year = year


class UnknownCoachError(BookingValidationError):
    code = "unknown_coach"

    def __init__(self, coach_id: str) -> None:
        super().__init__(f"Coach {coach_id} not found.")
        self.coach_id = coach_id


class PricingError(BookingValidationError):
    code = "pricing_error"


# Commit-time conflict


class SlotConflictError(BookingError):
    """A concurrent booking claimed the slot between selection and commit."""

    code = "slot_conflict"

    def __init__(self, coach_id: str, day: date, slot_label: str) -> None:
        super().__init__(
            f"The {slot_label} slot on {day.isoformat()} was just taken by another booking. "
            "Please pick another slot."
        )
        self.coach_id = coach_id
        self.day = day
        self.slot_label = slot_label

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "coach_id": self.coach_id,
                "date": self.day.isoformat(),
                "slot_label": self.slot_label,
                "committed": False,
            }
        )
        return data


# Lifecycle


class TransitionError(BookingError):
    code = "transition_error"


class IllegalTransitionError(TransitionError):
    code = "illegal_transition"

    def __init__(self, booking_id: str, current: str, event: str) -> None:
        super().__init__(f"Booking {booking_id}: cannot {event} a booking that is {current}.")
        self.booking_id = booking_id
        self.current = current
        self.event = event


class TransitionNotPermittedError(TransitionError):
    code = "transition_not_permitted"

    def __init__(self, booking_id: str, role: str, event: str) -> None:
        super().__init__(f"Booking {booking_id}: {role} is not allowed to {event} this booking.")
        self.booking_id = booking_id
        self.role = role
        self.event = event


class BookingNotFoundError(BookingError):
    code = "booking_not_found"

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking {booking_id} not found.")
        self.booking_id = booking_id


class BookingIdInUseError(BookingError):
    """The booking id already belongs to a different booking."""

    code = "booking_id_in_use"

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking id {booking_id} is already used by another booking.")
        self.booking_id = booking_id


class StoreUnavailableError(BookingError):
    """
    Timeout or connectivity failure talking to the store. Safe to retry.

    ``committed`` is False when the write is known not to have landed and
    None when the store could not be asked. Retrying with the same booking
    id settles the None case.
    """

    code = "store_unavailable"

    def __init__(self, operation: str, committed: bool | None = False) -> None:
        super().__init__(f"Could not {operation} right now. Please try again.")
        self.operation = operation
        self.committed = committed

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"retryable": True, "committed": self.committed})
        return data

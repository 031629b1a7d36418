"""
Slot conflict detection against the active bookings of a coach.
"""

from collections.abc import Iterable
from datetime import date

from coachbook.models.schemas import Booking, BookingStatus

ACTIVE_STATUSES: frozenset[BookingStatus] = frozenset(
    {
        BookingStatus.PENDING_CONFIRMATION,
        BookingStatus.PENDING_PAYMENT,
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
    }
)


def is_active(booking: Booking) -> bool:
    return booking.status in ACTIVE_STATUSES


def taken_slots(bookings: Iterable[Booking], coach_id: str, day: date) -> set[str]:
    """Return the slot labels held by active bookings of a coach on a day."""
    return {
        session.slot_label
        for booking in bookings
        if booking.coach_id == coach_id and is_active(booking)
        for session in booking.sessions
        if session.date == day
    }


def is_slot_taken(bookings: Iterable[Booking], coach_id: str, day: date, slot_label: str) -> bool:
    return slot_label in taken_slots(bookings, coach_id, day)


def find_conflicts(bookings: Iterable[Booking]) -> list[tuple[str, date, str]]:
    """
    Return every (coach_id, date, slot_label) held by more than one active booking.

    An empty list means the double-booking invariant holds for the given set.
    """
    seen: set[tuple[str, date, str]] = set()
    conflicts: list[tuple[str, date, str]] = []
    for booking in bookings:
        if not is_active(booking):
            continue
        for session in booking.sessions:
            key = (booking.coach_id, session.date, session.slot_label)
            if key in seen and key not in conflicts:
                conflicts.append(key)
            seen.add(key)
    return conflicts

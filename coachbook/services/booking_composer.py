"""
Booking composer: the step-by-step flow a client drives to book a coach.

The workflow is enforced in order:
1. Pick a visible month and a day in it (the day must be open for the coach)
2. Pick exactly one slot on that day (the slot must not be taken)
3. Pick a payment method and review the quote
4. Submit: day and slot are re-validated against the latest snapshot, then
   the booking is committed through the store, which rejects the write if a
   concurrent booking claimed the slot first

Selection reads come from a SnapshotCache kept current by the snapshot feed.
Choosing a new month or day always clears the selected slot.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime

from coachbook.errors import (
    BookingIdInUseError,
    DayInPastError,
    DayNotOpenError,
    InvalidDayError,
    MissingClientError,
    NoDaySelectedError,
    NoSessionSelectedError,
    SlotConflictError,
    SlotTakenError,
    UnknownCoachError,
)
from coachbook.models.schemas import (
    AvailabilityCalendar,
    Booking,
    BookingConfirmation,
    Coach,
    PaymentMethod,
    Quote,
    Session,
    StoreSnapshot,
    TimeSlot,
)
from coachbook.services.availability import (
    days_in_month,
    is_day_open,
    is_past,
    open_days,
    today_local,
    validate_month,
)
from coachbook.services.conflicts import is_slot_taken, taken_slots
from coachbook.services.database_service import DatabaseService, database_service
from coachbook.services.feed import SnapshotCache, snapshot_cache
from coachbook.services.lifecycle import initial_status
from coachbook.services.pricing import PricingPolicy, pricing_policy
from coachbook.services.slot_catalog import TimeSlotCatalog, slot_catalog

logger = logging.getLogger(__name__)

SUBMITTED_MESSAGES: dict[PaymentMethod, str] = {
    PaymentMethod.CASH: (
        "Booking submitted successfully! The coach will contact you to confirm the sessions."
    ),
    PaymentMethod.ONLINE: (
        "Booking submitted! Please complete your payment to confirm the booking."
    ),
}

# Commit attempts with freshly generated ids before an id collision is reported.
ID_ATTEMPTS = 3


def confirmation_for(booking: Booking) -> BookingConfirmation:
    return BookingConfirmation(
        booking_id=booking.id,
        status=booking.status,
        total_price=booking.total_price,
        sessions=booking.sessions,
        message=SUBMITTED_MESSAGES[booking.payment_method],
    )


class BookingComposer:
    """
    Selection state and submission for one client booking one coach.

    Attributes:
        coach_id: The coach being booked.
        month / year: The visible calendar month.
        selected_day: The chosen day, or None.
        selected_slot: The chosen slot label, or None.
        payment_method: The declared payment method (cash by default).
    """

    def __init__(
        self,
        coach_id: str,
        cache: SnapshotCache | None = None,
        store: DatabaseService | None = None,
        pricing: PricingPolicy | None = None,
        catalog: TimeSlotCatalog | None = None,
        today: Callable[[], date] = today_local,
    ) -> None:
        self.coach_id = coach_id
        self._cache = cache if cache is not None else snapshot_cache
        self._store = store if store is not None else database_service
        self._pricing = pricing if pricing is not None else pricing_policy
        self._catalog = catalog if catalog is not None else slot_catalog
        self._today = today

        current = self._today()
        self.month = current.month
        self.year = current.year
        self.selected_day: date | None = None
        self.selected_slot: str | None = None
        self.payment_method = PaymentMethod.CASH
        self._pending_booking_id: str | None = None

    # Snapshot reads

    @property
    def snapshot(self) -> StoreSnapshot:
        return self._cache.snapshot

    def coach(self) -> Coach:
        coach = self.snapshot.coaches.get(self.coach_id)
        if coach is None:
            raise UnknownCoachError(self.coach_id)
        return coach

    def calendar(self) -> AvailabilityCalendar | None:
        return self.snapshot.calendars.get(self.coach_id)

    @property
    def sessions(self) -> list[Session]:
        """The sessions the booking would contain; at most one."""
        if self.selected_day is None or self.selected_slot is None:
            return []
        slot = self._catalog.get(self.selected_slot)
        return [
            Session(
                date=self.selected_day,
                slot_label=slot.label,
                duration_minutes=slot.duration_minutes,
            )
        ]

    # Month navigation

    def reset_selection(self) -> None:
        self.selected_day = None
        self.selected_slot = None
        self._pending_booking_id = None

    def view_month(self, month: int, year: int) -> None:
        validate_month(month, year)
        self.month = month
        self.year = year
        self.reset_selection()

    def shift_month(self, increment: int) -> None:
        """Move the visible month forward or backward, crossing year boundaries."""
        index = self.year * 12 + (self.month - 1) + increment
        self.view_month(index % 12 + 1, index // 12)

    def days_in_month(self) -> int:
        return days_in_month(self.month, self.year)

    def open_days(self) -> list[date]:
        return open_days(self.coach(), self.month, self.year, self.calendar(), self._today())

    # Day and slot selection

    def _check_day(self, day: date) -> None:
        coach = self.coach()
        if is_past(day, self._today()):
            raise DayInPastError(day)
        if not is_day_open(coach, day, self.calendar(), self._today()):
            raise DayNotOpenError(coach.id, day)

    def select_day(self, day: int) -> date:
        """
        Select a day of the visible month.

        Any previously selected slot is cleared, even if the same day is
        selected again.

        Raises:
            InvalidDayError: The visible month has no such day.
            DayInPastError: The day is before today.
            DayNotOpenError: The coach is not available that day.
        """
        if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= self.days_in_month():
            raise InvalidDayError(day, self.month, self.year)
        candidate = date(self.year, self.month, day)
        self._check_day(candidate)

        self.reset_selection()
        self.selected_day = candidate
        return candidate

    def slot_board(self) -> list[tuple[TimeSlot, bool]]:
        """Every catalog slot for the selected day with a taken flag."""
        if self.selected_day is None:
            raise NoDaySelectedError()
        taken = taken_slots(self.snapshot.bookings, self.coach_id, self.selected_day)
        return [(slot, slot.label in taken) for slot in self._catalog.slots]

    def select_slot(self, slot_label: str) -> Session:
        """
        Select the single slot for this booking, replacing any earlier choice.

        Raises:
            NoDaySelectedError: No day has been chosen yet.
            UnknownSlotError: The label is not in the catalog.
            SlotTakenError: An active booking already holds the slot.
        """
        if self.selected_day is None:
            raise NoDaySelectedError()
        slot = self._catalog.get(slot_label)
        if is_slot_taken(self.snapshot.bookings, self.coach_id, self.selected_day, slot.label):
            raise SlotTakenError(self.coach_id, self.selected_day, slot.label)

        self.selected_slot = slot.label
        self._pending_booking_id = None
        return self.sessions[0]

    def select_payment_method(self, method: PaymentMethod) -> None:
        self.payment_method = PaymentMethod(method)

    def quote(self) -> Quote:
        coach = self.coach()
        sessions = self.sessions
        return Quote(
            coach_id=coach.id,
            session_count=len(sessions),
            price_per_session=self._pricing.price_per_session(coach),
            total_price=self._pricing.total_price(sessions, coach),
            payment_method=self.payment_method,
        )

    # Submission

    def _conflicting_holder(self, session: Session) -> bool:
        """Whether a booking other than our own pending one holds the session's slot."""
        others = [b for b in self.snapshot.bookings if b.id != self._pending_booking_id]
        return is_slot_taken(others, self.coach_id, session.date, session.slot_label)

    async def submit(
        self, client_id: str | None, booking_id: str | None = None
    ) -> BookingConfirmation:
        """
        Re-validate the selection and commit a new booking.

        Selection state is cleared only after a successful commit. If the
        store is unavailable the selection and the pending booking id are
        kept, so retrying submit cannot create a second booking. A retry whose
        earlier attempt did land sees its own booking in the snapshot and
        returns it instead of reporting a conflict.

        Args:
            client_id: The client making the booking.
            booking_id: Caller-chosen id, used instead of a generated one so
                the caller can retry across composers.

        Raises:
            MissingClientError: No client identity was supplied.
            NoSessionSelectedError: No slot has been selected.
            DayInPastError / DayNotOpenError: The day closed since selection.
            SlotConflictError: The slot was taken since selection; the slot
                selection is cleared so the caller can pick another one.
            BookingIdInUseError: A caller-chosen id belongs to another booking.
            StoreUnavailableError: The store failed; ``committed`` tells
                whether the booking is known not to exist. Safe to retry.
        """
        if not client_id or not client_id.strip():
            raise MissingClientError()
        sessions = self.sessions
        if not sessions:
            raise NoSessionSelectedError()
        if booking_id is not None:
            self._pending_booking_id = booking_id

        coach = self.coach()
        for session in sessions:
            self._check_day(session.date)
            if self._conflicting_holder(session):
                self.selected_slot = None
                self._pending_booking_id = None
                logger.warning(
                    f"Slot {session.slot_label} on {session.date.isoformat()} "
                    f"for coach {coach.id} was taken before submit"
                )
                raise SlotConflictError(coach.id, session.date, session.slot_label)

        for attempt in range(1, ID_ATTEMPTS + 1):
            if self._pending_booking_id is None:
                self._pending_booking_id = str(uuid.uuid4())[:8]
            booking = self._build_booking(client_id, coach, sessions)
            try:
                committed = await self._store.create_booking(booking)
                break
            except SlotConflictError:
                self.selected_slot = None
                self._pending_booking_id = None
                raise
            except BookingIdInUseError:
                if booking_id is not None or attempt == ID_ATTEMPTS:
                    raise
                logger.warning(f"Generated booking id {booking.id} is taken; drawing a new one")
                self._pending_booking_id = None

        self.reset_selection()
        return confirmation_for(committed)

    def _build_booking(self, client_id: str, coach: Coach, sessions: list[Session]) -> Booking:
        now = datetime.utcnow()
        return Booking(
            id=self._pending_booking_id,
            coach_id=coach.id,
            client_id=client_id,
            sessions=sessions,
            total_price=self._pricing.total_price(sessions, coach),
            payment_method=self.payment_method,
            status=initial_status(self.payment_method),
            created_at=now,
            updated_at=now,
        )

"""
Booking service for coaching session reservations.

This module is the entry point the HTTP layer uses. It wires the booking
composer, the lifecycle machine and the store together:
1. Creating bookings through the composer workflow
2. Answering availability queries from the latest snapshot
3. Applying lifecycle events with compare-and-set writes
4. Expiring online bookings whose payment never arrived
"""

import logging
from datetime import UTC, date, datetime, timedelta

from coachbook.config import settings
from coachbook.errors import (
    BookingIdInUseError,
    BookingNotFoundError,
    IllegalTransitionError,
    MissingClientError,
    TransitionError,
    UnknownCoachError,
)
from coachbook.models.schemas import (
    Actor,
    ActorRole,
    AvailabilityCalendar,
    Booking,
    BookingConfirmation,
    BookingStatus,
    Coach,
    CoachCategory,
    LifecycleEvent,
    PaymentMethod,
    Session,
    TimeSlot,
)
from coachbook.services.availability import days_in_month, open_days, today_local
from coachbook.services.booking_composer import BookingComposer, confirmation_for
from coachbook.services.conflicts import ACTIVE_STATUSES, taken_slots
from coachbook.services.database_service import DatabaseService, database_service
from coachbook.services.feed import SnapshotCache, SnapshotFeed, snapshot_cache, snapshot_feed
from coachbook.services.lifecycle import BookingLifecycleMachine, lifecycle_machine, next_session
from coachbook.services.pricing import PricingPolicy, pricing_policy
from coachbook.services.slot_catalog import slot_catalog

logger = logging.getLogger(__name__)

PAYMENT_EXPIRY_ACTOR = Actor(role=ActorRole.SYSTEM, id="payment-expiry")


def _same_request(
    booking: Booking, client_id: str, coach_id: str, session_date: date, slot_label: str
) -> bool:
    return (
        booking.client_id == client_id
        and booking.coach_id == coach_id
        and any(s.date == session_date and s.slot_label == slot_label for s in booking.sessions)
    )


class BookingService:
    """
    Manages coaching session bookings.

    Attributes:
        _store: Persistent store for coaches, calendars and bookings.
        _cache: Snapshot of the store kept current by the feed subscription.
        _machine: The lifecycle state machine guarding status changes.
    """

    def __init__(
        self,
        store: DatabaseService | None = None,
        cache: SnapshotCache | None = None,
        feed: SnapshotFeed | None = None,
        machine: BookingLifecycleMachine | None = None,
        pricing: PricingPolicy | None = None,
    ) -> None:
        self._store = store if store is not None else database_service
        self._cache = cache if cache is not None else snapshot_cache
        self._feed = feed if feed is not None else snapshot_feed
        self._machine = machine if machine is not None else lifecycle_machine
        self._pricing = pricing if pricing is not None else pricing_policy

    def _snapshot_coach(self, coach_id: str) -> Coach:
        coach = self._cache.catch_up(self._feed).coaches.get(coach_id)
        if coach is None:
            raise UnknownCoachError(coach_id)
        return coach

    # Coaches and availability

    async def register_coach(
        self,
        coach_id: str,
        category: CoachCategory,
        name: str = "",
        session_duration_minutes: int = 120,
        active: bool = True,
    ) -> Coach:
        """Save a coach profile, pricing it from its category."""
        coach = Coach(
            id=coach_id,
            name=name,
            category=category,
            price_per_session=0,
            session_duration_minutes=session_duration_minutes,
            active=active,
        )
        coach.price_per_session = self._pricing.price_per_session(coach)
        return await self._store.upsert_coach(coach)

    async def list_coaches(self) -> list[Coach]:
        return await self._store.list_coaches(active_only=True)

    async def get_coach(self, coach_id: str) -> Coach:
        coach = await self._store.get_coach(coach_id)
        if coach is None:
            raise UnknownCoachError(coach_id)
        return coach

    async def set_availability(self, coach_id: str, dates: list[date]) -> AvailabilityCalendar:
        await self.get_coach(coach_id)
        return await self._store.set_availability(coach_id, dates)

    def open_days(self, coach_id: str, month: int, year: int) -> tuple[int, list[date]]:
        """Return (days in month, selectable days) for a coach's calendar month."""
        total = days_in_month(month, year)
        coach = self._snapshot_coach(coach_id)
        calendar = self._cache.snapshot.calendars.get(coach_id)
        return total, open_days(coach, month, year, calendar, today_local())

    def slots_taken(self, coach_id: str, day: date) -> set[str]:
        """Slot labels held by active bookings of a coach on a day."""
        self._snapshot_coach(coach_id)
        return taken_slots(self._cache.snapshot.bookings, coach_id, day)

    def slot_board(self, coach_id: str, day: date) -> list[tuple[TimeSlot, bool]]:
        taken = self.slots_taken(coach_id, day)
        return [(slot, slot.label in taken) for slot in slot_catalog.slots]

    # Booking creation

    def composer(self, coach_id: str) -> BookingComposer:
        self._cache.catch_up(self._feed)
        return BookingComposer(
            coach_id,
            cache=self._cache,
            store=self._store,
            pricing=self._pricing,
        )

    async def create_booking(
        self,
        client_id: str | None,
        coach_id: str,
        session_date: date,
        slot_label: str,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        booking_id: str | None = None,
    ) -> BookingConfirmation:
        """
        Create a booking for one session by driving the composer workflow.

        This is the "create booking" command used by the REST API. When the
        caller supplies a booking id the command is idempotent: repeating it
        after a timeout returns the booking the first call stored.

        Raises:
            BookingIdInUseError: The supplied id belongs to a different booking.
            BookingError: Any selection, validation, conflict or store error
                from the composer. Nothing is written unless the call returns.
        """
        if not client_id:
            raise MissingClientError()
        if booking_id is not None:
            existing = await self._store.get_booking(booking_id)
            if existing is not None:
                if _same_request(existing, client_id, coach_id, session_date, slot_label):
                    logger.info(f"Booking {booking_id} already exists; returning it")
                    return confirmation_for(existing)
                raise BookingIdInUseError(booking_id)

        composer = self.composer(coach_id)
        composer.view_month(session_date.month, session_date.year)
        composer.select_day(session_date.day)
        composer.select_slot(slot_label)
        composer.select_payment_method(payment_method)
        return await composer.submit(client_id, booking_id=booking_id)

    # Reads

    async def get_booking(self, booking_id: str) -> Booking:
        booking = await self._store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    async def get_client_bookings(
        self, client_id: str, include_closed: bool = False
    ) -> list[Booking]:
        """Bookings of a client, newest first. Only active ones unless include_closed."""
        statuses = None if include_closed else ACTIVE_STATUSES
        return await self._store.get_bookings(client_id=client_id, statuses=statuses)

    async def get_coach_bookings(
        self, coach_id: str, include_closed: bool = False
    ) -> list[Booking]:
        statuses = None if include_closed else ACTIVE_STATUSES
        return await self._store.get_bookings(coach_id=coach_id, statuses=statuses)

    async def next_session(self, client_id: str) -> tuple[Booking, Session] | None:
        bookings = await self._store.get_bookings(
            client_id=client_id,
            statuses=[BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS],
        )
        return next_session(bookings, today_local())

    # Lifecycle

    async def apply_event(self, booking_id: str, event: LifecycleEvent, actor: Actor) -> Booking:
        """
        Apply a lifecycle event to a stored booking.

        The write is a compare-and-set on the status that was read. If another
        actor changed the booking in between, the event is re-evaluated
        against the fresh status, which either succeeds or raises.

        Raises:
            BookingNotFoundError: No such booking.
            IllegalTransitionError: The event is not allowed from the current status.
            TransitionNotPermittedError: The actor may not trigger the event.
        """
        # Each lost race means the status advanced, so the loop is bounded by the graph depth.
        for _ in range(len(BookingStatus)):
            booking = await self.get_booking(booking_id)
            updated = self._machine.apply(booking, event, actor)
            if await self._store.update_status(updated, expected=booking.status):
                return updated
            logger.warning(
                f"Booking {booking_id} changed while applying {event.value}; re-reading"
            )

        booking = await self.get_booking(booking_id)
        raise IllegalTransitionError(booking_id, booking.status.value, event.value)

    async def accept(self, booking_id: str, actor: Actor) -> Booking:
        return await self.apply_event(booking_id, LifecycleEvent.ACCEPT, actor)

    async def capture_payment(self, booking_id: str, actor: Actor) -> Booking:
        return await self.apply_event(booking_id, LifecycleEvent.CAPTURE_PAYMENT, actor)

    async def start(self, booking_id: str, actor: Actor) -> Booking:
        return await self.apply_event(booking_id, LifecycleEvent.START, actor)

    async def complete(self, booking_id: str, actor: Actor) -> Booking:
        return await self.apply_event(booking_id, LifecycleEvent.COMPLETE, actor)

    async def cancel(self, booking_id: str, actor: Actor) -> Booking:
        return await self.apply_event(booking_id, LifecycleEvent.CANCEL, actor)

    async def expire_pending_payments(self, now: datetime | None = None) -> list[Booking]:
        """
        Cancel online bookings that have waited for payment too long.

        Args:
            now: Current time as naive UTC. Defaults to the wall clock.

        Returns:
            The bookings that were cancelled.
        """
        now = now or datetime.now(UTC).replace(tzinfo=None)
        cutoff = now - timedelta(minutes=settings.payment_expiry_minutes)
        stale = await self._store.get_stale_pending_payments(cutoff)

        expired: list[Booking] = []
        for booking in stale:
            try:
                expired.append(await self.cancel(booking.id, PAYMENT_EXPIRY_ACTOR))
            except TransitionError as e:
                logger.info(f"Skipping expiry of booking {booking.id}: {e}")
        if expired:
            logger.info(f"Expired {len(expired)} unpaid booking(s)")
        return expired


booking_service = BookingService()

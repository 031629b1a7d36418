"""
Tests for BookingComposer in coachbook/services/booking_composer.py.

The composer reads from a SnapshotCache and commits through a DatabaseService
backed by an in-memory SQLite database, so conflicts between a stale snapshot
and the store can be exercised for real.
"""

import asyncio
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from coachbook.errors import (
    BookingIdInUseError,
    DayInPastError,
    DayNotOpenError,
    InvalidDayError,
    InvalidMonthError,
    MissingClientError,
    NoDaySelectedError,
    NoSessionSelectedError,
    SlotConflictError,
    SlotTakenError,
    StoreUnavailableError,
    UnknownCoachError,
    UnknownSlotError,
)
from coachbook.models.database import Base
from coachbook.models.schemas import (
    Booking,
    BookingStatus,
    Coach,
    CoachCategory,
    PaymentMethod,
)
from coachbook.services.booking_composer import BookingComposer
from coachbook.services.database_service import DatabaseService
from coachbook.services.feed import SnapshotCache, SnapshotFeed

TODAY = date(2030, 6, 10)
MORNING = "6:00 AM - 8:00 AM"
LATE = "9:00 PM - 10:00 PM"


@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def feed() -> SnapshotFeed:
    return SnapshotFeed()


@pytest.fixture
def cache() -> SnapshotCache:
    return SnapshotCache()


@pytest_asyncio.fixture
async def store(test_engine, feed, cache, monkeypatch) -> DatabaseService:
    """A DatabaseService on the test database, seeded with two coaches."""
    monkeypatch.setattr(
        "coachbook.services.database_service.AsyncSessionLocal",
        sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False),
    )
    service = DatabaseService(feed=feed)
    await service.upsert_coach(
        Coach(id="gym1", name="Gym", category=CoachCategory.GENERAL_ACCESS, price_per_session=350)
    )
    await service.upsert_coach(
        Coach(
            id="karate1",
            name="Karate",
            category=CoachCategory.SELF_SCHEDULED,
            price_per_session=250,
        )
    )
    await service.set_availability("karate1", [date(2030, 6, 12), date(2030, 6, 20)])
    cache.catch_up(feed)
    return service


def make_composer(coach_id: str, cache: SnapshotCache, store) -> BookingComposer:
    return BookingComposer(coach_id, cache=cache, store=store, today=lambda: TODAY)


class TestNavigation:
    """Tests for month navigation and day selection."""

    @pytest.mark.asyncio
    async def test_starts_on_current_month(self, store, cache) -> None:
        """Test that the composer opens on today's month with nothing selected."""
        composer = make_composer("gym1", cache, store)
        assert (composer.month, composer.year) == (6, 2030)
        assert composer.selected_day is None
        assert composer.selected_slot is None
        assert composer.payment_method == PaymentMethod.CASH
        assert composer.days_in_month() == 30

    @pytest.mark.asyncio
    async def test_shift_month_crosses_year(self, store, cache) -> None:
        """Test moving across a year boundary in both directions."""
        composer = make_composer("gym1", cache, store)
        composer.view_month(12, 2030)
        composer.shift_month(1)
        assert (composer.month, composer.year) == (1, 2031)
        composer.shift_month(-1)
        assert (composer.month, composer.year) == (12, 2030)
        composer.shift_month(-12)
        assert (composer.month, composer.year) == (12, 2029)

    @pytest.mark.asyncio
    async def test_view_month_clears_selection(self, store, cache) -> None:
        """Test that changing month drops the selected day and slot."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        composer.select_slot(MORNING)
        composer.view_month(7, 2030)
        assert composer.selected_day is None
        assert composer.selected_slot is None

    @pytest.mark.asyncio
    async def test_invalid_month_rejected(self, store, cache) -> None:
        """Test that an out-of-range month raises instead of clamping."""
        composer = make_composer("gym1", cache, store)
        with pytest.raises(InvalidMonthError):
            composer.view_month(13, 2030)
        assert (composer.month, composer.year) == (6, 2030)

    @pytest.mark.asyncio
    async def test_select_day_clears_slot(self, store, cache) -> None:
        """Test that choosing a day again clears the slot, even the same day."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        composer.select_slot(MORNING)
        composer.select_day(15)
        assert composer.selected_day == date(2030, 6, 15)
        assert composer.selected_slot is None

    @pytest.mark.asyncio
    async def test_past_day_rejected(self, store, cache) -> None:
        """Test that a day before today cannot be selected."""
        composer = make_composer("gym1", cache, store)
        with pytest.raises(DayInPastError):
            composer.select_day(9)
        assert composer.selected_day is None

    @pytest.mark.asyncio
    async def test_day_outside_month_rejected(self, store, cache) -> None:
        """Test that June has no day 31."""
        composer = make_composer("gym1", cache, store)
        with pytest.raises(InvalidDayError):
            composer.select_day(31)

    @pytest.mark.asyncio
    async def test_self_scheduled_open_days(self, store, cache) -> None:
        """Test that a self-scheduled coach is open only on published dates."""
        composer = make_composer("karate1", cache, store)
        assert composer.open_days() == [date(2030, 6, 12), date(2030, 6, 20)]
        with pytest.raises(DayNotOpenError):
            composer.select_day(13)
        assert composer.select_day(12) == date(2030, 6, 12)

    @pytest.mark.asyncio
    async def test_unknown_coach(self, store, cache) -> None:
        """Test that a coach missing from the snapshot is reported."""
        composer = make_composer("nobody", cache, store)
        with pytest.raises(UnknownCoachError):
            composer.open_days()


class TestSlotSelection:
    """Tests for slot selection."""

    @pytest.mark.asyncio
    async def test_slot_requires_day(self, store, cache) -> None:
        """Test that a slot cannot be chosen before a day."""
        composer = make_composer("gym1", cache, store)
        with pytest.raises(NoDaySelectedError):
            composer.select_slot(MORNING)

    @pytest.mark.asyncio
    async def test_unknown_slot(self, store, cache) -> None:
        """Test that labels outside the catalog are rejected."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        with pytest.raises(UnknownSlotError):
            composer.select_slot("10:00 PM - 11:00 PM")

    @pytest.mark.asyncio
    async def test_single_session_replaced(self, store, cache) -> None:
        """Test that selecting another slot replaces the first."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        composer.select_slot(MORNING)
        session = composer.select_slot(LATE)
        assert composer.selected_slot == LATE
        assert len(composer.sessions) == 1
        assert session.duration_minutes == 60

    @pytest.mark.asyncio
    async def test_slot_board_marks_taken(self, store, cache, feed) -> None:
        """Test that committed bookings show as taken once the snapshot updates."""
        first = make_composer("gym1", cache, store)
        first.select_day(15)
        first.select_slot(MORNING)
        await first.submit("client1")
        cache.catch_up(feed)

        second = make_composer("gym1", cache, store)
        second.select_day(15)
        board = dict((slot.label, taken) for slot, taken in second.slot_board())
        assert board[MORNING] is True
        assert sum(board.values()) == 1
        with pytest.raises(SlotTakenError):
            second.select_slot(MORNING)


class TestQuote:
    """Tests for quoting."""

    @pytest.mark.asyncio
    async def test_quote_general_access(self, store, cache) -> None:
        """Test a one-session general-access quote."""
        composer = make_composer("gym1", cache, store)
        assert composer.quote().total_price == 0
        composer.select_day(15)
        composer.select_slot(MORNING)
        quote = composer.quote()
        assert quote.session_count == 1
        assert quote.price_per_session == 350
        assert quote.total_price == 350

    @pytest.mark.asyncio
    async def test_quote_self_scheduled(self, store, cache) -> None:
        """Test a one-session self-scheduled quote paid online."""
        composer = make_composer("karate1", cache, store)
        composer.select_day(20)
        composer.select_slot(MORNING)
        composer.select_payment_method(PaymentMethod.ONLINE)
        quote = composer.quote()
        assert quote.total_price == 250
        assert quote.payment_method == PaymentMethod.ONLINE


class TestSubmit:
    """Tests for submission."""

    @pytest.mark.asyncio
    async def test_cash_booking_pending_confirmation(self, store, cache) -> None:
        """Test a cash booking is stored pending the coach's confirmation."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        composer.select_slot(MORNING)
        confirmation = await composer.submit("client1")

        assert confirmation.status == BookingStatus.PENDING_CONFIRMATION
        assert confirmation.total_price == 350
        assert "coach will contact you" in confirmation.message

        stored = await store.get_booking(confirmation.booking_id)
        assert stored is not None
        assert stored.client_id == "client1"
        assert stored.sessions[0].date == date(2030, 6, 15)
        assert stored.sessions[0].slot_label == MORNING

        assert composer.selected_day is None
        assert composer.selected_slot is None

    @pytest.mark.asyncio
    async def test_online_booking_pending_payment(self, store, cache) -> None:
        """Test an online booking is stored pending payment."""
        composer = make_composer("karate1", cache, store)
        composer.select_day(12)
        composer.select_slot(LATE)
        composer.select_payment_method(PaymentMethod.ONLINE)
        confirmation = await composer.submit("client1")

        assert confirmation.status == BookingStatus.PENDING_PAYMENT
        assert confirmation.total_price == 250
        assert "complete your payment" in confirmation.message

    @pytest.mark.asyncio
    async def test_submit_requires_client(self, store, cache) -> None:
        """Test that an anonymous submit is rejected and nothing is written."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        composer.select_slot(MORNING)
        with pytest.raises(MissingClientError):
            await composer.submit("")
        assert composer.selected_slot == MORNING
        assert await store.get_bookings(coach_id="gym1") == []

    @pytest.mark.asyncio
    async def test_submit_requires_session(self, store, cache) -> None:
        """Test that submitting with only a day selected is rejected."""
        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        with pytest.raises(NoSessionSelectedError):
            await composer.submit("client1")

    @pytest.mark.asyncio
    async def test_stale_snapshot_conflict(self, store, cache) -> None:
        """Test that a slot taken after selection is caught by the store."""
        first = make_composer("gym1", cache, store)
        second = make_composer("gym1", cache, store)
        for composer in (first, second):
            composer.select_day(15)
            composer.select_slot(MORNING)

        await first.submit("client1")

        # the shared cache has not seen the first booking yet
        with pytest.raises(SlotConflictError):
            await second.submit("client2")

        assert second.selected_slot is None
        assert second.selected_day == date(2030, 6, 15)
        assert len(await store.get_bookings(coach_id="gym1")) == 1

    @pytest.mark.asyncio
    async def test_conflict_detected_from_fresh_snapshot(self, store, cache, feed) -> None:
        """Test that submit re-checks the slot against the latest snapshot."""
        first = make_composer("gym1", cache, store)
        second = make_composer("gym1", cache, store)
        for composer in (first, second):
            composer.select_day(15)
            composer.select_slot(MORNING)

        await first.submit("client1")
        cache.catch_up(feed)

        with pytest.raises(SlotConflictError):
            await second.submit("client2")
        assert second.selected_slot is None

    @pytest.mark.asyncio
    async def test_concurrent_submits_one_wins(self, store, cache) -> None:
        """Test that two clients racing for one slot yield one booking."""
        composers = [make_composer("gym1", cache, store) for _ in range(2)]
        for composer in composers:
            composer.select_day(15)
            composer.select_slot(MORNING)

        results = await asyncio.gather(
            composers[0].submit("client1"),
            composers[1].submit("client2"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, SlotConflictError) for r in results) == 1
        assert len(await store.get_bookings(coach_id="gym1")) == 1

    @pytest.mark.asyncio
    async def test_day_closed_since_selection(self, store, cache, feed) -> None:
        """Test that a day withdrawn by the coach is rejected at submit."""
        composer = make_composer("karate1", cache, store)
        composer.select_day(12)
        composer.select_slot(MORNING)

        await store.set_availability("karate1", [date(2030, 6, 20)])
        cache.catch_up(feed)

        with pytest.raises(DayNotOpenError):
            await composer.submit("client1")

    @pytest.mark.asyncio
    async def test_retry_after_store_failure_reuses_booking_id(self, store, cache) -> None:
        """Test that a retried submit after a timeout cannot create two bookings."""
        attempts: list[Booking] = []

        class FlakyStore:
            async def create_booking(self, booking: Booking) -> Booking:
                attempts.append(booking)
                if len(attempts) == 1:
                    raise StoreUnavailableError("save your booking")
                return booking

        composer = BookingComposer("gym1", cache=cache, store=FlakyStore(), today=lambda: TODAY)  # type: ignore[arg-type]
        composer.select_day(15)
        composer.select_slot(MORNING)

        with pytest.raises(StoreUnavailableError):
            await composer.submit("client1")
        assert composer.selected_slot == MORNING

        confirmation = await composer.submit("client1")
        assert attempts[0].id == attempts[1].id == confirmation.booking_id

    @pytest.mark.asyncio
    async def test_retry_after_commit_that_timed_out(self, store, cache, feed) -> None:
        """Test that a retry finds its own landed booking instead of a conflict."""
        calls: list[str] = []

        class TimesOutAfterCommit:
            async def create_booking(self, booking: Booking) -> Booking:
                calls.append(booking.id)
                stored = await store.create_booking(booking)
                if len(calls) == 1:
                    raise StoreUnavailableError("save your booking", committed=None)
                return stored

        composer = make_composer("gym1", cache, TimesOutAfterCommit())
        composer.select_day(15)
        composer.select_slot(MORNING)

        with pytest.raises(StoreUnavailableError):
            await composer.submit("client1")

        # the snapshot now shows the slot held by the booking that landed
        cache.catch_up(feed)
        confirmation = await composer.submit("client1")

        assert calls[0] == calls[1] == confirmation.booking_id
        bookings = await store.get_bookings(coach_id="gym1")
        assert [b.id for b in bookings] == [confirmation.booking_id]

    @pytest.mark.asyncio
    async def test_generated_id_collision_draws_new_id(self, store, cache) -> None:
        """Test that a clash on a generated id is retried under a fresh id."""
        attempts: list[str] = []

        class CollidesOnce:
            async def create_booking(self, booking: Booking) -> Booking:
                attempts.append(booking.id)
                if len(attempts) == 1:
                    raise BookingIdInUseError(booking.id)
                return await store.create_booking(booking)

        composer = make_composer("gym1", cache, CollidesOnce())
        composer.select_day(15)
        composer.select_slot(MORNING)
        confirmation = await composer.submit("client1")

        assert len(attempts) == 2
        assert attempts[0] != attempts[1]
        assert confirmation.booking_id == attempts[1]
        assert await store.get_booking(attempts[1]) is not None

    @pytest.mark.asyncio
    async def test_supplied_id_collision_is_reported(self, store, cache, feed) -> None:
        """Test that a caller-chosen id already used by another client is not replaced."""
        other = make_composer("gym1", cache, store)
        other.select_day(15)
        other.select_slot(LATE)
        await other.submit("client2", booking_id="shared01")
        cache.catch_up(feed)

        composer = make_composer("gym1", cache, store)
        composer.select_day(15)
        composer.select_slot(MORNING)
        with pytest.raises(BookingIdInUseError):
            await composer.submit("client1", booking_id="shared01")

        stored = await store.get_booking("shared01")
        assert stored is not None
        assert stored.client_id == "client2"
        assert len(await store.get_bookings(coach_id="gym1")) == 1

"""
Database service for persistent storage of coaches, availability and bookings.

This module provides async operations over the SQLAlchemy records, handling
conversion between Pydantic schemas and SQLAlchemy models. Every operation is
bounded by ``settings.store_timeout_seconds``; timeouts and connectivity
failures surface as ``StoreUnavailableError``.

Writes made through this service are serialized within the process and each
committed write publishes a fresh snapshot to the snapshot feed, so
subscribers observe changes in write order.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Iterable
from datetime import date, datetime
from typing import TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from coachbook.config import settings
from coachbook.errors import BookingIdInUseError, SlotConflictError, StoreUnavailableError
from coachbook.models.database import (
    AsyncSessionLocal,
    AvailabilityRecord,
    BookingRecord,
    CoachRecord,
    SlotClaimRecord,
)
from coachbook.models.schemas import (
    AvailabilityCalendar,
    Booking,
    BookingStatus,
    Coach,
    Session,
    StoreSnapshot,
)
from coachbook.services.conflicts import ACTIVE_STATUSES
from coachbook.services.feed import SnapshotFeed, snapshot_feed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DatabaseService:
    """
    Provides store operations for the booking engine.

    Slot uniqueness among active bookings is enforced by the store itself
    through the ``slot_claims`` unique constraint, so two writers racing for
    the same (coach, date, slot) cannot both commit.
    """

    def __init__(self, feed: SnapshotFeed | None = None) -> None:
        self._feed = feed if feed is not None else snapshot_feed
        self._write_lock = asyncio.Lock()

    # Conversion helpers

    def _coach_to_record(self, coach: Coach) -> CoachRecord:
        """Convert a Coach Pydantic model to a CoachRecord SQLAlchemy model."""
        return CoachRecord(
            coach_id=coach.id,
            name=coach.name,
            category=coach.category,
            price_per_session=coach.price_per_session,
            session_duration_minutes=coach.session_duration_minutes,
            active=coach.active,
        )

    def _record_to_coach(self, record: CoachRecord) -> Coach:
        """Convert a CoachRecord SQLAlchemy model to a Coach Pydantic model."""
        return Coach(
            id=record.coach_id,  # type: ignore[arg-type]
            name=record.name,  # type: ignore[arg-type]
            category=record.category,  # type: ignore[arg-type]
            price_per_session=record.price_per_session,  # type: ignore[arg-type]
            session_duration_minutes=record.session_duration_minutes,  # type: ignore[arg-type]
            active=record.active,  # type: ignore[arg-type]
        )

    def _sessions_to_json(self, sessions: Iterable[Session]) -> str:
        return json.dumps([s.model_dump(mode="json") for s in sessions])

    def _json_to_sessions(self, raw: str) -> list[Session]:
        return [Session.model_validate(item) for item in json.loads(raw)]

    def _booking_to_record(self, booking: Booking) -> BookingRecord:
        """Convert a Booking Pydantic model to a BookingRecord SQLAlchemy model."""
        return BookingRecord(
            booking_id=booking.id,
            coach_id=booking.coach_id,
            client_id=booking.client_id,
            sessions_json=self._sessions_to_json(booking.sessions),
            total_price=booking.total_price,
            payment_method=booking.payment_method,
            status=booking.status,
            approved_by=booking.approved_by,
            started_at=booking.started_at,
            completed_at=booking.completed_at,
            cancelled_by=booking.cancelled_by,
            cancelled_at=booking.cancelled_at,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )

    def _record_to_booking(self, record: BookingRecord) -> Booking:
        """Convert a BookingRecord SQLAlchemy model to a Booking Pydantic model."""
        return Booking(
            id=record.booking_id,  # type: ignore[arg-type]
            coach_id=record.coach_id,  # type: ignore[arg-type]
            client_id=record.client_id,  # type: ignore[arg-type]
            sessions=self._json_to_sessions(record.sessions_json),  # type: ignore[arg-type]
            total_price=record.total_price,  # type: ignore[arg-type]
            payment_method=record.payment_method,  # type: ignore[arg-type]
            status=record.status,  # type: ignore[arg-type]
            approved_by=record.approved_by,  # type: ignore[arg-type]
            started_at=record.started_at,  # type: ignore[arg-type]
            completed_at=record.completed_at,  # type: ignore[arg-type]
            cancelled_by=record.cancelled_by,  # type: ignore[arg-type]
            cancelled_at=record.cancelled_at,  # type: ignore[arg-type]
            created_at=record.created_at,  # type: ignore[arg-type]
            updated_at=record.updated_at,  # type: ignore[arg-type]
        )

    def _claims_for(self, booking: Booking) -> list[SlotClaimRecord]:
        return [
            SlotClaimRecord(
                booking_id=booking.id,
                coach_id=booking.coach_id,
                session_date=session.date,
                slot_label=session.slot_label,
            )
            for session in booking.sessions
        ]

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a store call with the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=settings.store_timeout_seconds)
        except TimeoutError as e:
            logger.error(
                f"Store timed out after {settings.store_timeout_seconds}s while trying to {operation}"
            )
            raise StoreUnavailableError(operation) from e
        except OperationalError as e:
            logger.error(f"Store error while trying to {operation}: {e}")
            raise StoreUnavailableError(operation) from e

    # Snapshot publication

    async def load_snapshot(self) -> StoreSnapshot:
        """Read coaches, calendars and active bookings as one snapshot."""

        async def _load() -> StoreSnapshot:
            async with AsyncSessionLocal() as db:
                coach_rows = (await db.execute(select(CoachRecord))).scalars().all()
                date_rows = (await db.execute(select(AvailabilityRecord))).scalars().all()
                booking_rows = (
                    (
                        await db.execute(
                            select(BookingRecord).where(
                                BookingRecord.status.in_(list(ACTIVE_STATUSES))
                            )
                        )
                    )
                    .scalars()
                    .all()
                )

            calendars: dict[str, AvailabilityCalendar] = {}
            for row in date_rows:
                calendar = calendars.setdefault(
                    row.coach_id,  # type: ignore[arg-type]
                    AvailabilityCalendar(coach_id=row.coach_id),  # type: ignore[arg-type]
                )
                calendar.available_dates.add(row.available_date)  # type: ignore[arg-type]

            return StoreSnapshot(
                version=self._feed.next_version(),
                coaches={r.coach_id: self._record_to_coach(r) for r in coach_rows},  # type: ignore[misc]
                calendars=calendars,
                bookings=[self._record_to_booking(r) for r in booking_rows],
            )

        return await self._run("load the schedule", _load())

    async def publish_snapshot(self) -> StoreSnapshot | None:
        """
        Push the current store state to subscribers.

        A failure here never undoes a committed write; subscribers keep their
        last known-good snapshot until the next successful publication.
        """
        try:
            snapshot = await self.load_snapshot()
        except StoreUnavailableError:
            logger.error("Snapshot publication failed; subscribers keep their previous snapshot")
            return None
        self._feed.publish(snapshot)
        return snapshot

    # Coaches and availability

    async def upsert_coach(self, coach: Coach) -> Coach:
        """Create or replace a coach profile."""

        async def _upsert() -> Coach:
            async with AsyncSessionLocal() as db:
                result = await db.execute(
                    select(CoachRecord).where(CoachRecord.coach_id == coach.id)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = self._coach_to_record(coach)
                    db.add(record)
                else:
                    record.name = coach.name  # type: ignore[assignment]
                    record.category = coach.category  # type: ignore[assignment]
                    record.price_per_session = coach.price_per_session  # type: ignore[assignment]
                    record.session_duration_minutes = coach.session_duration_minutes  # type: ignore[assignment]
                    record.active = coach.active  # type: ignore[assignment]
                await db.commit()
                await db.refresh(record)
                return self._record_to_coach(record)

        async with self._write_lock:
            saved = await self._run("save the coach", _upsert())
            await self.publish_snapshot()
        return saved

    async def get_coach(self, coach_id: str) -> Coach | None:
        async def _get() -> Coach | None:
            async with AsyncSessionLocal() as db:
                result = await db.execute(
                    select(CoachRecord).where(CoachRecord.coach_id == coach_id)
                )
                record = result.scalar_one_or_none()
                if record:
                    return self._record_to_coach(record)
                return None

        return await self._run("load the coach", _get())

    async def list_coaches(self, active_only: bool = True) -> list[Coach]:
        async def _list() -> list[Coach]:
            async with AsyncSessionLocal() as db:
                query = select(CoachRecord).order_by(CoachRecord.name, CoachRecord.coach_id)
                if active_only:
                    query = query.where(CoachRecord.active.is_(True))
                records = (await db.execute(query)).scalars().all()
                return [self._record_to_coach(r) for r in records]

        return await self._run("list coaches", _list())

    async def set_availability(self, coach_id: str, dates: Iterable[date]) -> AvailabilityCalendar:
        """Replace the published calendar of a coach."""
        unique_dates = sorted(set(dates))

        async def _replace() -> None:
            async with AsyncSessionLocal() as db:
                await db.execute(
                    delete(AvailabilityRecord).where(AvailabilityRecord.coach_id == coach_id)
                )
                for day in unique_dates:
                    db.add(AvailabilityRecord(coach_id=coach_id, available_date=day))
                await db.commit()

        async with self._write_lock:
            await self._run("save the availability calendar", _replace())
            await self.publish_snapshot()
        return AvailabilityCalendar(coach_id=coach_id, available_dates=set(unique_dates))

    async def get_availability(self, coach_id: str) -> AvailabilityCalendar:
        async def _get() -> AvailabilityCalendar:
            async with AsyncSessionLocal() as db:
                result = await db.execute(
                    select(AvailabilityRecord.available_date).where(
                        AvailabilityRecord.coach_id == coach_id
                    )
                )
                return AvailabilityCalendar(
                    coach_id=coach_id, available_dates=set(result.scalars().all())
                )

        return await self._run("load the availability calendar", _get())

    # Bookings

    async def create_booking(self, booking: Booking) -> Booking:
        """
        Insert a booking together with its slot claims in one transaction.

        The call is idempotent per booking id: retrying a submit whose first
        attempt did commit returns the stored booking instead of failing.

        A timeout does not cancel a commit that is already in flight, so after
        one the booking id is looked up again before reporting failure.

        Raises:
            SlotConflictError: Another active booking already holds one of the
                booking's (coach, date, slot) claims. Nothing is written.
            BookingIdInUseError: The id belongs to another client's booking.
                Nothing is written.
            StoreUnavailableError: The store timed out or is unreachable.
                ``committed`` is False if the booking is known to be absent
                and None if that could not be checked.
        """

        async def _insert() -> None:
            async with AsyncSessionLocal() as db:
                db.add(self._booking_to_record(booking))
                if booking.status in ACTIVE_STATUSES:
                    db.add_all(self._claims_for(booking))
                await db.commit()

        async with self._write_lock:
            try:
                await self._run("save your booking", _insert())
            except StoreUnavailableError:
                stored = await self._recheck_after_failure(booking)
                if stored is None:
                    raise
                logger.info(f"Booking {booking.id} landed despite the store error; returning it")
                await self.publish_snapshot()
                return stored
            except IntegrityError:
                existing = await self.get_booking(booking.id)
                if existing is not None and existing.client_id == booking.client_id:
                    logger.info(f"Booking {booking.id} was already committed; returning it")
                    return existing
                conflict = await self._find_conflicting_session(booking)
                if conflict is not None:
                    logger.warning(
                        f"Slot conflict for coach {booking.coach_id}: "
                        f"{conflict.date.isoformat()} {conflict.slot_label}"
                    )
                    raise SlotConflictError(booking.coach_id, conflict.date, conflict.slot_label)
                if existing is not None:
                    logger.warning(f"Booking id {booking.id} collides with another client's booking")
                    raise BookingIdInUseError(booking.id)
                # the claim that blocked the insert was released before it could be read
                raise StoreUnavailableError("save your booking", committed=False)

            logger.info(
                f"Booking {booking.id} committed for client {booking.client_id} "
                f"with coach {booking.coach_id} ({booking.status.value})"
            )
            await self.publish_snapshot()
        return booking

    async def _recheck_after_failure(self, booking: Booking) -> Booking | None:
        """
        Find out whether a failed insert landed anyway.

        Returns the stored booking if it did and None if it did not. Raises
        StoreUnavailableError with ``committed=None`` if the store cannot be
        read either.
        """
        try:
            stored = await self.get_booking(booking.id)
        except StoreUnavailableError as e:
            logger.error(f"Could not tell whether booking {booking.id} was saved")
            raise StoreUnavailableError("save your booking", committed=None) from e
        if stored is not None and stored.client_id == booking.client_id:
            return stored
        return None

    async def _find_conflicting_session(self, booking: Booking) -> Session | None:
        """Return the first session whose slot is claimed by another booking, if any."""

        async def _find() -> Session | None:
            async with AsyncSessionLocal() as db:
                for session in booking.sessions:
                    result = await db.execute(
                        select(SlotClaimRecord.id).where(
                            SlotClaimRecord.coach_id == booking.coach_id,
                            SlotClaimRecord.session_date == session.date,
                            SlotClaimRecord.slot_label == session.slot_label,
                            SlotClaimRecord.booking_id != booking.id,
                        )
                    )
                    if result.first() is not None:
                        return session
            return None

        return await self._run("check the conflicting slot", _find())

    async def get_booking(self, booking_id: str) -> Booking | None:
        """Get a booking by its ID."""

        async def _get() -> Booking | None:
            async with AsyncSessionLocal() as db:
                result = await db.execute(
                    select(BookingRecord).where(BookingRecord.booking_id == booking_id)
                )
                record = result.scalar_one_or_none()
                if record:
                    return self._record_to_booking(record)
                return None

        return await self._run("load the booking", _get())

    async def get_bookings(
        self,
        client_id: str | None = None,
        coach_id: str | None = None,
        statuses: Iterable[BookingStatus] | None = None,
    ) -> list[Booking]:
        """Get bookings newest first, optionally filtered by client, coach and status."""

        async def _list() -> list[Booking]:
            async with AsyncSessionLocal() as db:
                query = select(BookingRecord)
                if client_id:
                    query = query.where(BookingRecord.client_id == client_id)
                if coach_id:
                    query = query.where(BookingRecord.coach_id == coach_id)
                if statuses is not None:
                    query = query.where(BookingRecord.status.in_(list(statuses)))
                query = query.order_by(BookingRecord.created_at.desc(), BookingRecord.id.desc())
                records = (await db.execute(query)).scalars().all()
                return [self._record_to_booking(r) for r in records]

        return await self._run("list bookings", _list())

    async def update_status(self, updated: Booking, expected: BookingStatus) -> bool:
        """
        Compare-and-set a booking's lifecycle fields.

        The write only applies if the stored status still equals ``expected``.
        Moving into a terminal status releases the booking's slot claims in
        the same transaction.

        Returns:
            True if the update was applied, False if the stored status changed
            in the meantime.
        """

        async def _update() -> bool:
            async with AsyncSessionLocal() as db:
                result = await db.execute(
                    update(BookingRecord)
                    .where(
                        BookingRecord.booking_id == updated.id,
                        BookingRecord.status == expected,
                    )
                    .values(
                        status=updated.status,
                        approved_by=updated.approved_by,
                        started_at=updated.started_at,
                        completed_at=updated.completed_at,
                        cancelled_by=updated.cancelled_by,
                        cancelled_at=updated.cancelled_at,
                        updated_at=updated.updated_at,
                    )
                )
                if result.rowcount != 1:
                    await db.rollback()
                    return False
                if updated.status not in ACTIVE_STATUSES:
                    await db.execute(
                        delete(SlotClaimRecord).where(SlotClaimRecord.booking_id == updated.id)
                    )
                await db.commit()
                return True

        async with self._write_lock:
            applied = await self._run("update the booking", _update())
            if applied:
                await self.publish_snapshot()
        return applied

    async def get_stale_pending_payments(self, created_before: datetime) -> list[Booking]:
        """Get pending-payment bookings created before the cutoff (naive UTC)."""
        async def _list() -> list[Booking]:
            async with AsyncSessionLocal() as db:
                query = select(BookingRecord).where(
                    BookingRecord.status == BookingStatus.PENDING_PAYMENT,
                    BookingRecord.created_at < created_before,
                )
                records = (await db.execute(query)).scalars().all()
                return [self._record_to_booking(r) for r in records]

        return await self._run("list pending payments", _list())


database_service = DatabaseService()

"""
SQLAlchemy database models for persistent storage.

This module defines the store schema for coaches, coach availability,
bookings and slot claims. Booking records mirror the Pydantic ``Booking``
schema; sessions are stored as a JSON array.

Double-booking is prevented by ``SlotClaimRecord``: every session of an
active booking owns one claim row, and the unique constraint on
(coach_id, session_date, slot_label) makes the store reject a second claim
on the same slot. Claims are removed in the same transaction that moves a
booking to a terminal status.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from coachbook.config import settings
from coachbook.models.schemas import BookingStatus, CoachCategory, PaymentMethod


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class CoachRecord(Base):
    """
    Coach profile as read by the engine.

    Owned by the profile-management collaborator; the engine only reads it.
    """

    __tablename__ = "coaches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coach_id = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    category = Column(Enum(CoachCategory), nullable=False)
    price_per_session = Column(Integer, nullable=False)
    session_duration_minutes = Column(Integer, nullable=False, default=120)
    active = Column(Boolean, nullable=False, default=True)


class AvailabilityRecord(Base):
    """One open date published by a self-scheduled coach."""

    __tablename__ = "coach_availability"
    __table_args__ = (UniqueConstraint("coach_id", "available_date", name="uq_coach_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    coach_id = Column(String(50), nullable=False, index=True)
    available_date = Column(Date, nullable=False)


class BookingRecord(Base):
    """
    Database model for coaching session bookings.

    Columns:
        booking_id: Application-level unique identifier.
        coach_id / client_id: The assigned coach and the client who booked.
        sessions_json: JSON array of {date, slot_label, duration_minutes}.
        total_price: Whole currency units.
        payment_method: Declared payment method (no settlement happens here).
        status: Current lifecycle status (see BookingStatus enum).
        approved_by / started_at / completed_at / cancelled_by / cancelled_at:
            Stamped by the lifecycle machine on entering the matching status.
    """

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(50), unique=True, nullable=False, index=True)
    coach_id = Column(String(50), nullable=False, index=True)
    client_id = Column(String(100), nullable=False, index=True)
    sessions_json = Column(Text, nullable=False)
    total_price = Column(Integer, nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(BookingStatus), nullable=False, index=True)
    approved_by = Column(String(100), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(100), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SlotClaimRecord(Base):
    """Reservation of one (coach, date, slot) by an active booking."""

    __tablename__ = "slot_claims"
    __table_args__ = (
        UniqueConstraint("coach_id", "session_date", "slot_label", name="uq_active_slot"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(
        String(50), ForeignKey("bookings.booking_id"), nullable=False, index=True
    )
    coach_id = Column(String(50), nullable=False)
    session_date = Column(Date, nullable=False)
    slot_label = Column(String(50), nullable=False)


engine = create_async_engine(
    settings.database_url.replace("sqlite://", "sqlite+aiosqlite://")
    if settings.database_url.startswith("sqlite://")
    else settings.database_url,
    echo=False,
)

AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

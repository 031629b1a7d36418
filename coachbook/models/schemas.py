from datetime import date, datetime, time
from datetime import date as date_type
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CoachCategory(str, Enum):
    GENERAL_ACCESS = "general_access"
    SELF_SCHEDULED = "self_scheduled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    ONLINE = "online"


class BookingStatus(str, Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    CLIENT = "client"
    COACH = "coach"
    OPERATOR = "operator"
    SYSTEM = "system"


class LifecycleEvent(str, Enum):
    ACCEPT = "accept"
    CAPTURE_PAYMENT = "capture_payment"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


class Coach(BaseModel):
    id: str
    name: str = ""
    category: CoachCategory
    price_per_session: int = Field(..., ge=0, description="Whole currency units")
    session_duration_minutes: int = Field(default=120, gt=0)
    active: bool = True


class AvailabilityCalendar(BaseModel):
    coach_id: str
    available_dates: set[date] = Field(default_factory=set)


class TimeSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    start: time
    end: time

    @property
    def duration_minutes(self) -> int:
        return (self.end.hour * 60 + self.end.minute) - (self.start.hour * 60 + self.start.minute)


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date_type
    slot_label: str
    duration_minutes: int = Field(..., gt=0)


class Actor(BaseModel):
    role: ActorRole
    id: str = Field(..., min_length=1)


class Booking(BaseModel):
    id: str
    coach_id: str
    client_id: str
    sessions: list[Session] = Field(..., min_length=1)
    total_price: int = Field(..., ge=0)
    payment_method: PaymentMethod
    status: BookingStatus
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    approved_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None


class StoreSnapshot(BaseModel):
    """Full result set delivered to subscribers after every committed write."""

    version: int = 0
    coaches: dict[str, Coach] = Field(default_factory=dict)
    calendars: dict[str, AvailabilityCalendar] = Field(default_factory=dict)
    bookings: list[Booking] = Field(default_factory=list)
    taken_at: datetime = Field(default_factory=datetime.utcnow)


class Quote(BaseModel):
    coach_id: str
    session_count: int
    price_per_session: int
    total_price: int
    payment_method: PaymentMethod


class BookingConfirmation(BaseModel):
    booking_id: str
    status: BookingStatus
    total_price: int
    sessions: list[Session]
    message: str

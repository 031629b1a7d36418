from datetime import date as date_type
from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from coachbook.api.errors import to_http_exception
from coachbook.errors import BookingError
from coachbook.models.schemas import (
    Actor,
    ActorRole,
    Booking,
    BookingConfirmation,
    BookingStatus,
    LifecycleEvent,
    PaymentMethod,
    Session,
)
from coachbook.services.booking_service import booking_service
from coachbook.services.lifecycle import status_message

router = APIRouter(tags=["bookings"])


class CreateBookingRequest(BaseModel):
    client_id: str | None = None
    coach_id: str
    date: date_type
    slot_label: str
    payment_method: PaymentMethod = PaymentMethod.CASH
    booking_id: str | None = Field(default=None, min_length=1, max_length=50)


class TransitionRequest(BaseModel):
    event: LifecycleEvent
    actor_role: ActorRole
    actor_id: str


class BookingResponse(BaseModel):
    id: str
    coach_id: str
    client_id: str
    sessions: list[Session]
    total_price: int
    payment_method: PaymentMethod
    status: BookingStatus
    status_message: str
    created_at: datetime
    approved_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class NextSessionResponse(BaseModel):
    booking_id: str
    session: Session
    status: BookingStatus


def _to_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        coach_id=booking.coach_id,
        client_id=booking.client_id,
        sessions=booking.sessions,
        total_price=booking.total_price,
        payment_method=booking.payment_method,
        status=booking.status,
        status_message=status_message(booking.status),
        created_at=booking.created_at,
        approved_by=booking.approved_by,
        started_at=booking.started_at,
        completed_at=booking.completed_at,
        cancelled_at=booking.cancelled_at,
    )


@router.post("/bookings/", response_model=BookingConfirmation, status_code=201)
async def create_booking(request: CreateBookingRequest) -> BookingConfirmation:
    """
    Create a booking for one session.

    Returns the new booking id, or a structured error:
        422: The day or slot cannot be selected, or the request is incomplete.
        409: The slot was taken by a concurrent booking, or booking_id is
             already used by a different booking.
        503: The store is unavailable. ``committed`` is false when nothing
             was written and null when that is unknown. Repeating the request
             with the same booking_id never creates a second booking.
    """
    try:
        return await booking_service.create_booking(
            client_id=request.client_id,
            coach_id=request.coach_id,
            session_date=request.date,
            slot_label=request.slot_label,
            payment_method=request.payment_method,
            booking_id=request.booking_id,
        )
    except BookingError as e:
        raise to_http_exception(e) from e


@router.get("/bookings/", response_model=list[BookingResponse])
async def list_bookings(
    client_id: str | None = None,
    coach_id: str | None = None,
    include_closed: bool = False,
) -> list[BookingResponse]:
    """List a client's or a coach's bookings, newest first."""
    try:
        if client_id:
            bookings = await booking_service.get_client_bookings(client_id, include_closed)
        elif coach_id:
            bookings = await booking_service.get_coach_bookings(coach_id, include_closed)
        else:
            bookings = []
    except BookingError as e:
        raise to_http_exception(e) from e
    return [_to_response(b) for b in bookings]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str) -> BookingResponse:
    try:
        booking = await booking_service.get_booking(booking_id)
    except BookingError as e:
        raise to_http_exception(e) from e
    return _to_response(booking)


@router.post("/bookings/{booking_id}/transitions", response_model=BookingResponse)
async def transition_booking(booking_id: str, request: TransitionRequest) -> BookingResponse:
    """
    Apply a lifecycle event (accept, capture_payment, start, complete, cancel).

    The acting party is asserted by the caller, which is responsible for
    having authenticated it.
    """
    actor = Actor(role=request.actor_role, id=request.actor_id)
    try:
        booking = await booking_service.apply_event(booking_id, request.event, actor)
    except BookingError as e:
        raise to_http_exception(e) from e
    return _to_response(booking)


@router.get("/clients/{client_id}/next-session", response_model=NextSessionResponse | None)
async def get_next_session(client_id: str) -> NextSessionResponse | None:
    try:
        found = await booking_service.next_session(client_id)
    except BookingError as e:
        raise to_http_exception(e) from e
    if found is None:
        return None
    booking, session = found
    return NextSessionResponse(booking_id=booking.id, session=session, status=booking.status)

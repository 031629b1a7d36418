from datetime import date, time
from datetime import date as date_type

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from coachbook.api.errors import to_http_exception
from coachbook.errors import BookingError
from coachbook.models.schemas import Coach, CoachCategory
from coachbook.services.booking_service import booking_service

router = APIRouter(prefix="/coaches", tags=["coaches"])


class CoachRequest(BaseModel):
    name: str = ""
    category: CoachCategory
    session_duration_minutes: int = Field(default=120, gt=0)
    active: bool = True


class AvailabilityRequest(BaseModel):
    available_dates: list[date]


class AvailabilityResponse(BaseModel):
    coach_id: str
    available_dates: list[date]


class CalendarResponse(BaseModel):
    coach_id: str
    year: int
    month: int
    days_in_month: int
    open_days: list[date]


class SlotResponse(BaseModel):
    label: str
    start: time
    end: time
    duration_minutes: int
    taken: bool


class SlotBoardResponse(BaseModel):
    coach_id: str
    date: date_type
    slots: list[SlotResponse]


@router.get("/", response_model=list[Coach])
async def list_coaches() -> list[Coach]:
    try:
        return await booking_service.list_coaches()
    except BookingError as e:
        raise to_http_exception(e) from e


@router.get("/{coach_id}", response_model=Coach)
async def get_coach(coach_id: str) -> Coach:
    try:
        return await booking_service.get_coach(coach_id)
    except BookingError as e:
        raise to_http_exception(e) from e


@router.put("/{coach_id}", response_model=Coach)
async def put_coach(coach_id: str, request: CoachRequest) -> Coach:
    """
    Create or replace a coach profile.

    Profiles are owned by the profile-management system; this endpoint is how
    it pushes them into the booking store. The session price is derived from
    the category.
    """
    try:
        return await booking_service.register_coach(
            coach_id,
            category=request.category,
            name=request.name,
            session_duration_minutes=request.session_duration_minutes,
            active=request.active,
        )
    except BookingError as e:
        raise to_http_exception(e) from e


@router.put("/{coach_id}/availability", response_model=AvailabilityResponse)
async def put_availability(coach_id: str, request: AvailabilityRequest) -> AvailabilityResponse:
    try:
        calendar = await booking_service.set_availability(coach_id, request.available_dates)
    except BookingError as e:
        raise to_http_exception(e) from e
    return AvailabilityResponse(
        coach_id=calendar.coach_id, available_dates=sorted(calendar.available_dates)
    )


@router.get("/{coach_id}/calendar", response_model=CalendarResponse)
async def get_calendar(
    coach_id: str,
    year: int = Query(...),
    month: int = Query(...),
) -> CalendarResponse:
    try:
        total, days = booking_service.open_days(coach_id, month, year)
    except BookingError as e:
        raise to_http_exception(e) from e
    return CalendarResponse(
        coach_id=coach_id, year=year, month=month, days_in_month=total, open_days=days
    )


@router.get("/{coach_id}/slots", response_model=SlotBoardResponse)
async def get_slots(coach_id: str, day: date = Query(..., alias="date")) -> SlotBoardResponse:
    """List every catalog slot on a day, flagging the ones already taken."""
    try:
        board = booking_service.slot_board(coach_id, day)
    except BookingError as e:
        raise to_http_exception(e) from e
    return SlotBoardResponse(
        coach_id=coach_id,
        date=day,
        slots=[
            SlotResponse(
                label=slot.label,
                start=slot.start,
                end=slot.end,
                duration_minutes=slot.duration_minutes,
                taken=taken,
            )
            for slot, taken in board
        ],
    )

"""
Availability resolution for coaches.

General-access coaches can be booked on any day that is not in the past.
Self-scheduled coaches publish an explicit allowlist of dates; any date not
in their calendar is closed. Inactive coaches are never open.
"""

import calendar
from datetime import date, datetime

import pytz

from coachbook.config import settings
from coachbook.errors import InvalidMonthError
from coachbook.models.schemas import AvailabilityCalendar, Coach, CoachCategory


def today_local() -> date:
    """Return today's date in the configured business timezone."""
    tz = pytz.timezone(settings.timezone)
    return datetime.now(tz).date()


def validate_month(month: int, year: int) -> None:
    """Reject malformed month/year input instead of clamping it."""
    if isinstance(month, bool) or isinstance(year, bool):
        raise InvalidMonthError(month, year)
    if not isinstance(month, int) or not isinstance(year, int):
        raise InvalidMonthError(month, year)
    if not 1 <= month <= 12 or not 1 <= year <= 9999:
        raise InvalidMonthError(month, year)


def days_in_month(month: int, year: int) -> int:
    validate_month(month, year)
    return calendar.monthrange(year, month)[1]


def is_past(day: date, today: date) -> bool:
    return day < today


def is_day_open(
    coach: Coach,
    day: date,
    availability: AvailabilityCalendar | None,
    today: date,
) -> bool:
    """
    Decide whether a calendar day is selectable for a coach.

    Args:
        coach: The coach being booked.
        day: The candidate day.
        availability: The coach's published calendar. Only consulted for
            self-scheduled coaches; None means nothing has been published.
        today: The current date in the business timezone.

    Returns:
        True if the day can be selected.
    """
    if not coach.active or is_past(day, today):
        return False

    if coach.category == CoachCategory.SELF_SCHEDULED:
        return availability is not None and day in availability.available_dates

    return True


def open_days(
    coach: Coach,
    month: int,
    year: int,
    availability: AvailabilityCalendar | None,
    today: date,
) -> list[date]:
    """List the selectable days of a month, in calendar order."""
    return [
        date(year, month, day_number)
        for day_number in range(1, days_in_month(month, year) + 1)
        if is_day_open(coach, date(year, month, day_number), availability, today)
    ]

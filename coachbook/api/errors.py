"""
Translation of booking engine errors into HTTP errors.
"""

import logging

from fastapi import HTTPException

from coachbook.errors import (
    BookingError,
    BookingIdInUseError,
    BookingNotFoundError,
    BookingValidationError,
    IllegalTransitionError,
    SelectionError,
    SlotConflictError,
    StoreUnavailableError,
    TransitionNotPermittedError,
    UnknownCoachError,
)

logger = logging.getLogger(__name__)


def status_code_for(error: BookingError) -> int:
    if isinstance(error, (BookingNotFoundError, UnknownCoachError)):
        return 404
    if isinstance(error, (SelectionError, BookingValidationError)):
        return 422
    if isinstance(error, (SlotConflictError, IllegalTransitionError, BookingIdInUseError)):
        return 409
    if isinstance(error, TransitionNotPermittedError):
        return 403
    if isinstance(error, StoreUnavailableError):
        return 503
    return 400


def to_http_exception(error: BookingError) -> HTTPException:
    status_code = status_code_for(error)
    if status_code >= 500:
        logger.error(f"{error.code}: {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())

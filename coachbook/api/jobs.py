"""
Scheduled job endpoints for Cloud Scheduler integration.

These endpoints are called on a schedule to run housekeeping over stored
bookings. They are secured with OIDC token authentication (preferred) or a
legacy API key.
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import BaseModel

from coachbook.api.errors import to_http_exception
from coachbook.config import settings
from coachbook.errors import BookingError
from coachbook.services.booking_service import booking_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


class ExpiredBookingItem(BaseModel):
    booking_id: str
    client_id: str
    coach_id: str
    created_at: datetime


class ExpiryJobResult(BaseModel):
    executed_at: datetime
    expiry_minutes: int
    expired: int
    results: list[ExpiredBookingItem]


def verify_oidc_token(authorization: str) -> bool:
    """True if the header carries a Google-signed ID token for the scheduler account."""
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token:
        return False

    try:
        claims = id_token.verify_oauth2_token(  # type: ignore[no-untyped-call]
            token, google_requests.Request()
        )
    except (google_auth_exceptions.GoogleAuthError, ValueError) as e:
        logger.warning(f"Rejected scheduler ID token: {e}")
        return False

    caller = claims.get("email", "")
    expected = settings.scheduler_service_account
    if expected and caller != expected:
        logger.warning(f"Scheduler ID token belongs to {caller}, not {expected}")
        return False
    return True


def verify_scheduler_auth(
    authorization: str | None = Header(None, description="Bearer ID token from the scheduler"),
    x_scheduler_api_key: str | None = Header(None, description="Shared scheduler API key"),
) -> None:
    """Let the job run for a valid ID token or the configured API key."""
    if authorization and verify_oidc_token(authorization):
        return
    if x_scheduler_api_key is None:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide OIDC token or X-Scheduler-API-Key header.",
        )
    if not settings.scheduler_api_key or x_scheduler_api_key != settings.scheduler_api_key:
        raise HTTPException(status_code=401, detail="Invalid scheduler API key")


@router.post("/expire-pending-payments", response_model=ExpiryJobResult)
async def expire_pending_payments(
    _: None = Depends(verify_scheduler_auth),
) -> ExpiryJobResult:
    """
    Cancel online bookings still awaiting payment after the expiry window.

    Cancelling releases the booked slot so other clients can take it.
    Running the job twice is harmless: already-cancelled bookings are no
    longer pending payment and are skipped.
    """
    now = datetime.now(UTC).replace(tzinfo=None)

    try:
        expired = await booking_service.expire_pending_payments(now)
    except BookingError as e:
        raise to_http_exception(e) from e

    return ExpiryJobResult(
        executed_at=now,
        expiry_minutes=settings.payment_expiry_minutes,
        expired=len(expired),
        results=[
            ExpiredBookingItem(
                booking_id=b.id,
                client_id=b.client_id,
                coach_id=b.coach_id,
                created_at=b.created_at,
            )
            for b in expired
        ],
    )

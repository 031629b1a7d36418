from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "service": "coachbook"}


@router.get("/")
async def root() -> dict[str, str | dict[str, str]]:
    return {
        "service": "CoachBook - Coaching Session Booking Engine",
        "version": "0.1.0",
        "endpoints": {
            "health": "/health",
            "coaches": "/coaches",
            "bookings": "/bookings",
            "jobs": "/jobs/expire-pending-payments",
        },
    }

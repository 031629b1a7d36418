"""
Booking lifecycle state machine.

Statuses only change through ``BookingLifecycleMachine.apply``. Each
transition is a named event allowed from one status, for a fixed set of
actor roles. Clients and coaches may only act on their own bookings;
operators and the system may act on any booking.

    pending_confirmation --accept--------> confirmed
    pending_payment -----capture_payment-> confirmed
    confirmed -----------start-----------> in_progress
    in_progress ---------complete--------> completed
    (any active) --------cancel----------> cancelled

completed and cancelled are terminal.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from coachbook.errors import IllegalTransitionError, TransitionNotPermittedError
from coachbook.models.schemas import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    LifecycleEvent,
    PaymentMethod,
    Session,
)
from coachbook.services.slot_catalog import slot_catalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    source: BookingStatus
    event: LifecycleEvent
    target: BookingStatus
    roles: frozenset[ActorRole]


_C = ActorRole.CLIENT
_K = ActorRole.COACH
_O = ActorRole.OPERATOR
_S = ActorRole.SYSTEM

TRANSITIONS: dict[tuple[BookingStatus, LifecycleEvent], Transition] = {
    (t.source, t.event): t
    for t in (
        Transition(
            BookingStatus.PENDING_CONFIRMATION,
            LifecycleEvent.ACCEPT,
            BookingStatus.CONFIRMED,
            frozenset({_K, _O}),
        ),
        Transition(
            BookingStatus.PENDING_CONFIRMATION,
            LifecycleEvent.CANCEL,
            BookingStatus.CANCELLED,
            frozenset({_K, _C, _O}),
        ),
        Transition(
            BookingStatus.PENDING_PAYMENT,
            LifecycleEvent.CAPTURE_PAYMENT,
            BookingStatus.CONFIRMED,
            frozenset({_O, _S}),
        ),
        Transition(
            BookingStatus.PENDING_PAYMENT,
            LifecycleEvent.CANCEL,
            BookingStatus.CANCELLED,
            frozenset({_C, _O, _S}),
        ),
        Transition(
            BookingStatus.CONFIRMED,
            LifecycleEvent.START,
            BookingStatus.IN_PROGRESS,
            frozenset({_K, _O}),
        ),
        Transition(
            BookingStatus.CONFIRMED,
            LifecycleEvent.CANCEL,
            BookingStatus.CANCELLED,
            frozenset({_K, _C, _O}),
        ),
        Transition(
            BookingStatus.IN_PROGRESS,
            LifecycleEvent.COMPLETE,
            BookingStatus.COMPLETED,
            frozenset({_K, _O}),
        ),
        Transition(
            BookingStatus.IN_PROGRESS,
            LifecycleEvent.CANCEL,
            BookingStatus.CANCELLED,
            frozenset({_K, _O}),
        ),
    )
}

TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED}
)

STATUS_MESSAGES: dict[BookingStatus, str] = {
    BookingStatus.PENDING_CONFIRMATION: "Waiting for coach to confirm your booking",
    BookingStatus.PENDING_PAYMENT: "Please complete your payment to confirm booking",
    BookingStatus.CONFIRMED: "Your booking is confirmed! Get ready for your session",
    BookingStatus.IN_PROGRESS: "Session in progress - Head to the gym now!",
    BookingStatus.COMPLETED: "Session completed successfully",
    BookingStatus.CANCELLED: "Booking has been cancelled",
}


def initial_status(payment_method: PaymentMethod) -> BookingStatus:
    """Cash bookings wait for the coach; online bookings wait for payment."""
    if payment_method == PaymentMethod.ONLINE:
        return BookingStatus.PENDING_PAYMENT
    return BookingStatus.PENDING_CONFIRMATION


def status_message(status: BookingStatus) -> str:
    return STATUS_MESSAGES.get(status, "Processing your booking")


def successors(status: BookingStatus) -> set[BookingStatus]:
    return {t.target for (source, _), t in TRANSITIONS.items() if source == status}


def is_valid_walk(statuses: list[BookingStatus]) -> bool:
    """True if the statuses form a path through the graph from an initial status."""
    if not statuses:
        return True
    if statuses[0] not in (BookingStatus.PENDING_CONFIRMATION, BookingStatus.PENDING_PAYMENT):
        return False
    return all(nxt in successors(cur) for cur, nxt in zip(statuses, statuses[1:]))


class BookingLifecycleMachine:
    def transition_for(self, booking: Booking, event: LifecycleEvent) -> Transition:
        transition = TRANSITIONS.get((booking.status, event))
        if transition is None:
            raise IllegalTransitionError(booking.id, booking.status.value, event.value)
        return transition

    def authorize(self, booking: Booking, transition: Transition, actor: Actor) -> None:
        if actor.role not in transition.roles:
            raise TransitionNotPermittedError(booking.id, actor.role.value, transition.event.value)
        if actor.role == ActorRole.CLIENT and actor.id != booking.client_id:
            raise TransitionNotPermittedError(booking.id, actor.role.value, transition.event.value)
        if actor.role == ActorRole.COACH and actor.id != booking.coach_id:
            raise TransitionNotPermittedError(booking.id, actor.role.value, transition.event.value)

    def apply(
        self,
        booking: Booking,
        event: LifecycleEvent,
        actor: Actor,
        now: datetime | None = None,
    ) -> Booking:
        """
        Compute the booking that results from an event.

        The input booking is not modified. Only the status, updated_at and the
        timestamp/approval field belonging to the target status change.

        Raises:
            IllegalTransitionError: The event is not allowed from the current status.
            TransitionNotPermittedError: The actor may not trigger this event.
        """
        transition = self.transition_for(booking, event)
        self.authorize(booking, transition, actor)

        now = now or datetime.now(UTC).replace(tzinfo=None)
        changes: dict[str, object] = {"status": transition.target, "updated_at": now}
        if transition.target == BookingStatus.CONFIRMED:
            changes["approved_by"] = actor.id
        elif transition.target == BookingStatus.IN_PROGRESS:
            changes["started_at"] = now
        elif transition.target == BookingStatus.COMPLETED:
            changes["completed_at"] = now
        elif transition.target == BookingStatus.CANCELLED:
            changes["cancelled_by"] = actor.id
            changes["cancelled_at"] = now

        logger.info(
            f"Booking {booking.id}: {booking.status.value} -> {transition.target.value} "
            f"({event.value} by {actor.role.value} {actor.id})"
        )
        return booking.model_copy(update=changes)


def next_session(bookings: Iterable[Booking], today: date) -> tuple[Booking, Session] | None:
    """
    Find the earliest upcoming session across confirmed or in-progress bookings.

    Sessions dated before today are ignored.
    """
    upcoming: list[tuple[date, int, Booking, Session]] = []
    for booking in bookings:
        if booking.status not in (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS):
            continue
        for session in booking.sessions:
            if session.date >= today:
                upcoming.append((session.date, _slot_order(session.slot_label), booking, session))

    if not upcoming:
        return None
    upcoming.sort(key=lambda item: (item[0], item[1]))
    _, _, booking, session = upcoming[0]
    return booking, session


def _slot_order(slot_label: str) -> int:
    labels = slot_catalog.labels
    return labels.index(slot_label) if slot_label in labels else len(labels)


lifecycle_machine = BookingLifecycleMachine()

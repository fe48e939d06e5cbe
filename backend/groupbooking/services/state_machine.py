"""Settlement state machine: transition tables and conditional updates.

Every status change is a single compare-and-swap: ``UPDATE ... WHERE id = :id
AND status IN (:origins)``. If the row is no longer in one of the origins the
update is a no-op and the caller gets ``False``; that is a successful
idempotent outcome, not an error. Callers attach side effects only to a
``True`` result.

Asking for a target from an origin that the table does not allow is a
programming error and raises ``IllegalTransition`` before touching the
database.
"""
import logging
from typing import Iterable

from sqlalchemy.orm import Session

from groupbooking.database import utcnow
from groupbooking.models.event import Event, EventStatus
from groupbooking.models.payment import Payment, PaymentStatus as PS
from groupbooking.models.payment_transition import PaymentTransition, Trigger

logger = logging.getLogger(__name__)

# target -> origins it may be reached from
PAYMENT_TRANSITIONS: dict[PS, frozenset[PS]] = {
    PS.pending: frozenset({PS.cancelling}),
    PS.paid: frozenset({PS.pending, PS.capturing, PS.cancelling}),
    PS.capturing: frozenset({PS.paid, PS.cancelling}),
    PS.confirmed: frozenset({PS.pending, PS.paid, PS.capturing, PS.cancelling}),
    PS.cancelling: frozenset({PS.pending, PS.paid, PS.capturing, PS.confirmed}),
    PS.cancelled: frozenset({PS.pending, PS.paid, PS.capturing, PS.cancelling}),
    PS.failed: frozenset({PS.pending}),
    PS.refunded: frozenset({PS.confirmed}),
}

EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.confirmed: frozenset({EventStatus.active}),
    EventStatus.cancelled: frozenset({EventStatus.active}),
}


class IllegalTransition(Exception):
    pass


def _check(table: dict, origins: frozenset, target) -> None:
    allowed = table.get(target)
    if allowed is None or not origins or not origins <= allowed:
        names = ", ".join(sorted(o.value for o in origins)) or "<none>"
        raise IllegalTransition(f"Illegal transition: {{{names}}} -> {target.value}")


def transition_payment(
    db: Session,
    payment_id: str,
    origins: Iterable[PS],
    target: PS,
    trigger: Trigger,
    **values,
) -> bool:
    """Move a payment to ``target`` iff it is currently in one of ``origins``.

    Extra column values (e.g. ``charge_ref``) are written in the same update.
    Commits immediately. Returns True when a row changed.
    """
    origins = frozenset(origins)
    _check(PAYMENT_TRANSITIONS, origins, target)

    changed = (
        db.query(Payment)
        .filter(Payment.payment_id == payment_id, Payment.status.in_(list(origins)))
        .update({"status": target, "updated_at": utcnow(), **values}, synchronize_session=False)
    )
    if changed:
        db.add(PaymentTransition(
            payment_id=payment_id,
            from_statuses=sorted(o.value for o in origins),
            to_status=target.value,
            trigger=trigger,
        ))
    db.commit()

    if changed:
        logger.info("Payment %s -> %s (%s)", payment_id, target.value, trigger.value)
    else:
        logger.info(
            "Payment %s not in %s, %s -> %s is a no-op",
            payment_id, sorted(o.value for o in origins), trigger.value, target.value,
        )
    return bool(changed)


def transition_event(db: Session, event_id: str, target: EventStatus) -> bool:
    """Move an event forward iff it is still in an allowed origin. Commits immediately."""
    origins = EVENT_TRANSITIONS.get(target, frozenset())
    _check(EVENT_TRANSITIONS, origins, target)

    changed = (
        db.query(Event)
        .filter(Event.event_id == event_id, Event.status.in_(list(origins)))
        .update({"status": target, "updated_at": utcnow()}, synchronize_session=False)
    )
    db.commit()
    if changed:
        logger.info("Event %s -> %s", event_id, target.value)
    return bool(changed)

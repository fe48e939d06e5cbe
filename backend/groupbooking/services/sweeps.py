"""Deadline-driven settlement, invoked by an external scheduler after the deadline.

Capture-now and cancel-now are both idempotent: they only act on payments
still in the states they handle, claim each payment with a conditional update
before calling the gateway, and put it back in a retryable state when the
gateway refuses.
"""
import logging
from typing import Any

from sqlalchemy import exists
from sqlalchemy.orm import Session

from groupbooking.database import utcnow
from groupbooking.models.event import Event, EventStatus
from groupbooking.models.payment import Payment, PaymentStatus as PS, NON_TERMINAL_PAYMENT_STATUSES
from groupbooking.models.payment_transition import Trigger
from groupbooking.services import errors, notifications
from groupbooking.services.event_service import capture_started, committed_count, deadline_passed, get_event
from groupbooking.services.gateway import GatewayError, GatewayUnavailable, PaymentGateway
from groupbooking.services.notifications import NotificationDispatcher, notify
from groupbooking.services.settlement import (
    account_id_for,
    claim_for_cancellation,
    finish_cancellation,
    mark_confirmed,
)
from groupbooking.services.state_machine import transition_event, transition_payment

logger = logging.getLogger(__name__)

CAPTURABLE = (PS.paid, PS.capturing)
# Statuses a sweep still has to act on.
UNSETTLED = (PS.pending, PS.paid, PS.capturing, PS.cancelling)


def _payments(db: Session, event_id: str, statuses) -> list[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.event_id == event_id, Payment.status.in_(list(statuses)))
        .order_by(Payment.created_at, Payment.payment_id)
        .all()
    )


def _has_unsettled(db: Session, event_id: str) -> bool:
    return db.query(Payment.payment_id).filter(
        Payment.event_id == event_id, Payment.status.in_(list(UNSETTLED)),
    ).first() is not None


def _require_deadline_passed(event: Event) -> None:
    if not deadline_passed(event, utcnow()):
        raise errors.conflict("deadline_not_reached", "Payment deadline has not passed yet")


def _summary(event: Event, action: str, **counts) -> dict[str, Any]:
    result = {
        "event_id": event.event_id,
        "action": action,
        "event_status": event.status.value,
        "skipped": None,
        "settled": [],
        "failed": [],
        "unknown": [],
    }
    result.update(counts)
    return result


def capture_payment(
    db: Session,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    payment: Payment,
) -> str:
    """Capture one held payment. Returns ``settled``, ``failed``, ``unknown`` or ``skipped``."""
    if payment.status not in CAPTURABLE:
        return "skipped"
    if payment.status == PS.paid:
        if not transition_payment(db, payment.payment_id, [PS.paid], PS.capturing, Trigger.deadline_capture):
            return "skipped"
    if not payment.authorization_ref:
        logger.error("Payment %s is held without an authorization reference", payment.payment_id)
        return "failed"

    try:
        charge_ref = gateway.capture(payment.authorization_ref, account_id_for(payment), payment.payment_id)
    except GatewayUnavailable as e:
        # Outcome unknown: stays capturing until a webhook or the next sweep resolves it.
        logger.warning("Capture of payment %s timed out, leaving it capturing: %s", payment.payment_id, e)
        return "unknown"
    except GatewayError:
        logger.exception("Capture of payment %s (event %s) failed, reverting to paid",
                         payment.payment_id, payment.event_id)
        transition_payment(db, payment.payment_id, [PS.capturing], PS.paid, Trigger.deadline_capture)
        return "failed"

    mark_confirmed(db, dispatcher, payment, Trigger.deadline_capture, charge_ref=charge_ref)
    return "settled"


def cancel_payment(
    db: Session,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    payment: Payment,
    trigger: Trigger,
    reason: str = "abandoned",
) -> str:
    """Release or refund one payment as part of a mass cancellation. Never promotes."""
    observed = PS(payment.status)
    if observed not in NON_TERMINAL_PAYMENT_STATUSES:
        return "skipped"

    if not payment.authorization_ref and observed not in (PS.confirmed, PS.cancelling):
        # The gateway never answered the checkout, so there is nothing to release.
        finalized = transition_payment(db, payment.payment_id, [observed], PS.cancelled, trigger)
    else:
        # A row already in cancelling was left by an interrupted cancel; finish it.
        if observed != PS.cancelling and not claim_for_cancellation(db, payment, observed, trigger):
            return "skipped"
        try:
            finalized = finish_cancellation(db, gateway, payment, observed, trigger, reason)
        except GatewayUnavailable:
            return "unknown"
        except GatewayError:
            return "failed"

    if finalized:
        db.refresh(payment)
        notify(dispatcher, notifications.payment_cancelled(payment, payment.event))
        return "settled"
    return "skipped"


def deadline_capture(
    db: Session,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    event_id: str,
) -> dict[str, Any]:
    """Capture every held payment of an event that reached its minimum."""
    event = get_event(db, event_id)
    _require_deadline_passed(event)

    committed = committed_count(db, event_id)
    result = _summary(event, "capture", committed_count=committed)
    if event.status == EventStatus.cancelled:
        result["skipped"] = "event_cancelled"
        return result
    # A sweep that already started capturing keeps going even if a guest left since.
    if committed < event.min_participants and not capture_started(db, event_id):
        result["skipped"] = "minimum_not_reached"
        return result

    for payment in _payments(db, event_id, CAPTURABLE):
        outcome = capture_payment(db, gateway, dispatcher, payment)
        if outcome != "skipped":
            result[outcome].append(payment.payment_id)

    # Checkouts that never got a hold before the deadline are abandoned, and
    # self-cancels interrupted by a gateway timeout are finished.
    for payment in _payments(db, event_id, [PS.pending, PS.cancelling]):
        cancel_payment(db, gateway, dispatcher, payment, Trigger.deadline_capture)

    db.refresh(event)
    result["event_status"] = event.status.value
    logger.info("Capture sweep for event %s: %d captured, %d failed, %d unknown",
                event_id, len(result["settled"]), len(result["failed"]), len(result["unknown"]))
    return result


def deadline_cancel(
    db: Session,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    event_id: str,
    require_deadline: bool = True,
) -> dict[str, Any]:
    """Cancel an event that missed its minimum (or was closed) and release every payment.

    ``require_deadline=False`` is used by the organizer close action, which may
    run before the deadline.
    """
    event = get_event(db, event_id)
    if require_deadline:
        _require_deadline_passed(event)

    committed = committed_count(db, event_id)
    result = _summary(event, "cancel", committed_count=committed)
    if event.status == EventStatus.confirmed:
        result["skipped"] = "event_confirmed"
        return result
    if event.status == EventStatus.active:
        if capture_started(db, event_id):
            result["skipped"] = "event_settled"
            return result
        if committed >= event.min_participants:
            result["skipped"] = "minimum_reached"
            return result
        if not transition_event(db, event_id, EventStatus.cancelled):
            db.refresh(event)
            if event.status != EventStatus.cancelled:
                result["skipped"] = f"event_{event.status.value}"
                result["event_status"] = event.status.value
                return result

    for payment in _payments(db, event_id, NON_TERMINAL_PAYMENT_STATUSES):
        outcome = cancel_payment(db, gateway, dispatcher, payment, Trigger.deadline_cancel)
        if outcome != "skipped":
            result[outcome].append(payment.payment_id)

    result["event_status"] = EventStatus.cancelled.value
    logger.info("Cancel sweep for event %s: %d cancelled, %d failed",
                event_id, len(result["settled"]), len(result["failed"]))
    return result


def due_events(db: Session) -> list[dict[str, Any]]:
    """Events past their deadline that a sweep still has work on, with the action to run."""
    now = utcnow()
    has_unsettled = exists().where(
        Payment.event_id == Event.event_id,
        Payment.status.in_(list(UNSETTLED)),
    )
    candidates = (
        db.query(Event)
        .filter(Event.payment_deadline <= now)
        .filter((Event.status == EventStatus.active) | has_unsettled)
        .order_by(Event.payment_deadline)
        .all()
    )

    due = []
    for event in candidates:
        committed = committed_count(db, event.event_id)
        if event.status == EventStatus.cancelled:
            action = "cancel"
        elif (event.status == EventStatus.confirmed or committed >= event.min_participants
              or capture_started(db, event.event_id)):
            action = "capture"
            if not _has_unsettled(db, event.event_id):
                continue
        else:
            action = "cancel"
        due.append({
            "event_id": event.event_id,
            "slug": event.slug,
            "action": action,
            "committed_count": committed,
            "min_participants": event.min_participants,
        })
    return due

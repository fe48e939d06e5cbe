"""Settlement transitions with their side effects.

Each function here wraps one conditional transition from ``state_machine`` and
attaches the side effect that belongs to it. The fast path, the webhook and the
deadline sweep all call these same functions, so whichever signal commits
first does the work and the others become no-ops.

Notifications are sent after the transition commits and only when it changed
a row.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from groupbooking.models.event import Event, EventStatus
from groupbooking.models.payment import Payment, PaymentStatus as PS
from groupbooking.models.payment_transition import Trigger
from groupbooking.services import notifications
from groupbooking.services.event_service import confirmed_count, owner_total_cents
from groupbooking.services.gateway import (
    CANCELED,
    RELEASABLE_STATUSES,
    SUCCEEDED,
    GatewayError,
    GatewayUnavailable,
    PaymentGateway,
)
from groupbooking.services.notifications import NotificationDispatcher, notify
from groupbooking.services.state_machine import transition_event, transition_payment

logger = logging.getLogger(__name__)


def account_id_for(payment: Payment) -> str:
    return payment.event.owner.stripe_account_id


def mark_paid(db: Session, dispatcher: NotificationDispatcher, payment: Payment, trigger: Trigger) -> bool:
    """pending -> paid; the guest gets the reservation message with the cancel link."""
    if not transition_payment(db, payment.payment_id, [PS.pending], PS.paid, trigger):
        return False
    db.refresh(payment)
    notify(dispatcher, notifications.payment_confirmed(payment, payment.event))
    return True


def mark_failed(db: Session, payment: Payment, trigger: Trigger) -> bool:
    return transition_payment(db, payment.payment_id, [PS.pending], PS.failed, trigger)


def mark_confirmed(
    db: Session,
    dispatcher: NotificationDispatcher,
    payment: Payment,
    trigger: Trigger,
    charge_ref: Optional[str] = None,
) -> bool:
    """Record a capture.

    From ``pending`` (3-D Secure or immediate capture) the guest never got the
    reservation message, so it is sent here. From ``paid``/``capturing`` it was
    already sent when the hold was placed.
    """
    values = {"charge_ref": charge_ref} if charge_ref else {}
    if transition_payment(db, payment.payment_id, [PS.pending], PS.confirmed, trigger, **values):
        db.refresh(payment)
        notify(dispatcher, notifications.payment_confirmed(payment, payment.event))
    elif not transition_payment(db, payment.payment_id, [PS.paid, PS.capturing], PS.confirmed, trigger, **values):
        return False
    confirm_event_if_full(db, dispatcher, payment.event_id)
    return True


def confirm_event_if_full(db: Session, dispatcher: NotificationDispatcher, event_id: str) -> bool:
    """Re-derive the confirmed count and close the event when it reaches max.

    The active -> confirmed update can only succeed once, so the organizer
    message goes out at most once however many confirmations race here.
    """
    event = db.query(Event).filter(Event.event_id == event_id).first()
    if event is None or event.status != EventStatus.active:
        return False
    count = confirmed_count(db, event_id)
    logger.info("Event %s: %d/%d confirmed", event_id, count, event.max_participants)
    if count < event.max_participants:
        return False
    if not transition_event(db, event_id, EventStatus.confirmed):
        return False
    db.refresh(event)
    notify(dispatcher, notifications.event_full(event, count, owner_total_cents(db, event_id)))
    return True


def mark_cancelled_by_gateway(db: Session, dispatcher: NotificationDispatcher, payment: Payment) -> bool:
    """The gateway cancelled the intent on its own (expired hold, dashboard action)."""
    if not transition_payment(
        db, payment.payment_id, [PS.pending, PS.paid, PS.capturing], PS.cancelled, Trigger.webhook,
    ):
        return False
    db.refresh(payment)
    notify(dispatcher, notifications.payment_cancelled(payment, payment.event))
    return True


def mark_refunded(db: Session, payment: Payment) -> bool:
    return transition_payment(db, payment.payment_id, [PS.confirmed], PS.refunded, Trigger.webhook)


def release_or_refund(gateway: PaymentGateway, payment: Payment, reason: str) -> None:
    """Undo the guest's payment according to what the gateway says it is now."""
    if not payment.authorization_ref:
        return
    account_id = account_id_for(payment)
    state = gateway.retrieve(payment.authorization_ref, account_id)
    if state.status in RELEASABLE_STATUSES:
        gateway.release(payment.authorization_ref, account_id, reason)
    elif state.status == SUCCEEDED:
        charge_ref = state.charge_ref or payment.charge_ref
        if not charge_ref:
            raise GatewayError(f"Captured payment {payment.payment_id} has no charge to refund")
        gateway.refund(payment.authorization_ref, account_id, charge_ref, reason)
    elif state.status == CANCELED:
        logger.info("Authorization %s already cancelled at the gateway", payment.authorization_ref)
    else:
        raise GatewayError(f"Authorization {payment.authorization_ref} is {state.status}, cannot cancel yet")


def claim_for_cancellation(db: Session, payment: Payment, observed: PS, trigger: Trigger) -> bool:
    return transition_payment(db, payment.payment_id, [observed], PS.cancelling, trigger)


def finish_cancellation(
    db: Session,
    gateway: PaymentGateway,
    payment: Payment,
    observed: PS,
    trigger: Trigger,
    reason: str,
) -> bool:
    """Release/refund a payment already claimed as ``cancelling`` and finalize it.

    When the gateway refuses, the payment goes back to ``observed`` so the next
    attempt can retry. When the call times out the outcome is unknown, so the
    payment stays ``cancelling`` for a retry or the sweep to finish. Either way
    the error propagates.
    """
    try:
        release_or_refund(gateway, payment, reason)
    except GatewayUnavailable as e:
        logger.warning("Gateway cancel of payment %s timed out, leaving it cancelling: %s", payment.payment_id, e)
        raise
    except GatewayError:
        if observed == PS.cancelling:
            logger.exception("Finishing cancellation of payment %s failed", payment.payment_id)
            raise
        logger.exception(
            "Gateway cancel failed for payment %s (event %s), reverting to %s",
            payment.payment_id, payment.event_id, observed.value,
        )
        transition_payment(db, payment.payment_id, [PS.cancelling], observed, trigger)
        raise
    return transition_payment(db, payment.payment_id, [PS.cancelling], PS.cancelled, trigger)

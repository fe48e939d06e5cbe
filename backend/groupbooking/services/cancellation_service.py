"""Guest self-cancellation via the single-use token from the confirmation message."""
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from groupbooking.models.event import EventStatus
from groupbooking.models.payment import Payment, PaymentStatus, SELF_CANCELLABLE_STATUSES
from groupbooking.models.payment_transition import Trigger
from groupbooking.services import errors, notifications
from groupbooking.services.gateway import GatewayError, GatewayUnavailable, PaymentGateway
from groupbooking.services.notifications import NotificationDispatcher, notify
from groupbooking.services.settlement import claim_for_cancellation, finish_cancellation
from groupbooking.services.waiting_list_service import promote_next

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 3


def _not_cancellable() -> HTTPException:
    return errors.conflict("not_cancellable", "This reservation is already cancelled or refunded")


def self_cancel(
    db: Session,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    cancel_token: str,
) -> dict[str, str]:
    """Cancel a guest's own payment and offer the freed slot to the waiting list.

    1. claim the payment as ``cancelling`` from the state we observed, or
       resume a claim left behind by a gateway timeout
    2. release the hold, or refund if the gateway already captured it
    3. finalize to ``cancelled``
    4. confirm to the guest
    5. promote the next waiting-list entry
    """
    payment = db.query(Payment).filter(Payment.cancel_token == cancel_token).first() if cancel_token else None
    if payment is None:
        raise errors.not_found("invalid_token", "Invalid cancellation link")

    event = payment.event
    if event.status == EventStatus.cancelled:
        raise _not_cancellable()

    # The row may move between our read and the claim (e.g. a capture); retry on what is there now.
    for attempt in range(CLAIM_ATTEMPTS):
        observed = PaymentStatus(payment.status)
        if observed == PaymentStatus.cancelling:
            if attempt:
                # Another request claimed it between our read and our claim.
                raise errors.conflict("cancel_in_progress", "Reservation is being updated, please try again")
            # An earlier attempt timed out at the gateway; finish it.
            break
        if observed not in SELF_CANCELLABLE_STATUSES:
            raise _not_cancellable()
        if claim_for_cancellation(db, payment, observed, Trigger.self_cancel):
            break
        db.refresh(payment)
    else:
        raise errors.conflict("cancel_in_progress", "Reservation is being updated, please try again")

    try:
        finalized = finish_cancellation(
            db, gateway, payment, observed, Trigger.self_cancel, reason="requested_by_customer",
        )
    except GatewayUnavailable:
        raise errors.gateway_error("Payment service did not respond, please try again")
    except GatewayError:
        raise errors.gateway_error("Could not cancel the payment, please try again")

    db.refresh(payment)
    db.refresh(event)
    if finalized:
        logger.info("Payment %s self-cancelled (was %s), event %s", payment.payment_id, observed.value, event.event_id)
        notify(dispatcher, notifications.self_cancel_confirmed(payment, event))
        promote_next(db, dispatcher, event)
    else:
        logger.info("Payment %s was finalized by another handler", payment.payment_id)

    return {"event_name": event.name, "event_slug": event.slug}

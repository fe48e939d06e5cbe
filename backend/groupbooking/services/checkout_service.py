"""Checkout initiation: create the pending payment and ask the gateway for a hold."""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupbooking.database import utcnow
from groupbooking.models.event import Event, EventStatus
from groupbooking.models.payment import Payment, PaymentStatus, NON_TERMINAL_PAYMENT_STATUSES
from groupbooking.models.payment_transition import PaymentTransition, Trigger
from groupbooking.services import errors
from groupbooking.services.event_service import deadline_passed, get_event, is_full
from groupbooking.services.gateway import GatewayError, GatewayUnavailable, PaymentGateway
from groupbooking.services.settlement import account_id_for, mark_failed

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _duplicate_guest():
    return errors.conflict("duplicate_guest", "You already have a reservation for this event")


def _create_pending(db: Session, event: Event, guest_name: str, email: str) -> Payment:
    payment = Payment(
        event_id=event.event_id,
        guest_name=guest_name.strip(),
        guest_email=email,
        total_cents=event.total_cents,
        owner_share_cents=event.price_cents,
        status=PaymentStatus.pending,
    )
    db.add(payment)
    try:
        db.flush()
        db.add(PaymentTransition(
            payment_id=payment.payment_id,
            from_statuses=[],
            to_status=PaymentStatus.pending.value,
            trigger=Trigger.checkout,
        ))
        db.commit()
    except IntegrityError:
        # A concurrent checkout for the same guest won the partial unique index.
        db.rollback()
        raise _duplicate_guest()
    db.refresh(payment)
    return payment


def initiate_checkout(
    db: Session,
    gateway: PaymentGateway,
    event_id: str,
    guest_name: str,
    guest_email: str,
) -> dict[str, str]:
    """Create a pending payment and a manual-capture authorization for it.

    Raises 409 with one of ``event_not_active``, ``deadline_passed``,
    ``event_full`` or ``duplicate_guest``; 502 ``gateway_error`` when the
    gateway refuses (the payment is then marked failed) or times out (the
    payment stays pending and the next checkout by the same guest retries it).
    """
    event = get_event(db, event_id)
    email = _normalize_email(guest_email)

    if event.status != EventStatus.active:
        raise errors.conflict("event_not_active", "Event is no longer accepting payments")
    if deadline_passed(event, utcnow()):
        raise errors.conflict("deadline_passed", "Payment deadline has passed")
    if is_full(db, event):
        raise errors.conflict("event_full", "Event is full")

    existing = (
        db.query(Payment)
        .filter(
            Payment.event_id == event_id,
            Payment.guest_email == email,
            Payment.status.in_(list(NON_TERMINAL_PAYMENT_STATUSES)),
        )
        .first()
    )
    if existing is None:
        payment = _create_pending(db, event, guest_name, email)
    elif existing.status == PaymentStatus.pending and not existing.authorization_ref:
        # An earlier attempt timed out before the gateway answered; same idempotency key.
        logger.info("Retrying authorization for payment %s (event %s)", existing.payment_id, event_id)
        payment = existing
    else:
        raise _duplicate_guest()

    try:
        authorization = gateway.authorize(
            amount_cents=payment.total_cents,
            application_fee_cents=event.service_fee_cents,
            account_id=account_id_for(payment),
            metadata={"event_id": event_id, "payment_id": payment.payment_id},
            idempotency_key=payment.payment_id,
        )
    except GatewayUnavailable as e:
        # Outcome unknown: the payment stays pending without a reference.
        logger.warning("Authorization for payment %s (event %s) timed out: %s", payment.payment_id, event_id, e)
        raise errors.gateway_error("Payment service did not respond, please try again")
    except GatewayError as e:
        # Without a client secret no hold can ever be placed on this attempt.
        logger.warning("Authorization for payment %s (event %s) failed: %s", payment.payment_id, event_id, e)
        mark_failed(db, payment, Trigger.checkout)
        raise errors.gateway_error("Payment could not be started, please try again")

    db.query(Payment).filter(
        Payment.payment_id == payment.payment_id,
        Payment.authorization_ref.is_(None),
    ).update({"authorization_ref": authorization.reference}, synchronize_session=False)
    db.commit()
    logger.info("Checkout started: payment %s, authorization %s, event %s",
                payment.payment_id, authorization.reference, event_id)

    return {
        "payment_id": payment.payment_id,
        "authorization_reference": authorization.reference,
        "client_secret": authorization.client_secret,
    }

"""Reconciliation entry points: client fast path and gateway webhook.

Both feed the same transitions in ``settlement``. Either may arrive first, twice,
or not at all; the conditional updates make every combination converge on the
same end state with each side effect fired once.
"""
import logging
from typing import Any, Optional

from fastapi import status
from sqlalchemy.orm import Session

from groupbooking.models.owner import Owner
from groupbooking.models.payment import Payment
from groupbooking.models.payment_transition import Trigger
from groupbooking.services import errors, gateway as gw
from groupbooking.services.gateway import GatewayError, GatewayEvent, PaymentGateway
from groupbooking.services.notifications import NotificationDispatcher
from groupbooking.services.settlement import (
    account_id_for,
    mark_cancelled_by_gateway,
    mark_confirmed,
    mark_failed,
    mark_paid,
    mark_refunded,
)

logger = logging.getLogger(__name__)


def payment_for_reference(db: Session, reference: Optional[str]) -> Optional[Payment]:
    if not reference:
        return None
    return db.query(Payment).filter(Payment.authorization_ref == reference).first()


def fast_path_confirm(
    db: Session,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    authorization_reference: str,
) -> dict[str, Any]:
    """Called by the guest's client right after the card was authorized.

    The gateway is asked directly whether the authorization exists, so a
    client cannot mark itself paid. Succeeds whether or not a row changed.
    """
    payment = payment_for_reference(db, authorization_reference)
    if payment is None:
        logger.info("Fast path for unknown authorization %s, nothing to do", authorization_reference)
        return {"success": True, "changed": False}

    try:
        state = gateway.retrieve(authorization_reference, account_id_for(payment))
    except GatewayError as e:
        logger.warning("Fast path could not verify %s: %s", authorization_reference, e)
        raise errors.gateway_error("Could not verify payment")

    if state.status not in gw.AUTHORIZED_STATUSES:
        raise errors.api_error(status.HTTP_400_BAD_REQUEST, "not_authorized", f"Authorization is {state.status}")

    changed = mark_paid(db, dispatcher, payment, Trigger.fast_path)
    if not changed:
        logger.info("Fast path for %s: payment %s already processed", authorization_reference, payment.payment_id)
    return {"success": True, "changed": changed}


def _owner_onboarded(db: Session, event: GatewayEvent) -> bool:
    if not event.account_id or not event.account_ready:
        return False
    changed = (
        db.query(Owner)
        .filter(Owner.stripe_account_id == event.account_id, Owner.onboarding_complete.is_(False))
        .update({"onboarding_complete": True}, synchronize_session=False)
    )
    db.commit()
    if changed:
        logger.info("Owner account %s onboarded", event.account_id)
    return bool(changed)


def handle_webhook(
    db: Session,
    dispatcher: NotificationDispatcher,
    event: GatewayEvent,
) -> dict[str, Any]:
    """Apply one verified gateway event. Unknown types and references are acknowledged."""
    if event.type == gw.ACCOUNT_UPDATED:
        return {"received": True, "changed": _owner_onboarded(db, event)}

    handlers = {
        gw.HOLD_PLACED: lambda p: mark_paid(db, dispatcher, p, Trigger.webhook),
        gw.CAPTURED: lambda p: mark_confirmed(db, dispatcher, p, Trigger.webhook, charge_ref=event.charge_ref),
        gw.AUTHORIZATION_FAILED: lambda p: mark_failed(db, p, Trigger.webhook),
        gw.INTENT_CANCELED: lambda p: mark_cancelled_by_gateway(db, dispatcher, p),
        gw.CHARGE_REFUNDED: lambda p: mark_refunded(db, p),
    }
    handler = handlers.get(event.type)
    if handler is None:
        logger.info("Unhandled webhook event type: %s", event.type)
        return {"received": True, "changed": False}

    payment = payment_for_reference(db, event.reference)
    if payment is None:
        logger.warning("Webhook %s for unknown authorization %s", event.type, event.reference)
        return {"received": True, "changed": False}

    changed = handler(payment)
    logger.info("Webhook %s for payment %s (event %s): changed=%s",
                event.type, payment.payment_id, payment.event_id, changed)
    return {"received": True, "changed": changed}

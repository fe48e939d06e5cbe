"""Guest payment routes: checkout, fast-path confirmation and self-cancel."""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from groupbooking.database import get_db
from groupbooking.schemas.payment import (
    CheckoutOut,
    CheckoutRequest,
    MarkPaidOut,
    MarkPaidRequest,
    SelfCancelOut,
    SelfCancelRequest,
)
from groupbooking.services import cancellation_service, checkout_service, reconciliation
from groupbooking.services.gateway import PaymentGateway, get_gateway
from groupbooking.services.notifications import NotificationDispatcher, get_dispatcher

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/checkout", response_model=CheckoutOut, status_code=status.HTTP_201_CREATED)
def checkout(
    payload: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Start a payment; the client completes the card step with ``client_secret``."""
    return checkout_service.initiate_checkout(
        db=db,
        gateway=gateway,
        event_id=payload.event_id,
        guest_name=payload.guest_name,
        guest_email=payload.guest_email,
    )


@router.post("/mark-paid", response_model=MarkPaidOut)
def mark_paid(
    payload: MarkPaidRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = reconciliation.fast_path_confirm(db, gateway, dispatcher, payload.authorization_reference)
    return {"success": result["success"]}


@router.post("/self-cancel", response_model=SelfCancelOut)
def self_cancel(
    payload: SelfCancelRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return cancellation_service.self_cancel(db, gateway, dispatcher, payload.token)

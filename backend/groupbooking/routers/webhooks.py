"""Payment gateway webhook receiver."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from groupbooking.database import get_db
from groupbooking.services import errors, reconciliation
from groupbooking.services.gateway import InvalidSignature, PaymentGateway, get_gateway
from groupbooking.services.notifications import NotificationDispatcher, get_dispatcher

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Verify the signature over the raw body, then apply the event."""
    payload = await request.body()
    try:
        event = gateway.parse_webhook(payload, stripe_signature)
    except InvalidSignature as e:
        logger.warning("Rejected webhook: %s", e)
        raise errors.api_error(400, "invalid_signature", "Invalid webhook signature")
    return await run_in_threadpool(reconciliation.handle_webhook, db, dispatcher, event)

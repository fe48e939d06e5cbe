"""Scheduler endpoints for deadline settlement, guarded by a shared secret."""
import hmac
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from groupbooking.config import settings
from groupbooking.database import get_db
from groupbooking.schemas.settlement import DueEventOut, SweepOut
from groupbooking.services import sweeps
from groupbooking.services.gateway import PaymentGateway, get_gateway
from groupbooking.services.notifications import NotificationDispatcher, get_dispatcher

logger = logging.getLogger(__name__)


def require_cron_secret(x_cron_secret: Optional[str] = Header(None)) -> None:
    expected = settings.CRON_SECRET
    if not expected or not x_cron_secret or not hmac.compare_digest(
        x_cron_secret.encode("utf-8"), expected.encode("utf-8"),
    ):
        logger.warning("Rejected scheduler call with missing or wrong secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.get("/due", response_model=list[DueEventOut])
def list_due(db: Session = Depends(get_db)):
    """Events past their deadline that still need a capture or cancel sweep."""
    return sweeps.due_events(db)


@router.post("/{event_id}/capture", response_model=SweepOut)
def capture(
    event_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return sweeps.deadline_capture(db, gateway, dispatcher, event_id)


@router.post("/{event_id}/cancel", response_model=SweepOut)
def cancel(
    event_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return sweeps.deadline_cancel(db, gateway, dispatcher, event_id)

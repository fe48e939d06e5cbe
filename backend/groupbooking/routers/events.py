"""Event API routes: delegates to event_service for creation rules and counts."""
import logging
from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from groupbooking.database import get_db
from groupbooking.models.event import Event
from groupbooking.schemas.event import EventCloseRequest, EventCreate, EventOut, FeeQuoteOut
from groupbooking.schemas.settlement import SweepOut
from groupbooking.services import event_service, sweeps
from groupbooking.services.fees import calculate_fees
from groupbooking.services.gateway import PaymentGateway, get_gateway
from groupbooking.services.notifications import NotificationDispatcher, get_dispatcher

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/fee-quote", response_model=FeeQuoteOut)
def fee_quote(price: Decimal = Query(..., ge=0)):
    """What a guest pays for a given organizer price."""
    fees = calculate_fees(price)
    return {
        "owner_cents": fees.owner_cents,
        "commission_cents": fees.commission_cents,
        "surcharge_cents": fees.surcharge_cents,
        "service_fee_cents": fees.service_fee_cents,
        "total_cents": fees.total_cents,
    }


@router.post("/", response_model=EventOut, status_code=status.HTTP_201_CREATED)
def create_event(payload: EventCreate, db: Session = Depends(get_db)):
    """Create an event; the guest price and service fee are fixed here."""
    event = event_service.create_event(
        db=db,
        owner_id=payload.owner_id,
        name=payload.name,
        description=payload.description,
        price=payload.price,
        min_participants=payload.min_participants,
        max_participants=payload.max_participants,
        starts_at=payload.starts_at,
        payment_deadline=payload.payment_deadline,
    )
    return event_service.event_summary(db, event)


@router.get("/", response_model=list[EventOut])
def list_events(owner_id: Optional[str] = Query(None), db: Session = Depends(get_db)):
    query = db.query(Event)
    if owner_id:
        query = query.filter(Event.owner_id == owner_id)
    events = query.order_by(Event.starts_at).all()
    return [event_service.event_summary(db, e) for e in events]


@router.get("/by-slug/{slug}", response_model=EventOut)
def get_event_by_slug(slug: str, db: Session = Depends(get_db)):
    """Public event page lookup."""
    return event_service.event_summary(db, event_service.get_event_by_slug(db, slug))


@router.get("/{event_id}", response_model=EventOut)
def get_event(event_id: str, db: Session = Depends(get_db)):
    return event_service.event_summary(db, event_service.get_event(db, event_id))


@router.post("/{event_id}/close", response_model=SweepOut)
def close_event(
    event_id: str,
    payload: EventCloseRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Organizer cancels an active event and every hold on it is released."""
    event_service.close_event(db, event_id, payload.owner_id)
    return sweeps.deadline_cancel(db, gateway, dispatcher, event_id, require_deadline=False)

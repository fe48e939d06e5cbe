"""Event service: creation, lookup and the derived event aggregate.

Responsibilities:
- Organizer checks: owner exists, gateway onboarding complete, owns the event
- Creation invariants: name, price, participant range, deadline < start
- Unique public slug, collision-checked at creation
- Derived counts (committed holds, captured confirmations), never cached
"""
import logging
import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from groupbooking.database import as_utc, utcnow
from groupbooking.models.event import Event, EventStatus
from groupbooking.models.owner import Owner
from groupbooking.models.payment import Payment, PaymentStatus, COMMITTED_PAYMENT_STATUSES
from groupbooking.models.payment_transition import PaymentTransition, Trigger
from groupbooking.services import errors
from groupbooking.services.fees import calculate_fees
from groupbooking.services.state_machine import transition_event

logger = logging.getLogger(__name__)

SLUG_ALPHABET = string.ascii_lowercase + string.digits
SLUG_LENGTH = 6
SLUG_ATTEMPTS = 5
MIN_PRICE = Decimal("1")
MIN_PARTICIPANTS = 2


def get_event(db: Session, event_id: str) -> Event:
    event = db.query(Event).filter(Event.event_id == event_id).first()
    if not event:
        raise errors.not_found("event_not_found", "Event not found")
    return event


def get_event_by_slug(db: Session, slug: str) -> Event:
    event = db.query(Event).filter(Event.slug == slug).first()
    if not event:
        raise errors.not_found("event_not_found", "Event not found")
    return event


def deadline_passed(event: Event, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= as_utc(event.payment_deadline)


def capture_started(db: Session, event_id: str) -> bool:
    """True once the capture sweep has claimed any payment of the event.

    From then on the event is settled by capture; no cancel path may undo it.
    """
    return (
        db.query(PaymentTransition.transition_id)
        .join(Payment, Payment.payment_id == PaymentTransition.payment_id)
        .filter(Payment.event_id == event_id, PaymentTransition.trigger == Trigger.deadline_capture)
        .first()
        is not None
    )


def _count(db: Session, event_id: str, statuses) -> int:
    return (
        db.query(func.count(Payment.payment_id))
        .filter(Payment.event_id == event_id, Payment.status.in_(list(statuses)))
        .scalar()
    ) or 0


def committed_count(db: Session, event_id: str) -> int:
    """Holds that occupy a slot: paid, capturing or confirmed."""
    return _count(db, event_id, COMMITTED_PAYMENT_STATUSES)


def confirmed_count(db: Session, event_id: str) -> int:
    """Captured payments only."""
    return _count(db, event_id, [PaymentStatus.confirmed])


def owner_total_cents(db: Session, event_id: str) -> int:
    total = (
        db.query(func.sum(Payment.owner_share_cents))
        .filter(Payment.event_id == event_id, Payment.status == PaymentStatus.confirmed)
        .scalar()
    )
    return int(total or 0)


def is_full(db: Session, event: Event) -> bool:
    return committed_count(db, event.event_id) >= event.max_participants


def event_summary(db: Session, event: Event) -> dict[str, Any]:
    """Event fields plus the derived aggregate, for API responses."""
    committed = committed_count(db, event.event_id)
    return {
        "event_id": event.event_id,
        "owner_id": event.owner_id,
        "slug": event.slug,
        "name": event.name,
        "description": event.description,
        "price_cents": event.price_cents,
        "service_fee_cents": event.service_fee_cents,
        "total_cents": event.total_cents,
        "min_participants": event.min_participants,
        "max_participants": event.max_participants,
        "starts_at": as_utc(event.starts_at),
        "payment_deadline": as_utc(event.payment_deadline),
        "status": event.status.value,
        "committed_count": committed,
        "confirmed_count": confirmed_count(db, event.event_id),
        "spots_left": max(event.max_participants - committed, 0),
        "is_full": committed >= event.max_participants,
        "min_reached": committed >= event.min_participants,
        "deadline_passed": deadline_passed(event),
        "created_at": as_utc(event.created_at),
    }


def _new_slug() -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(SLUG_LENGTH))


def _unique_slug(db: Session) -> str:
    for _ in range(SLUG_ATTEMPTS):
        slug = _new_slug()
        if not db.query(Event.event_id).filter(Event.slug == slug).first():
            return slug
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not allocate a slug")


def validate_event_fields(
    name: str,
    price: Decimal,
    min_participants: int,
    max_participants: int,
    starts_at: datetime,
    payment_deadline: datetime,
) -> dict[str, str]:
    """Return field -> message for every broken creation rule."""
    field_errors: dict[str, str] = {}
    if not name or len(name.strip()) < 3:
        field_errors["name"] = "Name must have at least 3 characters"
    if price < MIN_PRICE:
        field_errors["price"] = f"Price must be at least {MIN_PRICE}"
    if min_participants < MIN_PARTICIPANTS:
        field_errors["min_participants"] = f"Minimum must be at least {MIN_PARTICIPANTS}"
    if max_participants < min_participants:
        field_errors["max_participants"] = "Maximum must be greater than or equal to minimum"
    if as_utc(payment_deadline) >= as_utc(starts_at):
        field_errors["payment_deadline"] = "Payment deadline must be before the event start"
    return field_errors


def create_event(
    db: Session,
    owner_id: str,
    name: str,
    price: Decimal,
    min_participants: int,
    max_participants: int,
    starts_at: datetime,
    payment_deadline: datetime,
    description: Optional[str] = None,
) -> Event:
    """Create an event after validating every field; nothing is persisted on error."""
    owner = db.query(Owner).filter(Owner.owner_id == owner_id).first()
    if not owner:
        raise errors.not_found("owner_not_found", "Owner not found")
    if not owner.onboarding_complete:
        raise errors.conflict("owner_not_onboarded", "Finish payment account setup before creating events")

    field_errors = validate_event_fields(
        name, price, min_participants, max_participants, starts_at, payment_deadline,
    )
    if field_errors:
        raise errors.field_errors(field_errors)

    fees = calculate_fees(price)
    event = Event(
        owner_id=owner_id,
        slug=_unique_slug(db),
        name=name.strip(),
        description=(description or "").strip() or None,
        price_cents=fees.owner_cents,
        service_fee_cents=fees.service_fee_cents,
        min_participants=min_participants,
        max_participants=max_participants,
        starts_at=as_utc(starts_at),
        payment_deadline=as_utc(payment_deadline),
        status=EventStatus.active,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info("Created event '%s' (%s, slug %s) for owner %s", event.name, event.event_id, event.slug, owner_id)
    return event


def close_event(db: Session, event_id: str, owner_id: str) -> Event:
    """Organizer cancels an event that is still collecting payments."""
    event = get_event(db, event_id)
    if event.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the organizer may close this event")
    if capture_started(db, event_id):
        raise errors.conflict("event_settled", "Payments for this event have already been captured")
    if not transition_event(db, event_id, EventStatus.cancelled):
        db.refresh(event)
        raise errors.conflict("event_not_active", f"Event is already {event.status.value}")
    db.refresh(event)
    logger.info("Event %s closed by organizer %s", event_id, owner_id)
    return event

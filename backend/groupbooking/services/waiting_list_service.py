"""Waiting list: joining a full event and promoting the next guest when a slot opens."""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupbooking.database import utcnow
from groupbooking.models.event import Event, EventStatus
from groupbooking.models.waiting_list import WaitingListEntry
from groupbooking.services import errors, notifications
from groupbooking.services.event_service import deadline_passed, get_event, is_full
from groupbooking.services.notifications import NotificationDispatcher, notify

logger = logging.getLogger(__name__)

# Bounded so a burst of concurrent promoters cannot spin forever.
MAX_PROMOTION_ATTEMPTS = 5


def join_waiting_list(
    db: Session,
    event_id: str,
    guest_name: str,
    guest_email: str,
    phone: Optional[str] = None,
    notify_whatsapp: bool = False,
    notify_viber: bool = False,
) -> WaitingListEntry:
    """Add a guest to the waiting list of a full, still-open event."""
    event = get_event(db, event_id)
    email = guest_email.strip().lower()

    if event.status != EventStatus.active or not is_full(db, event):
        raise errors.conflict("event_not_full_or_inactive", "Event is not full or no longer active")
    if deadline_passed(event, utcnow()):
        raise errors.conflict("deadline_passed", "Payment deadline has passed")

    existing = (
        db.query(WaitingListEntry.entry_id)
        .filter(
            WaitingListEntry.event_id == event_id,
            WaitingListEntry.guest_email == email,
            WaitingListEntry.notified_at.is_(None),
        )
        .first()
    )
    if existing:
        raise errors.conflict("duplicate_entry", "You are already on the waiting list for this event")

    entry = WaitingListEntry(
        event_id=event_id,
        guest_name=guest_name.strip(),
        guest_email=email,
        phone=(phone or "").strip() or None,
        notify_whatsapp=notify_whatsapp,
        notify_viber=notify_viber,
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise errors.conflict("duplicate_entry", "You are already on the waiting list for this event")
    db.refresh(entry)
    logger.info("Guest joined waiting list %s for event %s", entry.entry_id, event_id)
    return entry


def _next_waiting(db: Session, event_id: str) -> Optional[WaitingListEntry]:
    return (
        db.query(WaitingListEntry)
        .filter(WaitingListEntry.event_id == event_id, WaitingListEntry.notified_at.is_(None))
        .order_by(WaitingListEntry.created_at, WaitingListEntry.entry_id)
        .first()
    )


def promote_next(db: Session, dispatcher: NotificationDispatcher, event: Event) -> Optional[WaitingListEntry]:
    """Notify the oldest un-notified entry that a slot is free.

    Called for an individual cancellation only; mass cancellations never promote.

    ``notified_at`` is claimed with a conditional update, so two promoters
    racing for the same entry cannot both notify it; the loser moves on to the
    next entry.
    """
    for _ in range(MAX_PROMOTION_ATTEMPTS):
        entry = _next_waiting(db, event.event_id)
        if entry is None:
            return None
        claimed = (
            db.query(WaitingListEntry)
            .filter(WaitingListEntry.entry_id == entry.entry_id, WaitingListEntry.notified_at.is_(None))
            .update({"notified_at": utcnow()}, synchronize_session=False)
        )
        db.commit()
        if claimed:
            db.refresh(entry)
            logger.info("Promoted waiting list entry %s for event %s", entry.entry_id, event.event_id)
            notify(dispatcher, notifications.spot_available(entry, event))
            return entry
    logger.warning("Gave up promoting waiting list for event %s after %d attempts",
                   event.event_id, MAX_PROMOTION_ATTEMPTS)
    return None

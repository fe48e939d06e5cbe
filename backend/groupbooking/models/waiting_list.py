"""WaitingListEntry ORM model: a guest waiting for a slot on a full event."""
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from groupbooking.database import Base, utcnow


class WaitingListEntry(Base):
    __tablename__ = "waiting_list"

    entry_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False, index=True)
    guest_name = Column(String(100), nullable=False)
    guest_email = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)
    notify_whatsapp = Column(Boolean, nullable=False, default=False)
    notify_viber = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)  # FIFO order
    notified_at = Column(DateTime(timezone=True), nullable=True)  # null = still waiting

    event = relationship("Event", back_populates="waiting_list")

    __table_args__ = (
        Index(
            "uq_waiting_list_open_guest",
            "event_id",
            "guest_email",
            unique=True,
            sqlite_where=text("notified_at IS NULL"),
            postgresql_where=text("notified_at IS NULL"),
        ),
    )

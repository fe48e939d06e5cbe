"""Event ORM model: a group booking with a participant range and payment deadline."""
import uuid
import enum
from sqlalchemy import Column, String, Text, DateTime, Integer, ForeignKey, Enum as SAEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from groupbooking.database import Base


class EventStatus(str, enum.Enum):
    active = "active"
    confirmed = "confirmed"
    cancelled = "cancelled"


class Event(Base):
    __tablename__ = "events"

    event_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), ForeignKey("owners.owner_id"), nullable=False)
    slug = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False)        # owner share
    service_fee_cents = Column(Integer, nullable=False)  # commission + gateway surcharge
    min_participants = Column(Integer, nullable=False)
    max_participants = Column(Integer, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    payment_deadline = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        SAEnum(EventStatus, native_enum=False, length=20),
        nullable=False,
        default=EventStatus.active,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("Owner", back_populates="events")
    payments = relationship("Payment", back_populates="event")
    waiting_list = relationship("WaitingListEntry", back_populates="event")

    @property
    def total_cents(self) -> int:
        return self.price_cents + self.service_fee_cents

"""Payment ORM model: one guest's authorization/capture for one event."""
import uuid
import enum
import secrets
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Index, Enum as SAEnum, text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from groupbooking.database import Base, utcnow


class PaymentStatus(str, enum.Enum):
    pending = "pending"        # authorization requested, hold not yet placed
    paid = "paid"              # hold placed, not captured
    capturing = "capturing"    # capture in flight
    confirmed = "confirmed"    # captured
    cancelling = "cancelling"  # release/refund in flight
    cancelled = "cancelled"
    failed = "failed"
    refunded = "refunded"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.cancelled,
    PaymentStatus.failed,
    PaymentStatus.refunded,
})
NON_TERMINAL_PAYMENT_STATUSES = frozenset(set(PaymentStatus) - TERMINAL_PAYMENT_STATUSES)

# Holds that occupy a slot.
COMMITTED_PAYMENT_STATUSES = frozenset({
    PaymentStatus.paid,
    PaymentStatus.capturing,
    PaymentStatus.confirmed,
})

SELF_CANCELLABLE_STATUSES = frozenset({
    PaymentStatus.pending,
    PaymentStatus.paid,
    PaymentStatus.capturing,
    PaymentStatus.confirmed,
})


def new_cancel_token() -> str:
    return secrets.token_urlsafe(24)


class Payment(Base):
    __tablename__ = "payments"

    payment_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False, index=True)
    guest_name = Column(String(100), nullable=False)
    guest_email = Column(String(255), nullable=False)
    authorization_ref = Column(String(255), nullable=True, unique=True)
    charge_ref = Column(String(255), nullable=True)
    total_cents = Column(Integer, nullable=False)
    owner_share_cents = Column(Integer, nullable=False)
    status = Column(
        SAEnum(PaymentStatus, native_enum=False, length=20),
        nullable=False,
        default=PaymentStatus.pending,
    )
    cancel_token = Column(String(64), nullable=False, unique=True, default=new_cancel_token)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    event = relationship("Event", back_populates="payments")

    __table_args__ = (
        # One live payment per guest per event; terminal rows drop out of the index.
        Index(
            "uq_payments_live_guest",
            "event_id",
            "guest_email",
            unique=True,
            sqlite_where=text("status IN ('pending', 'paid', 'capturing', 'confirmed', 'cancelling')"),
            postgresql_where=text("status IN ('pending', 'paid', 'capturing', 'confirmed', 'cancelling')"),
        ),
    )

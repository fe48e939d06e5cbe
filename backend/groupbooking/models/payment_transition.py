"""PaymentTransition ORM model: append-only ledger of applied status changes."""
import uuid
import enum
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Enum as SAEnum
from groupbooking.database import Base, utcnow


class Trigger(str, enum.Enum):
    checkout = "checkout"
    fast_path = "fast_path"
    webhook = "webhook"
    deadline_capture = "deadline_capture"
    deadline_cancel = "deadline_cancel"
    self_cancel = "self_cancel"


class PaymentTransition(Base):
    __tablename__ = "payment_transitions"

    transition_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_id = Column(String(36), ForeignKey("payments.payment_id"), nullable=False, index=True)
    from_statuses = Column(JSON, nullable=False)
    to_status = Column(String(20), nullable=False)
    trigger = Column(SAEnum(Trigger, native_enum=False, length=20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

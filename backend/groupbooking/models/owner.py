"""Owner ORM model: the organizer who publishes events."""
import uuid
from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from groupbooking.database import Base


class Owner(Base):
    __tablename__ = "owners"

    owner_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    stripe_account_id = Column(String(255), nullable=False, unique=True)  # connected account
    onboarding_complete = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    events = relationship("Event", back_populates="owner")

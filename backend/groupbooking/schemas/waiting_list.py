"""Pydantic schemas for the waiting list."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class WaitingListJoin(BaseModel):
    event_id: str
    guest_name: str = Field(min_length=1, max_length=100)
    guest_email: str = Field(min_length=3, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    notify_whatsapp: bool = False
    notify_viber: bool = False


class WaitingListOut(BaseModel):
    entry_id: str
    event_id: str
    guest_name: str
    guest_email: str
    notify_whatsapp: bool
    notify_viber: bool
    created_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

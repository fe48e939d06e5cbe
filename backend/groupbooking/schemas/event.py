"""Pydantic schemas for Events."""
from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class EventCreate(BaseModel):
    owner_id: str
    name: str = Field(max_length=255)
    description: Optional[str] = None
    price: Decimal  # organizer share, major currency units
    min_participants: int
    max_participants: int
    starts_at: datetime
    payment_deadline: datetime


class EventOut(BaseModel):
    event_id: str
    owner_id: str
    slug: str
    name: str
    description: Optional[str] = None
    price_cents: int
    service_fee_cents: int
    total_cents: int
    min_participants: int
    max_participants: int
    starts_at: datetime
    payment_deadline: datetime
    status: str
    committed_count: int
    confirmed_count: int
    spots_left: int
    is_full: bool
    min_reached: bool
    deadline_passed: bool
    created_at: Optional[datetime] = None


class EventCloseRequest(BaseModel):
    owner_id: str


class FeeQuoteOut(BaseModel):
    owner_cents: int
    commission_cents: int
    surcharge_cents: int
    service_fee_cents: int
    total_cents: int

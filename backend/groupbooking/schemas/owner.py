"""Pydantic schemas for Owners."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class OwnerCreate(BaseModel):
    name: str
    email: str = Field(min_length=3, max_length=255)
    stripe_account_id: str


class OwnerOut(BaseModel):
    owner_id: str
    name: str
    email: str
    stripe_account_id: str
    onboarding_complete: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

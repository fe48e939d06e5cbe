"""Pydantic schemas for checkout, fast-path confirmation and self-cancel."""
from __future__ import annotations
from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    event_id: str
    guest_name: str = Field(min_length=1, max_length=100)
    guest_email: str = Field(min_length=3, max_length=255)


class CheckoutOut(BaseModel):
    payment_id: str
    authorization_reference: str
    client_secret: str


class MarkPaidRequest(BaseModel):
    authorization_reference: str = Field(min_length=1)


class MarkPaidOut(BaseModel):
    success: bool


class SelfCancelRequest(BaseModel):
    token: str = Field(min_length=1)


class SelfCancelOut(BaseModel):
    event_name: str
    event_slug: str

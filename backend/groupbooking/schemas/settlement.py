"""Pydantic schemas for the scheduler endpoints."""
from __future__ import annotations
from typing import Optional
from pydantic import BaseModel


class SweepOut(BaseModel):
    event_id: str
    action: str
    event_status: str
    skipped: Optional[str] = None
    committed_count: int
    settled: list[str] = []
    failed: list[str] = []
    unknown: list[str] = []


class DueEventOut(BaseModel):
    event_id: str
    slug: str
    action: str
    committed_count: int
    min_participants: int

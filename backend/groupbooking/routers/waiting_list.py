"""Waiting list API routes."""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from groupbooking.database import get_db
from groupbooking.schemas.waiting_list import WaitingListJoin, WaitingListOut
from groupbooking.services import waiting_list_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/join", response_model=WaitingListOut, status_code=status.HTTP_201_CREATED)
def join(payload: WaitingListJoin, db: Session = Depends(get_db)):
    """Queue a guest for a full event; they are contacted when a slot frees up."""
    return waiting_list_service.join_waiting_list(db=db, **payload.model_dump())

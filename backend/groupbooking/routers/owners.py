"""Owner (organizer) API routes."""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupbooking.database import get_db
from groupbooking.models.owner import Owner
from groupbooking.schemas.owner import OwnerCreate, OwnerOut
from groupbooking.services import errors

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=OwnerOut, status_code=status.HTTP_201_CREATED)
def create_owner(payload: OwnerCreate, db: Session = Depends(get_db)):
    """Register an organizer with their connected gateway account.

    Onboarding starts incomplete and is flipped by the ``account.updated`` webhook.
    """
    owner = Owner(
        name=payload.name.strip(),
        email=payload.email.strip().lower(),
        stripe_account_id=payload.stripe_account_id,
    )
    db.add(owner)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise errors.conflict("duplicate_account", "This payment account is already registered")
    db.refresh(owner)
    logger.info("Created owner %s (account %s)", owner.owner_id, owner.stripe_account_id)
    return owner


@router.get("/{owner_id}", response_model=OwnerOut)
def get_owner(owner_id: str, db: Session = Depends(get_db)):
    owner = db.query(Owner).filter(Owner.owner_id == owner_id).first()
    if not owner:
        raise errors.not_found("owner_not_found", "Owner not found")
    return owner

"""FastAPI application entry point."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from groupbooking.config import settings
from groupbooking.database import Base, engine

# Import routers
from groupbooking.routers import events, owners, payments, settlement, waiting_list, webhooks

# Import all models so Base.metadata knows about them
from groupbooking.models.owner import Owner                          # noqa: F401
from groupbooking.models.event import Event                          # noqa: F401
from groupbooking.models.payment import Payment                      # noqa: F401
from groupbooking.models.payment_transition import PaymentTransition  # noqa: F401
from groupbooking.models.waiting_list import WaitingListEntry        # noqa: F401

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(
    title="Group Booking",
    description="Group bookings with card holds captured once the minimum is reached",
    version="0.1.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(owners.router, prefix="/api/owners", tags=["Owners"])
app.include_router(events.router, prefix="/api/events", tags=["Events"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(settlement.router, prefix="/api/settlement", tags=["Settlement"])
app.include_router(waiting_list.router, prefix="/api/waiting-list", tags=["WaitingList"])


@app.on_event("startup")
def on_startup():
    """Create database tables on startup (for SQLite dev mode)."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)


@app.get("/api/health")
def health_check():
    return {"status": "ok"}

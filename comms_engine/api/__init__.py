"""API routes for the Comms Engine."""

from fastapi import APIRouter

from .messaging import router as messaging_router
from .notifications import router as notifications_router
from .queue import router as queue_router
from .reminders import router as reminders_router

# Main API router
api_router = APIRouter()

# Email queue and processor administration
api_router.include_router(queue_router)

# Direct SMS / WhatsApp
api_router.include_router(messaging_router)

# In-app notifications, preferences and live streams
api_router.include_router(notifications_router)

# Form reminder series
api_router.include_router(reminders_router)

__all__ = ["api_router"]

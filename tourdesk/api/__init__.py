"""API router package for the TourDesk service."""
from fastapi import APIRouter

from .routes import agents, bookings, companies, hotels, invoices, notifications, programs, public

router = APIRouter()
router.include_router(companies.router)
router.include_router(agents.router)
router.include_router(programs.router)
router.include_router(hotels.router)
router.include_router(bookings.router)
router.include_router(invoices.router)
router.include_router(notifications.router)
router.include_router(public.router)

__all__ = ["router"]

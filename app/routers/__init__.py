"""API routers for the PetCare backend."""
from fastapi import APIRouter

from . import donations, guardianships, health, payment_methods, psp, reconciliation, subscriptions


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(guardianships.router)
    api_router.include_router(subscriptions.router)
    api_router.include_router(donations.router)
    api_router.include_router(payment_methods.router)
    api_router.include_router(psp.router)
    api_router.include_router(reconciliation.router)
    return api_router

"""Subscription endpoints.

Sub-modules:
- lifecycle: Transitions (subscribe, confirm, plan changes, cancel, reactivate, suspend, retry)
- status: Status, premium check and plan catalog
- schemas: Request/response models
"""
from fastapi import APIRouter

from .lifecycle import router as lifecycle_router
from .status import router as status_router

# Create main router and include sub-routers
router = APIRouter()
router.include_router(lifecycle_router)
router.include_router(status_router)

__all__ = ["router"]

"""
Admin Panel Routers
===================

Admin endpoints for the affiliate program.
All routes are protected and require admin role verification.

Routers:
- affiliates: Affiliate review, program settings, payouts and reports

Access Levels:
- super_admin: Full access
- admin: Full access
- support: Read-only access
- viewer: Read-only access
"""

from fastapi import APIRouter

# Import sub-routers
from .affiliates import router as affiliates_router

# Create main admin router
router = APIRouter(prefix="/admin", tags=["admin"])

# Include all sub-routers
router.include_router(affiliates_router)

__all__ = ["router"]

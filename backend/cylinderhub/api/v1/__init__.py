"""
API v1 package initialization.

Collects the role routers into a single router mounted under the v1 prefix.
"""

from fastapi import APIRouter

from cylinderhub.api.v1.admin import router as admin_router
from cylinderhub.api.v1.buyer import router as buyer_router
from cylinderhub.api.v1.driver import router as driver_router
from cylinderhub.api.v1.orders import router as orders_router
from cylinderhub.api.v1.seller import router as seller_router

api_router = APIRouter()
api_router.include_router(orders_router)
api_router.include_router(buyer_router)
api_router.include_router(driver_router)
api_router.include_router(seller_router)
api_router.include_router(admin_router)

__all__ = ["api_router"]

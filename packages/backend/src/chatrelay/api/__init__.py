"""API route aggregation.

All routers registered here get mounted in main.py.
"""

from fastapi import APIRouter

from chatrelay.api.health import router as health_router
from chatrelay.api.messages import router as messages_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(messages_router, tags=["messages"])

"""Central API router that aggregates all route modules."""

from fastapi import APIRouter

from cvchat.api.chat import router as chat_router
from cvchat.api.health import router as health_router
from cvchat.api.usage import router as usage_router

api_router = APIRouter()

api_router.include_router(health_router, prefix="/health", tags=["health"])
api_router.include_router(chat_router, prefix="/chat", tags=["chat"])
api_router.include_router(usage_router, prefix="/usage", tags=["usage"])

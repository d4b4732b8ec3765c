"""FastAPI application entry point with lifespan management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cvchat.api.chat import websocket_chat
from cvchat.api.router import api_router
from cvchat.config import settings
from cvchat.dependencies import get_quota_manager, reset_quota_state

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    logger.info("Starting CV Chat backend...")

    # Quota state lives only in this process and is dropped at shutdown
    quota_manager = get_quota_manager()
    logger.info(
        "Free chat quota: %d messages / %d tokens per day, %d sessions max",
        quota_manager.limits.daily_messages,
        quota_manager.limits.daily_tokens,
        quota_manager.limits.max_sessions,
    )

    yield

    reset_quota_state()
    logger.info("CV Chat backend shut down cleanly")


app = FastAPI(
    title="CV Chat API",
    description="Free-tier AI assistant for CVs and cover letters",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url,
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-Id", "X-Tokens-Remaining", "X-Messages-Remaining"],
)

# Mount API routes
app.include_router(api_router, prefix="/api")

# Mount WebSocket endpoint (outside /api prefix to match frontend expectations)
app.websocket("/ws/chat")(websocket_chat)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

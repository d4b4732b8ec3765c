"""Health check endpoint for infrastructure monitoring."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from cvchat.agent.provider import ReplyProvider
from cvchat.dependencies import get_quota_manager, get_reply_provider
from cvchat.quota.manager import QuotaManager

logger = logging.getLogger(__name__)
router = APIRouter()


def _check_quota(quota: QuotaManager) -> dict[str, Any]:
    """Report how full the in-memory session store is."""
    stats = quota.get_stats()
    capacity = quota.limits.max_sessions
    return {
        "status": "healthy",
        "active_sessions": stats.active_sessions,
        "capacity": capacity,
    }


def _check_llm(provider: ReplyProvider) -> dict[str, Any]:
    """Report whether the reply provider has credentials."""
    if getattr(provider, "is_configured", True):
        return {"status": "healthy", "model": getattr(provider, "model", None)}
    logger.warning("LLM health check failed: no API key configured")
    return {"status": "unhealthy", "error": "API key not configured"}


@router.get("")
async def health_check(
    quota: QuotaManager = Depends(get_quota_manager),
    provider: ReplyProvider = Depends(get_reply_provider),
) -> dict[str, Any]:
    """Return aggregate health of the chat backend."""
    services = {
        "quota": _check_quota(quota),
        "llm": _check_llm(provider),
    }

    overall = (
        "healthy"
        if all(s["status"] == "healthy" for s in services.values())
        else "degraded"
    )

    return {
        "status": overall,
        "services": services,
    }

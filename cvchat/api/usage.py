"""Free-tier usage endpoints backing the remaining-quota widget."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from cvchat.dependencies import get_quota_manager
from cvchat.models.quota import FreeUsageResponse, QuotaStats
from cvchat.quota.manager import QuotaManager

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/sessions", response_model=FreeUsageResponse, status_code=201)
async def create_session(
    quota: QuotaManager = Depends(get_quota_manager),
) -> FreeUsageResponse:
    """Provision a new anonymous session and return its (full) allowance."""
    session = quota.create_session()
    logger.info("Issued free chat session %s", session.session_id)
    return quota.free_usage_response(session.session_id)


@router.get("/stats", response_model=QuotaStats)
async def usage_stats(
    quota: QuotaManager = Depends(get_quota_manager),
) -> QuotaStats:
    """Aggregate usage across every tracked session."""
    return quota.get_stats()


@router.get("/{session_id}", response_model=FreeUsageResponse)
async def get_usage(
    session_id: str,
    quota: QuotaManager = Depends(get_quota_manager),
) -> FreeUsageResponse:
    """Return today's usage for a session.

    Unknown or expired sessions report a full allowance; nothing is created.
    """
    return quota.free_usage_response(session_id)

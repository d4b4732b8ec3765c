"""Models for anonymous free-tier chat quota accounting."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

LimitKind = Literal["messages", "tokens"]


class QuotaLimits(BaseModel):
    """Daily budgets and store bounds for anonymous sessions."""

    model_config = {"frozen": True}

    daily_tokens: int = Field(default=5000, ge=0)
    daily_messages: int = Field(default=20, ge=0)
    session_timeout_seconds: float = Field(default=3600.0, gt=0)
    max_sessions: int = Field(default=100, ge=1)


class QuotaSession(BaseModel):
    """Usage counters tracked for one anonymous visitor.

    ``last_activity`` is a monotonic clock reading (seconds) used for idle
    expiry, while ``daily_reset_anchor`` is wall time in the accounting
    timezone used for calendar-day rollover.
    """

    session_id: str
    tokens_used: int = 0
    messages_used: int = 0
    last_activity: float
    daily_reset_anchor: datetime


class QuotaDecision(BaseModel):
    """Outcome of an admission check."""

    allowed: bool
    remaining_tokens: int
    remaining_messages: int
    limit_reached: Optional[LimitKind] = None
    reset_time: datetime


class UsageInfo(BaseModel):
    """Read-only usage snapshot for a session."""

    tokens_used: int
    messages_used: int
    tokens_remaining: int
    messages_remaining: int
    reset_time: datetime


class QuotaStats(BaseModel):
    """Aggregate figures across every tracked session."""

    active_sessions: int
    total_tokens_used: int
    total_messages: int


class FreeUsageResponse(BaseModel):
    """Usage payload rendered by the remaining-quota UI element."""

    session_id: str
    is_free_user: bool = True
    usage: UsageInfo
    limits: QuotaLimits
    upgrade_message: Optional[str] = None

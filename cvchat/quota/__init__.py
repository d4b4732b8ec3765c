"""Quota module - anonymous free-tier chat budgets with lazy expiry."""

from .clock import Clock, SystemClock
from .manager import QuotaManager, estimate_tokens
from .store import SessionStore

__all__ = ["Clock", "QuotaManager", "SessionStore", "SystemClock", "estimate_tokens"]

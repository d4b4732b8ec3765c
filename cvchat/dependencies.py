"""Dependency injection providers for FastAPI."""

import logging

from cvchat.agent.provider import GeminiReplyProvider, ReplyProvider
from cvchat.config import settings
from cvchat.quota.clock import SystemClock
from cvchat.quota.manager import QuotaManager
from cvchat.quota.store import SessionStore

logger = logging.getLogger(__name__)

# Process-wide instances, created at startup and released at shutdown
_session_store: SessionStore | None = None
_quota_manager: QuotaManager | None = None
_reply_provider: ReplyProvider | None = None


def get_session_store() -> SessionStore:
    """Return the SessionStore owned by this process."""
    global _session_store
    if _session_store is None:
        _session_store = SessionStore()
    return _session_store


def get_quota_manager() -> QuotaManager:
    """Return singleton QuotaManager instance."""
    global _quota_manager
    if _quota_manager is None:
        _quota_manager = QuotaManager(
            get_session_store(),
            settings.quota_limits(),
            SystemClock(settings.accounting_timezone),
        )
    return _quota_manager


def get_reply_provider() -> ReplyProvider:
    """Return singleton reply provider instance."""
    global _reply_provider
    if _reply_provider is None:
        _reply_provider = GeminiReplyProvider(
            api_key=settings.google_api_key,
            model=settings.gemini_model,
        )
    return _reply_provider


def reset_quota_state() -> None:
    """Drop all tracked quota sessions and forget the manager."""
    global _session_store, _quota_manager
    if _session_store is not None:
        logger.info("Releasing %d quota sessions", len(_session_store))
        _session_store.clear()
    _session_store = None
    _quota_manager = None

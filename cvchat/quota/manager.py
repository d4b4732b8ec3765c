"""Admission control and usage accounting for anonymous free-tier chat.

Visitors are identified only by an opaque session id that the browser keeps
in local storage. For each id the manager tracks how many messages and how
many (estimated) tokens were consumed today and decides whether another chat
turn may start.

State handling is lazy:

- **Idle expiry**: a session untouched for longer than the idle timeout is
  treated as absent the next time it is looked up.
- **Daily reset**: counters drop back to zero the first time a session is
  read on a new calendar day of the accounting timezone.
- **Capacity**: before a new session is created in a full store, idle
  sessions are swept; if the store is still full the least-recently-active
  sessions make room. Under sustained abuse this may evict legitimate
  sessions early, which is accepted for an anti-abuse (not billing) meter.

Lifecycle:
    manager = QuotaManager(SessionStore(), settings.quota_limits(), clock)
    decision = manager.check_and_reserve(session_id, estimate_tokens(text))
    ...
    manager.record_usage(session_id, estimate_tokens(reply))
"""

from __future__ import annotations

import logging
import math
import secrets
import string
import threading

from cvchat.models.quota import (
    FreeUsageResponse,
    QuotaDecision,
    QuotaLimits,
    QuotaSession,
    QuotaStats,
    UsageInfo,
)
from cvchat.quota.clock import Clock, SystemClock, next_midnight, same_day
from cvchat.quota.store import SessionStore

logger = logging.getLogger(__name__)

# Rough estimation: ~4 characters per token for English/Portuguese text
CHARS_PER_TOKEN = 4
# Below this many remaining messages the usage payload nudges towards Pro
UPGRADE_NUDGE_THRESHOLD = 3
UPGRADE_MESSAGE = (
    "Your free messages are running out! "
    "Upgrade to Pro (£5.99) for unlimited chat."
)

_SESSION_ID_ALPHABET = string.digits + string.ascii_lowercase


def estimate_tokens(text: str) -> int:
    """Approximate the token cost of ``text`` from its character length."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class QuotaManager:
    """Owns every anonymous session and decides whether a chat turn is admitted.

    All public operations hold a single re-entrant lock. They only touch
    in-memory state, so the critical sections stay short, and serialising
    them globally rules out lost updates and duplicate session creation
    when requests for the same visitor overlap.
    """

    def __init__(
        self,
        store: SessionStore,
        limits: QuotaLimits | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._limits = limits or QuotaLimits()
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()

    @property
    def limits(self) -> QuotaLimits:
        return self._limits

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def estimate_cost(self, text: str) -> int:
        return estimate_tokens(text)

    def generate_session_id(self) -> str:
        """Return a fresh id of the form ``free_<epoch-ms>_<random>``."""
        millis = int(self._clock.now().timestamp() * 1000)
        suffix = "".join(secrets.choice(_SESSION_ID_ALPHABET) for _ in range(9))
        return f"free_{millis}_{suffix}"

    def get_session(self, session_id: str) -> QuotaSession | None:
        """Look up a live session, applying idle expiry and the daily reset."""
        with self._lock:
            return self._lookup(session_id)

    def create_session(self, session_id: str | None = None) -> QuotaSession:
        """Provision a session with zeroed counters, making room if needed.

        A live session with the requested id is returned as is.
        """
        with self._lock:
            if session_id is not None:
                existing = self._lookup(session_id)
                if existing is not None:
                    return existing
            return self._create(session_id or self.generate_session_id())

    def evict_idle(self) -> int:
        """Remove every session idle beyond the timeout. Returns how many went."""
        with self._lock:
            cutoff = self._clock.monotonic() - self._limits.session_timeout_seconds
            removed = 0
            for session_id, session in self._store.items():
                if session.last_activity < cutoff:
                    self._store.delete(session_id)
                    removed += 1
            if removed:
                logger.info("Evicted %d idle quota sessions", removed)
            return removed

    # ------------------------------------------------------------------
    # Admission & accounting
    # ------------------------------------------------------------------

    def check_and_reserve(
        self,
        session_id: str,
        requested_tokens: int,
        *,
        commit: bool = True,
    ) -> QuotaDecision:
        """Decide whether a turn costing ``requested_tokens`` may start.

        An admitted request is committed immediately (one message plus the
        requested tokens), so the remaining figures in the decision already
        account for it. Pass ``commit=False`` to check feasibility without
        consuming anything. A rejected request never changes the session.

        Args:
            session_id: Opaque visitor id; unseen ids are provisioned.
            requested_tokens: Estimated cost of the prospective user message.
            commit: Whether an admitted request is charged to the session.

        Returns:
            A ``QuotaDecision``. When rejected, ``limit_reached`` names the
            exhausted budget ("messages" wins when both are exhausted).
        """
        requested = max(0, int(requested_tokens))

        with self._lock:
            session = self._lookup(session_id)
            if session is None:
                session = self._create(session_id)

            tokens_remaining = self._limits.daily_tokens - session.tokens_used
            messages_remaining = self._limits.daily_messages - session.messages_used
            allowed = tokens_remaining >= requested and messages_remaining > 0

            limit_reached = None
            if not allowed:
                limit_reached = "messages" if messages_remaining <= 0 else "tokens"
                logger.info(
                    "Quota denied for session %s: %s limit reached "
                    "(tokens_used=%d, messages_used=%d, requested=%d)",
                    session_id,
                    limit_reached,
                    session.tokens_used,
                    session.messages_used,
                    requested,
                )
            elif commit:
                session.tokens_used += requested
                session.messages_used += 1
                session.last_activity = self._clock.monotonic()
                tokens_remaining -= requested
                messages_remaining -= 1

            return QuotaDecision(
                allowed=allowed,
                remaining_tokens=max(0, tokens_remaining),
                remaining_messages=max(0, messages_remaining),
                limit_reached=limit_reached,
                reset_time=next_midnight(self._clock.now()),
            )

    def record_usage(self, session_id: str, tokens: int) -> UsageInfo:
        """Charge the cost of a finished reply without counting another message.

        The charge is capped at the remaining daily token budget. Absent or
        expired sessions are left alone.
        """
        with self._lock:
            session = self._lookup(session_id)
            if session is not None:
                headroom = self._limits.daily_tokens - session.tokens_used
                session.tokens_used += max(0, min(int(tokens), headroom))
                session.last_activity = self._clock.monotonic()
            return self._usage(session)

    def get_usage_info(self, session_id: str) -> UsageInfo:
        """Return a read-only usage snapshot.

        An unknown session reports full budgets and is not created.
        """
        with self._lock:
            return self._usage(self._lookup(session_id))

    def get_stats(self) -> QuotaStats:
        with self._lock:
            total_tokens = 0
            total_messages = 0
            for _, session in self._store.items():
                total_tokens += session.tokens_used
                total_messages += session.messages_used
            return QuotaStats(
                active_sessions=len(self._store),
                total_tokens_used=total_tokens,
                total_messages=total_messages,
            )

    def free_usage_response(self, session_id: str) -> FreeUsageResponse:
        """Usage payload for the free-tier quota widget."""
        usage = self.get_usage_info(session_id)
        upgrade_message = None
        if usage.messages_remaining <= UPGRADE_NUDGE_THRESHOLD:
            upgrade_message = UPGRADE_MESSAGE
        return FreeUsageResponse(
            session_id=session_id,
            usage=usage,
            limits=self._limits,
            upgrade_message=upgrade_message,
        )

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _lookup(self, session_id: str) -> QuotaSession | None:
        session = self._store.get(session_id)
        if session is None:
            return None

        idle_for = self._clock.monotonic() - session.last_activity
        if idle_for > self._limits.session_timeout_seconds:
            self._store.delete(session_id)
            logger.debug("Quota session %s expired after %.0fs idle", session_id, idle_for)
            return None

        now = self._clock.now()
        if not same_day(session.daily_reset_anchor, now):
            session.tokens_used = 0
            session.messages_used = 0
            session.daily_reset_anchor = now
            logger.debug("Daily quota reset for session %s", session_id)

        return session

    def _create(self, session_id: str) -> QuotaSession:
        if session_id not in self._store and len(self._store) >= self._limits.max_sessions:
            self.evict_idle()
            while len(self._store) >= self._limits.max_sessions:
                self._evict_least_recent()

        session = QuotaSession(
            session_id=session_id,
            last_activity=self._clock.monotonic(),
            daily_reset_anchor=self._clock.now(),
        )
        self._store.put(session)
        logger.debug(
            "Created quota session %s (%d tracked)", session_id, len(self._store)
        )
        return session

    def _evict_least_recent(self) -> None:
        victim_id, _ = min(self._store.items(), key=lambda item: item[1].last_activity)
        self._store.delete(victim_id)
        logger.warning(
            "Quota store at capacity (%d); evicted least-recently-active session %s",
            self._limits.max_sessions,
            victim_id,
        )

    def _usage(self, session: QuotaSession | None) -> UsageInfo:
        tokens_used = session.tokens_used if session else 0
        messages_used = session.messages_used if session else 0
        return UsageInfo(
            tokens_used=tokens_used,
            messages_used=messages_used,
            tokens_remaining=max(0, self._limits.daily_tokens - tokens_used),
            messages_remaining=max(0, self._limits.daily_messages - messages_used),
            reset_time=next_midnight(self._clock.now()),
        )

"""Tests for free-tier quota admission and accounting."""

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from cvchat.models.quota import QuotaLimits
from cvchat.quota.manager import UPGRADE_MESSAGE, QuotaManager, estimate_tokens
from cvchat.quota.store import SessionStore

LONDON = ZoneInfo("Europe/London")


class TestEstimateTokens:
    def test_short_text(self) -> None:
        assert estimate_tokens("hi") == 1

    def test_empty_text_costs_nothing(self) -> None:
        assert estimate_tokens("") == 0

    def test_rounds_up_per_four_characters(self) -> None:
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_monotonic_in_length(self) -> None:
        costs = [estimate_tokens("x" * n) for n in range(200)]
        assert costs == sorted(costs)
        assert min(costs) >= 0


class TestAdmission:
    def test_message_budget_scenario(self, manager: QuotaManager) -> None:
        """2 messages / 50 tokens: the third turn is refused on message count."""
        cost = estimate_tokens("hi")

        first = manager.check_and_reserve("s1", cost)
        assert first.allowed
        assert (first.remaining_tokens, first.remaining_messages) == (49, 1)

        second = manager.check_and_reserve("s1", cost)
        assert second.allowed
        assert (second.remaining_tokens, second.remaining_messages) == (48, 0)

        third = manager.check_and_reserve("s1", cost)
        assert not third.allowed
        assert third.limit_reached == "messages"
        assert third.remaining_tokens == 48
        assert third.remaining_messages == 0

    def test_token_budget_exhaustion_is_reported(self, manager: QuotaManager) -> None:
        decision = manager.check_and_reserve("s1", 51)

        assert not decision.allowed
        assert decision.limit_reached == "tokens"
        assert decision.remaining_tokens == 50
        assert decision.remaining_messages == 2

    def test_exact_remaining_tokens_is_admitted(self, manager: QuotaManager) -> None:
        decision = manager.check_and_reserve("s1", 50)

        assert decision.allowed
        assert decision.remaining_tokens == 0

    def test_rejection_does_not_consume(self, manager: QuotaManager) -> None:
        manager.check_and_reserve("s1", 40)
        manager.check_and_reserve("s1", 20)

        usage = manager.get_usage_info("s1")
        assert usage.tokens_used == 40
        assert usage.messages_used == 1

    def test_check_without_commit(self, manager: QuotaManager) -> None:
        decision = manager.check_and_reserve("s1", 10, commit=False)

        assert decision.allowed
        assert decision.remaining_tokens == 50
        assert manager.get_usage_info("s1").messages_used == 0

    def test_negative_request_counts_as_zero(self, manager: QuotaManager) -> None:
        decision = manager.check_and_reserve("s1", -5)

        assert decision.allowed
        assert manager.get_usage_info("s1").tokens_used == 0

    def test_unseen_session_is_provisioned(
        self, manager: QuotaManager, store: SessionStore
    ) -> None:
        manager.check_and_reserve("new-visitor", 1)
        assert "new-visitor" in store

    def test_budgets_hold_after_any_sequence(self, clock) -> None:
        limits = QuotaLimits(daily_tokens=100, daily_messages=10)
        manager = QuotaManager(SessionStore(), limits, clock)

        for requested in [7, 30, 0, 64, 12, 1, 99, 3, 25, 8, 40, 2, 2, 2]:
            manager.check_and_reserve("s1", requested)
            usage = manager.get_usage_info("s1")
            assert usage.tokens_used <= limits.daily_tokens
            assert usage.messages_used <= limits.daily_messages

    def test_concurrent_requests_never_overspend(self, clock) -> None:
        limits = QuotaLimits(daily_tokens=10_000, daily_messages=50)
        manager = QuotaManager(SessionStore(), limits, clock)

        with ThreadPoolExecutor(max_workers=8) as pool:
            decisions = list(pool.map(lambda _: manager.check_and_reserve("s1", 3), range(200)))

        assert sum(d.allowed for d in decisions) == 50
        assert manager.get_usage_info("s1").messages_used == 50
        assert manager.get_usage_info("s1").tokens_used == 150


class TestUsageInfo:
    def test_unknown_session_reports_full_budget(
        self, manager: QuotaManager, store: SessionStore
    ) -> None:
        usage = manager.get_usage_info("nobody")

        assert usage.tokens_remaining == 50
        assert usage.messages_remaining == 2
        assert len(store) == 0

    def test_repeated_reads_are_identical(self, manager: QuotaManager) -> None:
        manager.check_and_reserve("s1", 12)
        assert manager.get_usage_info("s1") == manager.get_usage_info("s1")

    def test_reset_time_is_next_local_midnight(self, manager: QuotaManager) -> None:
        usage = manager.get_usage_info("s1")
        assert usage.reset_time == datetime(2026, 10, 20, tzinfo=LONDON)

    def test_record_usage_adds_reply_cost_only(self, manager: QuotaManager) -> None:
        manager.check_and_reserve("s1", 5)

        usage = manager.record_usage("s1", 20)

        assert usage.tokens_used == 25
        assert usage.messages_used == 1

    def test_record_usage_is_capped_at_budget(self, manager: QuotaManager) -> None:
        manager.check_and_reserve("s1", 45)

        usage = manager.record_usage("s1", 1_000)

        assert usage.tokens_used == 50
        assert usage.tokens_remaining == 0

    def test_record_usage_ignores_unknown_session(
        self, manager: QuotaManager, store: SessionStore
    ) -> None:
        usage = manager.record_usage("ghost", 10)

        assert usage.tokens_used == 0
        assert "ghost" not in store

    def test_stats_aggregate_all_sessions(self, manager: QuotaManager) -> None:
        manager.check_and_reserve("a", 10)
        manager.check_and_reserve("b", 4)
        manager.check_and_reserve("b", 1)

        stats = manager.get_stats()

        assert stats.active_sessions == 2
        assert stats.total_tokens_used == 15
        assert stats.total_messages == 3

    def test_upgrade_nudge_when_running_low(self, manager: QuotaManager) -> None:
        assert manager.free_usage_response("s1").upgrade_message == UPGRADE_MESSAGE

    def test_no_upgrade_nudge_with_plenty_left(self, clock) -> None:
        manager = QuotaManager(SessionStore(), QuotaLimits(), clock)
        response = manager.free_usage_response("s1")

        assert response.upgrade_message is None
        assert response.is_free_user
        assert response.limits.daily_messages == 20


class TestDailyReset:
    def test_usage_read_resets_yesterdays_counters(
        self, manager: QuotaManager, store: SessionStore, clock
    ) -> None:
        manager.check_and_reserve("s1", 50)
        store.get("s1").daily_reset_anchor = clock.now() - timedelta(days=1)

        usage = manager.get_usage_info("s1")

        assert usage.tokens_used == 0
        assert usage.messages_used == 0
        assert store.get("s1").daily_reset_anchor == clock.now()

    def test_admission_sees_reset_before_deciding(
        self, manager: QuotaManager, store: SessionStore, clock
    ) -> None:
        manager.check_and_reserve("s1", 50)
        assert not manager.check_and_reserve("s1", 1).allowed
        store.get("s1").daily_reset_anchor = clock.now() - timedelta(days=1)

        decision = manager.check_and_reserve("s1", 1)

        assert decision.allowed
        assert decision.remaining_tokens == 49

    def test_rollover_at_local_midnight(self, clock_at) -> None:
        clock = clock_at(datetime(2026, 10, 19, 23, 50, tzinfo=LONDON))
        limits = QuotaLimits(daily_tokens=50, daily_messages=1, session_timeout_seconds=7200)
        manager = QuotaManager(SessionStore(), limits, clock)
        manager.check_and_reserve("s1", 10)

        clock.advance(5 * 60)
        assert not manager.check_and_reserve("s1", 1).allowed

        clock.advance(10 * 60)
        assert manager.check_and_reserve("s1", 1).allowed


class TestExpiryAndEviction:
    def test_idle_session_is_absent_on_lookup(
        self, manager: QuotaManager, store: SessionStore, clock
    ) -> None:
        manager.check_and_reserve("s1", 10)
        clock.advance(3601)

        assert manager.get_session("s1") is None
        assert "s1" not in store

    def test_session_at_exact_timeout_is_kept(
        self, manager: QuotaManager, clock
    ) -> None:
        manager.check_and_reserve("s1", 10)
        clock.advance(3600)

        assert manager.get_session("s1") is not None

    def test_expired_session_is_recreated_fresh(
        self, manager: QuotaManager, clock
    ) -> None:
        manager.check_and_reserve("s1", 30)
        manager.check_and_reserve("s1", 10)
        clock.advance(3601)

        decision = manager.check_and_reserve("s1", 1)

        assert decision.allowed
        assert (decision.remaining_tokens, decision.remaining_messages) == (49, 1)

    def test_idle_session_evicted_when_store_full(
        self, manager: QuotaManager, store: SessionStore, clock
    ) -> None:
        manager.check_and_reserve("s0", 1)
        clock.advance(3601)
        for i in range(1, 4):
            manager.check_and_reserve(f"s{i}", 1)

        assert "s0" not in store
        assert manager.get_session("s0") is None
        assert len(store) <= manager.limits.max_sessions

    def test_least_recent_session_makes_room(
        self, manager: QuotaManager, store: SessionStore, clock
    ) -> None:
        for i in range(3):
            manager.check_and_reserve(f"s{i}", 1)
            clock.advance(1)

        manager.check_and_reserve("s3", 1)

        assert len(store) == 3
        assert "s0" not in store
        assert {"s1", "s2", "s3"} <= {sid for sid, _ in store.items()}

    def test_evict_idle_returns_count(
        self, manager: QuotaManager, store: SessionStore, clock
    ) -> None:
        manager.check_and_reserve("old-1", 1)
        manager.check_and_reserve("old-2", 1)
        clock.advance(3601)
        manager.check_and_reserve("fresh", 1)

        assert manager.evict_idle() == 2
        assert len(store) == 1


class TestSessionIds:
    def test_generated_id_format(self, manager: QuotaManager) -> None:
        session_id = manager.generate_session_id()
        assert re.fullmatch(r"free_\d+_[0-9a-z]{9}", session_id)

    def test_generated_ids_are_unique(self, manager: QuotaManager) -> None:
        ids = {manager.generate_session_id() for _ in range(100)}
        assert len(ids) == 100

    def test_create_session_without_id(self, manager: QuotaManager, store: SessionStore) -> None:
        session = manager.create_session()

        assert session.session_id in store
        assert session.tokens_used == 0

    def test_create_session_keeps_live_session(self, manager: QuotaManager) -> None:
        manager.check_and_reserve("s1", 10)

        session = manager.create_session("s1")

        assert session.messages_used == 1
        assert manager.get_usage_info("s1").tokens_used == 10


@pytest.mark.parametrize("requested", [0, 1, 49, 50])
def test_fresh_session_admits_within_budget(manager: QuotaManager, requested: int) -> None:
    assert manager.check_and_reserve("s1", requested).allowed

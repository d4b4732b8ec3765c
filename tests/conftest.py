"""Shared test fixtures for the CV Chat backend."""

from collections.abc import AsyncGenerator, Callable, Generator, Sequence
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from cvchat.dependencies import get_quota_manager, get_reply_provider
from cvchat.main import app
from cvchat.models.messages import ChatTurn
from cvchat.models.quota import QuotaLimits
from cvchat.quota.manager import QuotaManager
from cvchat.quota.store import SessionStore

LONDON = ZoneInfo("Europe/London")


class FakeClock:
    """Deterministic clock; ``advance`` moves both time sources together."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2026, 10, 19, 12, 0, tzinfo=LONDON)
        self._monotonic = 1_000.0

    def monotonic(self) -> float:
        return self._monotonic

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._now += timedelta(seconds=seconds)


class FakeReplyProvider:
    """Streams canned fragments, optionally failing afterwards."""

    is_configured = True
    model = "fake-model"

    def __init__(
        self,
        fragments: Sequence[str] = ("Hel", "lo, ", "world"),
        error: Optional[Exception] = None,
    ) -> None:
        self.fragments = list(fragments)
        self.error = error
        self.calls: list[list[ChatTurn]] = []

    async def stream_reply(self, history, *, language: str = "en"):
        self.calls.append(list(history))
        for fragment in self.fragments:
            yield fragment
        if self.error is not None:
            raise self.error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clock_at() -> Callable[[datetime], FakeClock]:
    """Factory for clocks starting at a chosen instant."""
    return FakeClock


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def limits() -> QuotaLimits:
    return QuotaLimits(
        daily_tokens=50,
        daily_messages=2,
        session_timeout_seconds=3600,
        max_sessions=3,
    )


@pytest.fixture
def manager(store: SessionStore, limits: QuotaLimits, clock: FakeClock) -> QuotaManager:
    return QuotaManager(store, limits, clock)


@pytest.fixture
def provider() -> FakeReplyProvider:
    return FakeReplyProvider()


@pytest.fixture
def override_dependencies(
    manager: QuotaManager, provider: FakeReplyProvider
) -> Generator[None, None, None]:
    """Point the app at the isolated quota manager and fake provider."""
    app.dependency_overrides[get_quota_manager] = lambda: manager
    app.dependency_overrides[get_reply_provider] = lambda: provider
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(override_dependencies: None) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

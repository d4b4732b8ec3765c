"""Simple in-memory store for anonymous quota sessions."""

from __future__ import annotations

from typing import Dict, Iterator

from cvchat.models.quota import QuotaSession


class SessionStore:
    """Own the quota sessions of a single process.

    Not thread-safe on its own; ``QuotaManager`` serialises every access.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, QuotaSession] = {}

    def get(self, session_id: str) -> QuotaSession | None:
        return self._sessions.get(session_id)

    def put(self, session: QuotaSession) -> None:
        self._sessions[session.session_id] = session

    def delete(self, session_id: str) -> bool:
        """Remove a session, returning whether it was present."""
        return self._sessions.pop(session_id, None) is not None

    def items(self) -> Iterator[tuple[str, QuotaSession]]:
        """Iterate over a copy so callers may delete while scanning."""
        return iter(list(self._sessions.items()))

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

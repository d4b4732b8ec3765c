"""Async HTTP client for the free-tier chat API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

import httpx

from cvchat.chat.assembler import StreamingReplyAssembler, Transcript
from cvchat.models.messages import STREAM_ERROR_MARKER, TranscriptSnapshot
from cvchat.models.quota import FreeUsageResponse, UsageInfo

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000"
_ERROR_MARKER = STREAM_ERROR_MARKER.encode("ascii")


class ChatClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(ChatClientError):
    """The server refused the turn because a free-tier limit was reached."""

    def __init__(self, detail: str, limit_reached: Optional[str], usage: Optional[UsageInfo]):
        super().__init__(detail, status_code=429)
        self.detail = detail
        self.limit_reached = limit_reached
        self.usage = usage


async def _raise(exc: BaseException) -> AsyncIterator[bytes]:
    raise exc
    yield b""  # pragma: no cover


class ChatClient:
    """Keeps a local transcript and streams replies into it.

    Usage:
        async with ChatClient("http://localhost:8000") as client:
            async for snapshot in client.send("Help me with my CV"):
                render(snapshot.messages)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        session_id: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ):
        self._base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.transcript = Transcript()
        self.last_assembler: Optional[StreamingReplyAssembler] = None
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/api",
            headers={"User-Agent": "cvchat-client/0.1.0"},
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def start_session(self) -> FreeUsageResponse:
        """Ask the server for a new anonymous session id."""
        resp = await self._client.post("/usage/sessions")
        if resp.status_code >= 400:
            raise ChatClientError(f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code)
        usage = FreeUsageResponse.model_validate(resp.json())
        self.session_id = usage.session_id
        return usage

    async def get_usage(self) -> FreeUsageResponse:
        if self.session_id is None:
            await self.start_session()
        resp = await self._client.get(f"/usage/{self.session_id}")
        if resp.status_code >= 400:
            raise ChatClientError(f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code)
        return FreeUsageResponse.model_validate(resp.json())

    async def send(
        self,
        text: str,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[TranscriptSnapshot]:
        """Send a user turn and yield transcript snapshots as the reply streams.

        Raises:
            QuotaExceededError: If the server rejects the turn. The transcript
                is left unchanged in that case.
        """
        content = text.strip()
        history = [
            {"role": m.role.value, "content": m.content} for m in self.transcript.history()
        ]
        history.append({"role": "user", "content": content})
        request = self._client.build_request(
            "POST", "/chat", json={"session_id": self.session_id, "messages": history}
        )

        response: Optional[httpx.Response] = None
        source: AsyncIterator[bytes]
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("Could not reach chat service: %s", exc)
            source = _raise(exc)
        else:
            if response.status_code == 429:
                await response.aread()
                await response.aclose()
                raise self._quota_error(response)
            self.session_id = response.headers.get("X-Session-Id", self.session_id)
            source = self._iter_response(response)

        # The response is closed here even if consume never starts the source
        try:
            self.transcript.add_user_message(content)
            assembler = StreamingReplyAssembler(self.transcript)
            self.last_assembler = assembler
            stream = assembler.consume(uuid4().hex, source, cancel_event=cancel_event)
            async with aclosing(stream) as snapshots:
                async for snapshot in snapshots:
                    yield snapshot
        finally:
            if response is not None:
                await response.aclose()

    async def _iter_response(self, response: httpx.Response) -> AsyncIterator[bytes]:
        if response.status_code >= 400:
            await response.aread()
            raise ChatClientError(
                f"HTTP {response.status_code}: {response.text[:200]}", response.status_code
            )
        async for chunk in response.aiter_bytes():
            head, marker, _ = chunk.partition(_ERROR_MARKER)
            if head:
                yield head
            if marker:
                raise ChatClientError("Reply stream interrupted by the server")

    @staticmethod
    def _quota_error(response: httpx.Response) -> QuotaExceededError:
        data = response.json()
        usage = data.get("usage")
        return QuotaExceededError(
            detail=data.get("detail", "Free chat limit reached"),
            limit_reached=data.get("limit_reached"),
            usage=UsageInfo.model_validate(usage) if usage else None,
        )

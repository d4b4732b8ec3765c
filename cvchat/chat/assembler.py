"""Fold a streamed assistant reply into an ordered chat transcript.

The user's own message is appended to the ``Transcript`` synchronously before
the reply starts. ``StreamingReplyAssembler.consume`` then drives one reply
stream and yields an immutable ``TranscriptSnapshot`` after every fragment it
applies, so a renderer always sees the assistant message grow in arrival
order.

Terminal states:

- **completed**: the source ended normally. No extra snapshot is yielded;
  the generator simply finishes.
- **failed**: the source raised. Text received so far is kept and a failure
  notice is appended, then one final snapshot is yielded. The error is
  exposed on ``assembler.error`` instead of propagating.
- **cancelled**: the caller set ``cancel_event`` or closed the generator.
  The source is closed and the transcript is not touched again.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import AsyncIterable, AsyncIterator, Optional, Union
from uuid import uuid4

from cvchat.models.messages import (
    MessageRole,
    StreamStatus,
    TranscriptMessage,
    TranscriptSnapshot,
)

logger = logging.getLogger(__name__)

Fragment = Union[str, bytes]

FAILURE_NOTICE = (
    "⚠️ Sorry, I could not connect to the AI service right now. "
    "Please try again shortly."
)


class TranscriptError(ValueError):
    """Raised when a caller breaks the transcript contract (e.g. reuses an id)."""


class Transcript:
    """Ordered user/assistant messages of one conversation."""

    def __init__(self) -> None:
        self._messages: list[TranscriptMessage] = []
        self._index: dict[str, int] = {}
        self._failed: set[str] = set()

    @property
    def messages(self) -> tuple[TranscriptMessage, ...]:
        return tuple(self._messages)

    def history(self) -> tuple[TranscriptMessage, ...]:
        """Messages to send back to the model; failed replies are left out."""
        return tuple(m for m in self._messages if m.id not in self._failed)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def __len__(self) -> int:
        return len(self._messages)

    def add_user_message(
        self, content: str, message_id: Optional[str] = None
    ) -> TranscriptMessage:
        message = TranscriptMessage(
            id=message_id or uuid4().hex,
            role=MessageRole.USER,
            content=content,
        )
        self._append(message)
        return message

    def get(self, message_id: str) -> Optional[TranscriptMessage]:
        position = self._index.get(message_id)
        return None if position is None else self._messages[position]

    def snapshot(self, turn_id: str, status: StreamStatus) -> TranscriptSnapshot:
        return TranscriptSnapshot(
            turn_id=turn_id, status=status, messages=tuple(self._messages)
        )

    def _append(self, message: TranscriptMessage) -> None:
        if message.id in self._index:
            raise TranscriptError(f"Message id already in transcript: {message.id}")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)

    def _extend(self, message_id: str, text: str) -> None:
        position = self._index[message_id]
        current = self._messages[position]
        self._messages[position] = current.model_copy(
            update={"content": current.content + text}
        )


class StreamingReplyAssembler:
    """Drives a single assistant reply into a ``Transcript``.

    One assembler handles exactly one turn; create a new one per reply.
    """

    def __init__(
        self,
        transcript: Transcript,
        *,
        failure_notice: str = FAILURE_NOTICE,
    ) -> None:
        self._transcript = transcript
        self._failure_notice = failure_notice
        self.status: StreamStatus = StreamStatus.PENDING
        self.error: Optional[BaseException] = None

    @property
    def transcript(self) -> Transcript:
        return self._transcript

    async def consume(
        self,
        turn_id: str,
        chunk_source: AsyncIterable[Fragment],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[TranscriptSnapshot]:
        """Consume ``chunk_source`` and yield a snapshot per applied fragment.

        Args:
            turn_id: Id for the assistant message; must be unused.
            chunk_source: Async iterable of text or UTF-8 byte fragments.
            cancel_event: Optional signal checked between fragments.

        Yields:
            Transcript snapshots in fragment arrival order.

        Raises:
            TranscriptError: If ``turn_id`` is already in the transcript or
                this assembler has already been used.
        """
        if self.status is not StreamStatus.PENDING:
            raise TranscriptError("Assembler already consumed a reply stream")
        if turn_id in self._transcript:
            raise TranscriptError(f"Turn id already in transcript: {turn_id}")

        self.status = StreamStatus.STREAMING
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        iterator = chunk_source.__aiter__()

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    break
                try:
                    fragment = await iterator.__anext__()
                except StopAsyncIteration:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        self._apply(turn_id, tail)
                        yield self._transcript.snapshot(turn_id, self.status)
                    self.status = StreamStatus.COMPLETED
                    return
                except Exception as exc:
                    logger.warning("Reply stream for turn %s failed: %s", turn_id, exc)
                    self.error = exc
                    self._apply_failure(turn_id)
                    self.status = StreamStatus.FAILED
                    yield self._transcript.snapshot(turn_id, self.status)
                    return

                if cancel_event is not None and cancel_event.is_set():
                    break

                if isinstance(fragment, bytes):
                    text = decoder.decode(fragment)
                else:
                    text = fragment
                if not text:
                    continue

                self._apply(turn_id, text)
                yield self._transcript.snapshot(turn_id, self.status)
        finally:
            if not self.status.is_terminal:
                self.status = StreamStatus.CANCELLED
                logger.debug("Reply stream for turn %s cancelled", turn_id)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None and self.status is not StreamStatus.COMPLETED:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("Error closing reply source for turn %s: %s", turn_id, exc)

    def _apply(self, turn_id: str, text: str) -> None:
        if turn_id in self._transcript:
            self._transcript._extend(turn_id, text)
        else:
            self._transcript._append(
                TranscriptMessage(id=turn_id, role=MessageRole.ASSISTANT, content=text)
            )

    def _apply_failure(self, turn_id: str) -> None:
        existing = self._transcript.get(turn_id)
        if existing is not None and existing.content:
            self._apply(turn_id, "\n\n" + self._failure_notice)
        else:
            self._apply(turn_id, self._failure_notice)
        self._transcript._failed.add(turn_id)

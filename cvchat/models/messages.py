"""Message models for chat requests and streamed transcripts."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# Written into a text/plain reply body when the model fails mid-stream. A
# single ASCII control byte never occurs inside a UTF-8 multibyte sequence.
STREAM_ERROR_MARKER = "\x1e"


class MessageRole(str, Enum):
    """Message sender role."""

    USER = "user"
    ASSISTANT = "assistant"


class MessageType(str, Enum):
    """WebSocket message type discriminator."""

    TEXT = "text"
    STREAM = "stream"
    STATUS = "status"
    QUOTA = "quota"
    ERROR = "error"


class StreamStatus(str, Enum):
    """Lifecycle of one streamed assistant reply."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StreamStatus.COMPLETED,
            StreamStatus.FAILED,
            StreamStatus.CANCELLED,
        )


class ChatTurn(BaseModel):
    """One role/content pair of the conversation history sent by the client."""

    role: MessageRole
    content: str


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``."""

    session_id: Optional[str] = None
    messages: list[ChatTurn] = Field(min_length=1)

    @property
    def last_user_message(self) -> Optional[str]:
        """The turn being asked about, or None if the history ends with a reply."""
        last = self.messages[-1]
        return last.content if last.role == MessageRole.USER else None


class TranscriptMessage(BaseModel):
    """A message as shown to the renderer."""

    model_config = {"frozen": True}

    id: str
    role: MessageRole
    content: str


class TranscriptSnapshot(BaseModel):
    """Immutable view of the transcript after one assembler step."""

    model_config = {"frozen": True}

    turn_id: str
    status: StreamStatus
    messages: tuple[TranscriptMessage, ...]

    @property
    def reply(self) -> Optional[TranscriptMessage]:
        """The assistant message for ``turn_id``, if it exists yet."""
        for message in self.messages:
            if message.id == self.turn_id:
                return message
        return None

"""Chat module - streamed reply assembly and the HTTP chat client."""

from .assembler import FAILURE_NOTICE, StreamingReplyAssembler, Transcript, TranscriptError

__all__ = ["FAILURE_NOTICE", "StreamingReplyAssembler", "Transcript", "TranscriptError"]

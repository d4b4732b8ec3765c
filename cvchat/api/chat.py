"""Chat endpoints: streamed HTTP replies and a WebSocket conversation.

Both gate every user turn through the free-tier ``QuotaManager`` before any
model call is made, then charge the estimated cost of the reply once it has
finished streaming.
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse

from cvchat.agent.provider import ReplyProvider
from cvchat.chat.assembler import FAILURE_NOTICE, StreamingReplyAssembler, Transcript
from cvchat.dependencies import get_quota_manager, get_reply_provider
from cvchat.models.messages import (
    STREAM_ERROR_MARKER,
    ChatRequest,
    ChatTurn,
    MessageType,
    StreamStatus,
)
from cvchat.models.quota import QuotaDecision
from cvchat.quota.manager import QuotaManager, estimate_tokens

logger = logging.getLogger(__name__)
router = APIRouter()


def describe_denial(decision: QuotaDecision, manager: QuotaManager) -> str:
    """User-facing text naming the exhausted limit and when it resets."""
    reset = decision.reset_time.strftime("%H:%M on %d %b")
    if decision.limit_reached == "messages":
        return (
            f"You have used all {manager.limits.daily_messages} free messages for today. "
            f"Your allowance resets at {reset}."
        )
    return (
        f"This message needs more tokens than you have left today "
        f"({decision.remaining_tokens} tokens, {decision.remaining_messages} messages "
        f"remaining). Your allowance resets at {reset}."
    )


def _denial_payload(
    session_id: str, decision: QuotaDecision, manager: QuotaManager
) -> dict[str, Any]:
    return {
        "detail": describe_denial(decision, manager),
        "limit_reached": decision.limit_reached,
        "session_id": session_id,
        "usage": manager.get_usage_info(session_id).model_dump(mode="json"),
    }


@router.post("")
async def chat(
    request: ChatRequest,
    quota: QuotaManager = Depends(get_quota_manager),
    provider: ReplyProvider = Depends(get_reply_provider),
) -> StreamingResponse:
    """Stream an assistant reply as ``text/plain`` fragments.

    Returns 429 with remaining-budget data when the free quota is exhausted.
    """
    session_id = request.session_id or quota.generate_session_id()
    user_text = request.last_user_message
    if user_text is None:
        raise HTTPException(status_code=400, detail="Last message must be from the user")
    if not user_text.strip():
        raise HTTPException(status_code=400, detail="Empty message")

    decision = quota.check_and_reserve(session_id, estimate_tokens(user_text))
    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content=_denial_payload(session_id, decision, quota),
            headers={"X-Session-Id": session_id},
        )

    async def reply_stream() -> AsyncIterator[str]:
        reply: list[str] = []
        try:
            async for fragment in provider.stream_reply(request.messages):
                reply.append(fragment)
                yield fragment
        except Exception:
            logger.exception("Reply stream failed for session %s", session_id)
            # The marker lets ChatClient report a failed turn; plain readers
            # still see the notice.
            yield f"{STREAM_ERROR_MARKER}\n\n{FAILURE_NOTICE}"
        finally:
            quota.record_usage(session_id, estimate_tokens("".join(reply)))

    return StreamingResponse(
        reply_stream(),
        media_type="text/plain; charset=utf-8",
        headers={
            "X-Session-Id": session_id,
            "X-Tokens-Remaining": str(decision.remaining_tokens),
            "X-Messages-Remaining": str(decision.remaining_messages),
        },
    )


async def websocket_chat(
    websocket: WebSocket,
    quota: QuotaManager = Depends(get_quota_manager),
    provider: ReplyProvider = Depends(get_reply_provider),
) -> None:
    """Handle WebSocket connections for real-time free-tier chat.

    Protocol:
        Client sends JSON: {"type": "text", "content": "..."}
        Server sends JSON: {"type": "status"|"stream"|"text"|"quota"|"error",
                            "content": "...", "session_id": "...", "timestamp": "..."}
        "quota" messages also carry a "usage" object and, on denial,
        "limit_reached".
    """
    session_id = websocket.query_params.get("session_id") or quota.generate_session_id()
    await websocket.accept()
    logger.info("WebSocket connected: session_id=%s", session_id)

    await _send_message(websocket, MessageType.STATUS, "Connected", session_id)

    transcript = Transcript()

    try:
        while True:
            ws_message = await websocket.receive()

            if ws_message.get("type") == "websocket.disconnect":
                logger.info("WebSocket disconnect received: session_id=%s", session_id)
                break

            raw = ws_message.get("text")
            if not raw:
                continue

            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await _send_message(websocket, MessageType.ERROR, "Invalid JSON", session_id)
                continue

            msg_type = data.get("type", "text")
            content = data.get("content", "")

            if msg_type == "text" and isinstance(content, str) and content.strip():
                await _handle_text_message(
                    websocket, quota, provider, transcript, session_id, content.strip()
                )
            else:
                await _send_message(
                    websocket, MessageType.ERROR, "Empty or unsupported message", session_id
                )

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected: session_id=%s", session_id)
    except Exception as exc:
        logger.exception("WebSocket error for session %s", session_id)
        try:
            await _send_message(websocket, MessageType.ERROR, str(exc), session_id)
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("Could not report error to closed socket %s", session_id)


async def _handle_text_message(
    websocket: WebSocket,
    quota: QuotaManager,
    provider: ReplyProvider,
    transcript: Transcript,
    session_id: str,
    content: str,
) -> None:
    """Quota-check one user turn and stream the reply through the assembler."""
    decision = quota.check_and_reserve(session_id, estimate_tokens(content))
    if not decision.allowed:
        payload = _denial_payload(session_id, decision, quota)
        await _send_message(
            websocket,
            MessageType.QUOTA,
            payload["detail"],
            session_id,
            usage=payload["usage"],
            limit_reached=decision.limit_reached,
        )
        return

    transcript.add_user_message(content)
    history = [ChatTurn(role=m.role, content=m.content) for m in transcript.history()]

    await _send_message(websocket, MessageType.STATUS, "Thinking...", session_id)

    turn_id = uuid4().hex
    assembler = StreamingReplyAssembler(transcript)
    sent = 0
    # Closing the generator on disconnect also closes the provider stream
    async with aclosing(assembler.consume(turn_id, provider.stream_reply(history))) as snapshots:
        async for snapshot in snapshots:
            if snapshot.status is StreamStatus.STREAMING:
                reply = snapshot.reply.content
                await _send_message(websocket, MessageType.STREAM, reply[sent:], session_id)
                sent = len(reply)

    final = transcript.get(turn_id)
    final_text = final.content if final else ""

    if assembler.status is StreamStatus.FAILED:
        await _send_message(websocket, MessageType.ERROR, final_text, session_id)
    elif final_text:
        await _send_message(websocket, MessageType.TEXT, final_text, session_id)

    # Only text the model actually produced is charged, not the failure notice
    usage = quota.record_usage(session_id, estimate_tokens(final_text[:sent]))
    await _send_message(
        websocket,
        MessageType.QUOTA,
        f"{usage.messages_remaining} messages / {usage.tokens_remaining} tokens remaining today",
        session_id,
        usage=usage.model_dump(mode="json"),
    )


async def _send_message(
    websocket: WebSocket,
    msg_type: MessageType,
    content: str,
    session_id: str,
    **extra: Any,
) -> None:
    """Send a structured JSON message over the WebSocket."""
    payload = {
        "type": msg_type.value,
        "content": content,
        "session_id": session_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }
    await websocket.send_json(payload)

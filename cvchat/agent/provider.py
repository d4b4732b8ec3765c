"""LLM reply providers that stream assistant text fragment by fragment."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from cvchat.agent.prompts import build_system_prompt
from cvchat.models.messages import ChatTurn, MessageRole

logger = logging.getLogger(__name__)


class ProviderUnavailableError(RuntimeError):
    """Raised when the reply provider cannot be used (e.g. no API key)."""


class ReplyProvider(Protocol):
    """Anything that can stream an assistant reply for a conversation."""

    def stream_reply(
        self, history: Sequence[ChatTurn], *, language: str = "en"
    ) -> AsyncIterator[str]: ...


def build_messages(history: Sequence[ChatTurn], language: str = "en") -> list[BaseMessage]:
    """Convert the client's role/content history into LangChain messages."""
    messages: list[BaseMessage] = [SystemMessage(content=build_system_prompt(language))]
    for turn in history:
        if turn.role == MessageRole.USER:
            messages.append(HumanMessage(content=turn.content))
        else:
            messages.append(AIMessage(content=turn.content))
    return messages


def _chunk_text(content: Any) -> str:
    # Gemini may return a list of content parts instead of a plain string
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


class GeminiReplyProvider:
    """Streams replies from Google Gemini through LangChain."""

    def __init__(self, api_key: str, model: str, temperature: float = 0.7) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._llm: ChatGoogleGenerativeAI | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def model(self) -> str:
        return self._model

    def _get_llm(self) -> ChatGoogleGenerativeAI:
        if not self._api_key:
            raise ProviderUnavailableError("GOOGLE_API_KEY is not configured")
        if self._llm is None:
            self._llm = ChatGoogleGenerativeAI(
                model=self._model,
                google_api_key=self._api_key,
                temperature=self._temperature,
            )
            logger.info("Gemini reply provider initialised with model=%s", self._model)
        return self._llm

    async def stream_reply(
        self, history: Sequence[ChatTurn], *, language: str = "en"
    ) -> AsyncIterator[str]:
        """Yield reply text fragments as the model produces them.

        Raises:
            ProviderUnavailableError: If no API key is configured.
        """
        llm = self._get_llm()
        messages = build_messages(history, language)

        async for chunk in llm.astream(messages):
            text = _chunk_text(chunk.content)
            if text:
                yield text

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from .events import MessageEvent
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Coday, an AI assistant working alongside a team in Slack. "
    "Answer concisely and format replies with Markdown."
)


class AssistantError(RuntimeError):
    pass


class Assistant(Protocol):
    async def respond(self, thread_id: str, history: Sequence[MessageEvent]) -> str: ...


def _to_chat_messages(
    system_prompt: str, history: Sequence[MessageEvent]
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for event in history:
        text = event.text_content
        if not text:
            continue
        message: dict[str, Any] = {"role": event.role, "content": text}
        if event.name:
            message["name"] = event.name
        messages.append(message)
    return messages


class OpenAIAssistant:
    def __init__(
        self,
        *,
        model: str,
        system_prompt: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_s: float = 120.0,
    ) -> None:
        self._model = model
        self._system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            timeout=timeout_s,
        )

    async def close(self) -> None:
        await self._client.close()

    async def respond(self, thread_id: str, history: Sequence[MessageEvent]) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=_to_chat_messages(self._system_prompt, history),
            )
        except OpenAIError as exc:
            logger.error(
                "openai.chat.error",
                thread_id=thread_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise AssistantError(str(exc).strip() or "assistant request failed") from exc
        if not response.choices:
            raise AssistantError("assistant returned no choices")
        content = response.choices[0].message.content
        return (content or "").strip()

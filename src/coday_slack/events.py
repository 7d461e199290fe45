"""Events emitted by an assistant thread.

``AssistantEvent`` is a closed union; consumers dispatch on ``kind``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union


def _now() -> float:
    return time.time()


@dataclass(frozen=True, slots=True)
class ThinkingEvent:
    timestamp: float = field(default_factory=_now)
    replayed: bool = False
    kind: Literal["thinking"] = "thinking"


@dataclass(frozen=True, slots=True)
class MessageEvent:
    role: Literal["user", "assistant"]
    content: str | tuple[dict[str, Any], ...]
    name: str | None = None
    timestamp: float = field(default_factory=_now)
    replayed: bool = False
    kind: Literal["message"] = "message"

    @property
    def text_content(self) -> str:
        if isinstance(self.content, str):
            return self.content.strip()
        parts = [
            str(part.get("content") or part.get("text") or "")
            for part in self.content
            if part.get("type") == "text"
        ]
        return "\n\n".join(part.strip() for part in parts if part.strip())


@dataclass(frozen=True, slots=True)
class AnswerEvent:
    answer: str
    parent_key: str | None = None
    timestamp: float = field(default_factory=_now)
    replayed: bool = False
    kind: Literal["answer"] = "answer"


@dataclass(frozen=True, slots=True)
class InviteEvent:
    invite: str
    timestamp: float = field(default_factory=_now)
    replayed: bool = False
    kind: Literal["invite"] = "invite"

    @property
    def key(self) -> str:
        return f"{self.timestamp:.6f}"

    def build_answer(self, answer: str) -> AnswerEvent:
        return AnswerEvent(answer=answer, parent_key=self.key)


AssistantEvent = Union[ThinkingEvent, MessageEvent, AnswerEvent, InviteEvent]

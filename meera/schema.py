from __future__ import annotations

from typing import Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from meera.models import Turn


class ChatPart(BaseModel):
    text: str


class ChatHistoryMessage(BaseModel):
    role: Literal["user", "model"]
    content: List[ChatPart]


class ChatInput(BaseModel):
    history: List[ChatHistoryMessage] = Field(default_factory=list)
    message: str


class ChatOutput(BaseModel):
    response: str


class SpeechRequest(BaseModel):
    text: str


class SpeechOutput(BaseModel):
    media: Optional[str] = None
    error: Optional[str] = None


def to_history(turns: Iterable[Turn]) -> List[ChatHistoryMessage]:
    """
    Convert stored turns into the remote schema.
    Empty model turns (a reveal placeholder) carry nothing the model needs.
    """
    out: List[ChatHistoryMessage] = []
    for t in turns:
        if t.role == "model" and not t.content:
            continue
        out.append(ChatHistoryMessage(role=t.role, content=[ChatPart(text=t.content)]))
    return out


def history_text(message: ChatHistoryMessage) -> str:
    """Flatten a history entry's content parts into one string."""
    return "".join(p.text for p in message.content)

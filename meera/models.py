"""Data models for the Meera voice chat session."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Optional
import time
import uuid


Role = Literal["user", "model"]
TurnStatus = Literal["pending", "confirmed", "failed"]


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Turn:
    """One message in the conversation, attributed to the user or the model."""
    role: Role
    content: str
    status: TurnStatus = "confirmed"
    ts: float = field(default_factory=lambda: time.time())
    id: str = field(default_factory=_new_id)

    def to_dict(self):
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "status": self.status,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        role = data["role"]
        if role not in ("user", "model"):
            raise ValueError(f"Unknown role: {role!r}")
        content = data["content"]
        if not isinstance(content, str):
            raise ValueError("Turn content must be a string")
        status = data.get("status", "confirmed")
        if status not in ("pending", "confirmed", "failed"):
            status = "confirmed"
        return cls(
            role=role,
            content=content,
            status=status,
            ts=float(data.get("ts") or time.time()),
            id=str(data.get("id") or _new_id()),
        )


class SessionState(str, Enum):
    """Listening state of the session. Exactly one holds at any time."""
    IDLE = "idle"
    LISTENING = "listening"
    SUBMITTING = "submitting"
    REVEALING = "revealing"


class CaptureErrorKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NO_SPEECH = "no-speech"
    NETWORK = "network"
    ABORTED = "aborted"
    UNSUPPORTED = "unsupported"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> "CaptureErrorKind":
        """Map a recognizer error name (browser or SDK) onto a known kind."""
        value = (value or "").strip().lower()
        if value in ("not-allowed", "service-not-allowed"):
            return cls.PERMISSION_DENIED
        if value == "audio-capture":
            return cls.UNSUPPORTED
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


@dataclass
class Notification:
    """A user-visible message raised by the orchestrator."""
    level: Literal["error", "warning", "info"]
    title: str
    message: str
    persistent: bool = False
    action: Optional[str] = None  # retry affordance, e.g. "retry-capture"
    ts: float = field(default_factory=lambda: time.time())
    id: str = field(default_factory=_new_id)

    def to_dict(self):
        return {
            "id": self.id,
            "level": self.level,
            "title": self.title,
            "message": self.message,
            "persistent": self.persistent,
            "action": self.action,
            "ts": self.ts,
        }


@dataclass
class SpeechResult:
    """Outcome of one synthesis call: a playable media reference or an error."""
    media: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.media) and self.error is None

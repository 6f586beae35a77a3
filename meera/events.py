"""Events consumed by the turn-taking orchestrator.

Every input to the session, whether from the user, the recognizer, a
finished remote call or a timer, is one of these, and is handled by a single
transition function in arrival order.
"""

from dataclasses import dataclass

from meera.models import CaptureErrorKind


@dataclass(frozen=True)
class Event:
    pass


# User intent

@dataclass(frozen=True)
class ListenRequested(Event):
    pass


@dataclass(frozen=True)
class MuteRequested(Event):
    pass


@dataclass(frozen=True)
class SubmitRequested(Event):
    message: str


@dataclass(frozen=True)
class RetryCaptureRequested(Event):
    pass


@dataclass(frozen=True)
class ClearRequested(Event):
    pass


# Recognizer

@dataclass(frozen=True)
class CaptureStarted(Event):
    pass


@dataclass(frozen=True)
class CapturePartial(Event):
    text: str


@dataclass(frozen=True)
class CaptureFinal(Event):
    text: str


@dataclass(frozen=True)
class CaptureError(Event):
    kind: CaptureErrorKind


@dataclass(frozen=True)
class CaptureEnded(Event):
    pass


# Remote calls and timers

@dataclass(frozen=True)
class ChatSucceeded(Event):
    turn_id: str
    text: str


@dataclass(frozen=True)
class ChatFailed(Event):
    turn_id: str
    error: str


@dataclass(frozen=True)
class RevealFinished(Event):
    reveal_id: int
    text: str


@dataclass(frozen=True)
class RearmDue(Event):
    token: int

"""Turn-taking orchestrator.

Owns the session state (idle, listening, submitting, revealing) and sequences
speech capture, the chat request, speech synthesis and the reveal. All inputs
arrive as events and go through one transition function; events raised while
another is being handled are queued and handled afterwards, never re-entrantly.

Invariants:
- The microphone is never capturing while SUBMITTING or REVEALING.
- At most one chat request is in flight.
- A model turn is only appended after a successful reply, so a failure never
  leaves an empty trailing model turn.
- A new submission preempts an in-progress reveal and its audio.
- Muting does not cancel an in-flight request; its reply lands in the store silently.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger

from meera import events as ev
from meera.audio import AudioChannel, SpeechQueue
from meera.capture import PERSISTENT, SUPPRESSED, SpeechCapture, classify_error
from meera.chat_client import ChatClient
from meera.config import Config
from meera.models import CaptureErrorKind, Notification, SessionState, Turn
from meera.reveal import RevealAnimator
from meera.store import ConversationStore
from meera.synthesis import SpeechSynthesisClient, split_sentences

MAX_NOTIFICATIONS = 20

CHAT_FAILED = Notification(
    level="error",
    title="Error",
    message="Failed to get a response. Please try again.",
)

_CAPTURE_BLOCKED_MESSAGES = {
    CaptureErrorKind.PERMISSION_DENIED: (
        "Microphone blocked",
        "Microphone access was denied. Allow microphone access and try again.",
    ),
    CaptureErrorKind.UNSUPPORTED: (
        "Voice input unavailable",
        "Speech recognition isn't available here. You can still type your messages.",
    ),
}


class TurnOrchestrator:
    """Conversation loop: listen, submit, reveal, listen again."""

    def __init__(
        self,
        store: ConversationStore,
        chat: ChatClient,
        capture: Optional[SpeechCapture] = None,
        synthesizer: Optional[SpeechSynthesisClient] = None,
        audio: Optional[AudioChannel] = None,
        *,
        speak_replies: Optional[bool] = None,
        rollback_policy: Optional[str] = None,
        restart_policy: Optional[str] = None,
        reveal_interval: Optional[float] = None,
        reveal_chunk: Optional[int] = None,
        grace_delay: Optional[float] = None,
        restart_debounce: Optional[float] = None,
        synthesis_timeout: Optional[float] = None,
    ):
        self.store = store
        self.chat = chat
        self.capture = capture
        self.synthesizer = synthesizer
        self.audio = audio or AudioChannel()

        self.speak_replies = Config.SPEAK_REPLIES if speak_replies is None else speak_replies
        self.rollback_policy = rollback_policy or Config.ROLLBACK_POLICY
        self.restart_policy = restart_policy or Config.RESTART_POLICY
        self.grace_delay = Config.GRACE_DELAY_MS / 1000.0 if grace_delay is None else grace_delay
        self.restart_debounce = Config.RESTART_DEBOUNCE_MS / 1000.0 if restart_debounce is None else restart_debounce
        self.synthesis_timeout = Config.SYNTHESIS_TIMEOUT_SECONDS if synthesis_timeout is None else synthesis_timeout

        self.animator = RevealAnimator(
            interval=Config.REVEAL_INTERVAL_MS / 1000.0 if reveal_interval is None else reveal_interval,
            chunk_size=reveal_chunk or Config.REVEAL_CHUNK_CHARS,
            on_progress=self._on_reveal_progress,
            on_complete=self._on_reveal_complete,
        )

        # Presentation hooks
        self.on_state: Optional[Callable[[SessionState], None]] = None
        self.on_notify: Optional[Callable[[Notification], None]] = None
        self.on_reveal: Optional[Callable[[str], None]] = None
        self.on_transcript: Optional[Callable[[str], None]] = None

        self.transcript = ""
        self.capture_blocked: Optional[CaptureErrorKind] = None
        self.notifications: List[Notification] = []

        self._state = SessionState.IDLE
        self._queue: Deque[ev.Event] = deque()
        self._draining = False
        self._listen_enabled = False
        self._pending_turn_id: Optional[str] = None
        self._request_task: Optional[asyncio.Task] = None
        self._reply_text = ""
        self._reveal_id = 0
        self._rearm_timer: Optional[asyncio.TimerHandle] = None
        self._rearm_token = 0

        if capture is not None:
            capture.on_start = lambda: self.dispatch(ev.CaptureStarted())
            capture.on_partial = lambda text: self.dispatch(ev.CapturePartial(text))
            capture.on_final = lambda text: self.dispatch(ev.CaptureFinal(text))
            capture.on_error = lambda kind: self.dispatch(ev.CaptureError(kind))
            capture.on_end = lambda: self.dispatch(ev.CaptureEnded())

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a chat request is in flight."""
        return self._request_task is not None

    @property
    def capture_supported(self) -> bool:
        return self.capture is not None and self.capture.supported

    @property
    def listen_enabled(self) -> bool:
        return self._listen_enabled

    @property
    def displayed(self) -> str:
        return self.animator.displayed if self._state is SessionState.REVEALING else ""

    def listen(self) -> None:
        self.dispatch(ev.ListenRequested())

    def mute(self) -> None:
        self.dispatch(ev.MuteRequested())

    def retry_capture(self) -> None:
        self.dispatch(ev.RetryCaptureRequested())

    def clear_conversation(self) -> None:
        self.dispatch(ev.ClearRequested())

    def dismiss_notification(self, notification_id: str) -> bool:
        """Drop a notification the user closed. Returns False for an unknown id."""
        for i, notification in enumerate(self.notifications):
            if notification.id == notification_id:
                del self.notifications[i]
                logger.debug(f"[ORCH] Dismissed notification {notification_id}")
                return True
        return False

    def submit(self, text: str) -> bool:
        """Submit a typed message. Returns False if it was rejected locally."""
        message = (text or "").strip()
        if not message:
            logger.debug("[ORCH] Ignoring empty message")
            return False
        if self.busy:
            logger.info("[ORCH] A request is already in flight, submission rejected")
            return False
        self.dispatch(ev.SubmitRequested(message))
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "busy": self.busy,
            "transcript": self.transcript,
            "displayed": self.displayed,
            "listen_enabled": self._listen_enabled,
            "capture_supported": self.capture_supported,
            "capture_blocked": self.capture_blocked.value if self.capture_blocked else None,
            "turns": [t.to_dict() for t in self.store.turns],
            "notifications": [n.to_dict() for n in self.notifications],
        }

    async def settle(self, timeout: Optional[float] = None) -> None:
        """Wait until no request, reveal (with its speech) or re-arm timer is outstanding."""
        async def _wait():
            while (self._request_task is not None or self.animator.active
                   or self._state is SessionState.REVEALING or self._rearm_timer is not None):
                await asyncio.sleep(0.005)
        await asyncio.wait_for(_wait(), timeout)

    async def close(self) -> None:
        """Tear down timers, audio, capture and outstanding tasks."""
        self._listen_enabled = False
        self._cancel_rearm()
        self._reveal_id += 1
        self.animator.stop(finish=True)
        self.audio.release()
        self._stop_capture()

        task = self._request_task
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._request_task = None
        self._set_state(SessionState.IDLE)

    # ------------------------------------------------------------------
    # Event queue
    # ------------------------------------------------------------------

    def dispatch(self, event: ev.Event) -> None:
        """Queue an event and, unless already draining, handle everything queued."""
        self._queue.append(event)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current = self._queue.popleft()
                try:
                    self._transition(current)
                except Exception:
                    logger.exception(f"[ORCH] Error handling {type(current).__name__} in state {self._state.value}")
        finally:
            self._draining = False

    def _transition(self, event: ev.Event) -> None:
        state = self._state
        logger.debug(f"[ORCH] {type(event).__name__} in {state.value}")

        if isinstance(event, ev.ListenRequested):
            self._listen_enabled = True
            if self.capture_blocked is not None:
                logger.info(f"[ORCH] Capture blocked ({self.capture_blocked.value}), use retry")
            elif state is SessionState.IDLE:
                self._arm_capture()

        elif isinstance(event, ev.MuteRequested):
            self._listen_enabled = False
            self._cancel_rearm()
            if state is SessionState.REVEALING:
                self._interrupt_reveal()
            self._stop_capture()
            self._set_transcript("")
            self._set_state(SessionState.IDLE)

        elif isinstance(event, ev.RetryCaptureRequested):
            self.capture_blocked = None
            self._listen_enabled = True
            if state is SessionState.IDLE:
                self._arm_capture()

        elif isinstance(event, ev.ClearRequested):
            if state is SessionState.REVEALING:
                self._reveal_id += 1
                self.animator.stop(finish=False)
                self.audio.release()
                self._set_state(SessionState.IDLE)
                self._schedule_rearm(self.grace_delay)
            self.store.clear()
            self._set_transcript("")

        elif isinstance(event, ev.SubmitRequested):
            self._submit(event.message)

        elif isinstance(event, ev.CaptureStarted):
            if state in (SessionState.SUBMITTING, SessionState.REVEALING) or not self._listen_enabled:
                # A recognizer must never run while the assistant is thinking or speaking
                logger.debug("[ORCH] Stopping capture that started out of turn")
                self._stop_capture()
            elif state is SessionState.IDLE:
                self._set_state(SessionState.LISTENING)

        elif isinstance(event, ev.CapturePartial):
            if state is SessionState.LISTENING:
                self._set_transcript(event.text)

        elif isinstance(event, ev.CaptureFinal):
            if state is SessionState.LISTENING:
                self._submit(event.text)
            else:
                logger.debug(f"[ORCH] Dropping final transcript in {state.value}")

        elif isinstance(event, ev.CaptureError):
            severity = classify_error(event.kind)
            if severity == SUPPRESSED:
                return
            if state is SessionState.LISTENING:
                self._set_state(SessionState.IDLE)
            if severity == PERSISTENT:
                self._cancel_rearm()
                if self.capture_blocked is not event.kind:
                    self.capture_blocked = event.kind
                    title, message = _CAPTURE_BLOCKED_MESSAGES[event.kind]
                    self._notify(Notification(
                        level="error",
                        title=title,
                        message=message,
                        persistent=True,
                        action="retry-capture",
                    ))

        elif isinstance(event, ev.CaptureEnded):
            if state is SessionState.LISTENING:
                # Continuous sessions end on their own; come back after a short debounce
                self._set_state(SessionState.IDLE)
                self._schedule_rearm(self.restart_debounce)

        elif isinstance(event, ev.ChatSucceeded):
            self._request_task = None
            self._pending_turn_id = None
            confirmed = self.store.confirm(event.turn_id)
            if not confirmed:
                logger.info("[ORCH] Reply arrived for a turn that is gone, dropping it")
                if state is SessionState.SUBMITTING:
                    self._set_state(SessionState.IDLE)
                    self._schedule_rearm(self.grace_delay)
            elif state is SessionState.SUBMITTING:
                self._begin_reveal(event.text)
            else:
                # Muted while the request was in flight: keep the reply, skip the show
                logger.info("[ORCH] Reply arrived after mute, storing without reveal")
                self.store.append(Turn(role="model", content=event.text))

        elif isinstance(event, ev.ChatFailed):
            self._request_task = None
            self._pending_turn_id = None
            logger.error(f"[ORCH] Chat request failed: {event.error}")
            if self.rollback_policy == "retain":
                self.store.mark_failed(event.turn_id)
            else:
                self.store.remove(event.turn_id)
            self._notify(Notification(level=CHAT_FAILED.level, title=CHAT_FAILED.title, message=CHAT_FAILED.message))
            if state is SessionState.SUBMITTING:
                self._set_state(SessionState.IDLE)
                if self.restart_policy == "always":
                    self._schedule_rearm(self.restart_debounce)

        elif isinstance(event, ev.RevealFinished):
            if event.reveal_id != self._reveal_id or state is not SessionState.REVEALING:
                return
            self.store.update_last(event.text)
            self.audio.release()
            self._set_state(SessionState.IDLE)
            if self.restart_policy != "never":
                # Grace delay keeps the tail of our own playback out of the microphone
                self._schedule_rearm(self.grace_delay)

        elif isinstance(event, ev.RearmDue):
            if event.token != self._rearm_token:
                return
            self._rearm_timer = None
            if state is SessionState.IDLE and self._listen_enabled and self.capture_blocked is None:
                self._arm_capture()

        else:
            logger.warning(f"[ORCH] Unhandled event {event!r}")

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _set_state(self, new_state: SessionState) -> None:
        if new_state is self._state:
            return
        logger.info(f"[ORCH] {self._state.value} -> {new_state.value}")
        self._state = new_state
        if self.on_state:
            self.on_state(new_state)

    def _set_transcript(self, text: str) -> None:
        if text == self.transcript:
            return
        self.transcript = text
        if self.on_transcript:
            self.on_transcript(text)

    def _notify(self, notification: Notification) -> None:
        logger.info(f"[ORCH] Notify: {notification.title}: {notification.message}")
        self.notifications.append(notification)
        del self.notifications[:-MAX_NOTIFICATIONS]
        if self.on_notify:
            self.on_notify(notification)

    def _arm_capture(self) -> None:
        self._cancel_rearm()
        if not self.capture_supported:
            return
        if self.capture.listening or self.capture.start():
            self._set_state(SessionState.LISTENING)

    def _stop_capture(self) -> None:
        if self.capture is not None and self.capture.listening:
            self.capture.stop()

    def _schedule_rearm(self, delay: float) -> None:
        if not self._listen_enabled or self.capture_blocked is not None or not self.capture_supported:
            return
        self._cancel_rearm()
        self._rearm_token += 1
        loop = asyncio.get_running_loop()
        self._rearm_timer = loop.call_later(delay, self.dispatch, ev.RearmDue(self._rearm_token))

    def _cancel_rearm(self) -> None:
        if self._rearm_timer is not None:
            self._rearm_timer.cancel()
            self._rearm_timer = None
        self._rearm_token += 1

    def _interrupt_reveal(self) -> None:
        """Halt the reveal and its speech, leaving the model turn fully revealed."""
        self._reveal_id += 1
        self.animator.stop(finish=True)
        self.audio.release()
        self.store.update_last(self._reply_text)

    def _submit(self, text: str) -> None:
        message = (text or "").strip()
        if not message:
            logger.debug("[ORCH] Ignoring empty message")
            return
        if self.busy:
            logger.info("[ORCH] A request is already in flight, submission dropped")
            return

        if self._state is SessionState.REVEALING:
            # Newer input always preempts the reveal in progress
            self._interrupt_reveal()

        self._cancel_rearm()
        self._stop_capture()
        self._set_transcript("")

        turn = self.store.append(Turn(role="user", content=message, status="pending"))
        self._pending_turn_id = turn.id
        history = self.store.history(exclude=turn.id)
        self._set_state(SessionState.SUBMITTING)
        self._request_task = asyncio.get_running_loop().create_task(self._request(turn.id, history, message))

    async def _request(self, turn_id: str, history, message: str) -> None:
        try:
            text = await self.chat.send(history, message)
        except Exception as e:
            self.dispatch(ev.ChatFailed(turn_id, str(e) or type(e).__name__))
            return
        self.dispatch(ev.ChatSucceeded(turn_id, text))

    def _begin_reveal(self, text: str) -> None:
        self._reply_text = text
        self._reveal_id += 1
        self.store.append(Turn(role="model", content=""))

        speech = None
        if self.speak_replies and self.synthesizer is not None and self.audio.available:
            # Text starts revealing right away; speech catches up sentence by sentence
            speech = SpeechQueue(
                self.synthesizer,
                self.audio,
                split_sentences(text) or [text],
                timeout=self.synthesis_timeout,
            )
        # The visible prefix is reset before REVEALING is announced
        self.animator.start(text, audio=speech)
        self._set_state(SessionState.REVEALING)

    def _on_reveal_progress(self, prefix: str) -> None:
        if self._state is SessionState.REVEALING:
            self.store.update_last(prefix)
        if self.on_reveal:
            self.on_reveal(prefix)

    def _on_reveal_complete(self, text: str) -> None:
        self.dispatch(ev.RevealFinished(self._reveal_id, text))

"""Speech capture abstraction for live speech-to-text."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from loguru import logger

from meera.models import CaptureErrorKind

SUPPRESSED = "suppressed"
PERSISTENT = "persistent"
FATAL = "fatal"

_SUPPRESSED_KINDS = (CaptureErrorKind.NO_SPEECH, CaptureErrorKind.ABORTED, CaptureErrorKind.NETWORK)
_PERSISTENT_KINDS = (CaptureErrorKind.PERMISSION_DENIED, CaptureErrorKind.UNSUPPORTED)


def classify_error(kind: CaptureErrorKind) -> str:
    """How a capture error should be treated: suppressed, persistent, or fatal."""
    if kind in _SUPPRESSED_KINDS:
        return SUPPRESSED
    if kind in _PERSISTENT_KINDS:
        return PERSISTENT
    return FATAL


def join_phrases(head: str, tail: str) -> str:
    """Concatenate recognized phrases, inserting a space unless one is already there."""
    if not head or not tail:
        return head or tail
    if head[-1].isspace() or tail[0].isspace():
        return head + tail
    return f"{head} {tail}"


class SpeechCapture(ABC):
    """Continuous recognition with interim results.

    Listeners are plain attributes so the owner can wire them after construction:
        on_partial(text)  - transcript so far (confirmed phrases + current hypothesis)
        on_final(text)    - one confirmed phrase
        on_error(kind)    - CaptureErrorKind
        on_start()        - recognition started
        on_end()          - recognition ended (by itself or after stop())
    """

    def __init__(self):
        self.on_partial: Optional[Callable[[str], None]] = None
        self.on_final: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[CaptureErrorKind], None]] = None
        self.on_start: Optional[Callable[[], None]] = None
        self.on_end: Optional[Callable[[], None]] = None
        self._listening = False
        self._final_text = ""

    @property
    @abstractmethod
    def supported(self) -> bool:
        pass

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def transcript(self) -> str:
        return self._final_text

    def start(self) -> bool:
        """Begin continuous recognition. Never raises; returns False when nothing was started."""
        if not self.supported:
            logger.warning("[CAPTURE] Speech recognition not supported")
            return False
        if self._listening:
            logger.debug("[CAPTURE] Already listening")
            return False
        self._final_text = ""
        self._listening = True
        try:
            self._begin()
        except Exception as e:
            logger.error(f"[CAPTURE] Couldn't start listening: {e!r}")
            self._listening = False
            return False
        return self._listening

    def stop(self) -> None:
        if not self._listening:
            return
        self._listening = False
        try:
            self._end()
        except Exception as e:
            logger.warning(f"[CAPTURE] Error while stopping: {e!r}")

    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def _end(self) -> None:
        pass

    # Subclasses report recognizer activity through these.

    def _emit_started(self) -> None:
        self._listening = True
        if self.on_start:
            self.on_start()

    def _emit_result(self, text: str, is_final: bool) -> None:
        if not self._listening or not text:
            return
        if is_final:
            self._final_text = join_phrases(self._final_text, text)
            if self.on_partial:
                self.on_partial(self._final_text)
            if self.on_final:
                self.on_final(text)
        elif self.on_partial:
            self.on_partial(join_phrases(self._final_text, text))

    def _emit_error(self, kind: CaptureErrorKind) -> None:
        severity = classify_error(kind)
        if severity == SUPPRESSED:
            # 'no-speech' and friends are normal while the user is silent
            logger.debug(f"[CAPTURE] Ignoring transient error: {kind.value}")
        else:
            logger.error(f"[CAPTURE] Speech recognition error: {kind.value}")
            if self._listening:
                self.stop()
        if self.on_error:
            self.on_error(kind)

    def _emit_ended(self) -> None:
        self._listening = False
        if self.on_end:
            self.on_end()


class ClientCapture(SpeechCapture):
    """Capture performed by a remote client (the browser's speech recognition).

    The client is told to start or stop through send_command and posts its
    recognizer events back through feed(). Each start() opens a new session
    number; events tagged with an older session are dropped so a late 'end'
    from a stopped recognizer cannot tear down the current one.
    """

    def __init__(self, send_command: Callable[[Dict[str, Any]], None], supported: bool = False):
        super().__init__()
        self.send_command = send_command
        self._supported = supported
        self.session = 0

    @property
    def supported(self) -> bool:
        return self._supported

    def set_supported(self, supported: bool) -> None:
        self._supported = bool(supported)
        if not self._supported and self._listening:
            self.stop()

    def _begin(self) -> None:
        self.session += 1
        self.send_command({"type": "capture", "action": "start", "session": self.session})

    def _end(self) -> None:
        self.send_command({"type": "capture", "action": "stop", "session": self.session})

    def feed(self, event: str, text: str = "", error: str = "", session: Optional[int] = None) -> bool:
        """Apply one recognizer event from the client. Returns False if it was dropped."""
        if session is not None and session != self.session:
            logger.debug(f"[CAPTURE] Dropping stale '{event}' from session {session}")
            return False

        if event == "start":
            self._emit_started()
        elif event == "partial":
            self._emit_result(text, False)
        elif event == "final":
            self._emit_result(text, True)
        elif event == "error":
            self._emit_error(CaptureErrorKind.parse(error))
        elif event == "end":
            if not self._listening:
                # Ended because we asked it to
                return True
            self._emit_ended()
        else:
            logger.warning(f"[CAPTURE] Unknown capture event: {event!r}")
            return False
        return True


class DeepgramCapture(SpeechCapture):
    """Local microphone streamed to Deepgram live transcription."""

    SAMPLE_RATE = 16000
    BLOCK_SIZE = 1600  # 100ms of 16kHz mono int16

    def __init__(self, api_key: Optional[str] = None, device: Any = None):
        super().__init__()
        if api_key is None:
            from meera.config import Config
            api_key = Config.DEEPGRAM_API_KEY
        self.api_key = api_key
        self.device = device
        self._connection = None
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closing = False
        # Finalized segments of the utterance in progress
        self._utterance = ""

        # Try to import Deepgram SDK and the audio device library
        try:
            from deepgram import DeepgramClient, LiveTranscriptionEvents, LiveOptions
            import sounddevice as sd
            self.deepgram_available = True
            self.DeepgramClient = DeepgramClient
            self.LiveTranscriptionEvents = LiveTranscriptionEvents
            self.LiveOptions = LiveOptions
            self.sd = sd
        except (ImportError, OSError) as e:
            self.deepgram_available = False
            logger.warning(f"[CAPTURE] Local capture unavailable ({e}). Install with: pip install 'meera-voice[deepgram]'")

    @property
    def supported(self) -> bool:
        return self.deepgram_available and bool(self.api_key)

    def _from_thread(self, fn: Callable, *args) -> None:
        # Deepgram and sounddevice call back on their own threads
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(fn, *args)

    def _on_transcript(self, text: str, is_final: bool, speech_final: bool) -> None:
        """Deepgram finalizes a sentence in segments; only an endpoint ends the utterance."""
        if is_final:
            self._utterance = join_phrases(self._utterance, text)
            if speech_final:
                self._flush_utterance()
            else:
                self._emit_result(self._utterance, False)
        else:
            self._emit_result(join_phrases(self._utterance, text), False)

    def _flush_utterance(self) -> None:
        utterance, self._utterance = self._utterance.strip(), ""
        if utterance:
            self._emit_result(utterance, True)

    def _begin(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._utterance = ""

        client = self.DeepgramClient(self.api_key)
        connection = client.listen.websocket.v("1")

        def on_message(*args, **kwargs):
            result = kwargs.get("result")
            if result and result.channel and result.channel.alternatives:
                sentence = result.channel.alternatives[0].transcript
                speech_final = bool(getattr(result, "speech_final", False))
                if sentence:
                    self._from_thread(self._on_transcript, sentence, bool(result.is_final), speech_final)
                elif speech_final:
                    self._from_thread(self._flush_utterance)

        def on_utterance_end(*args, **kwargs):
            self._from_thread(self._flush_utterance)

        def on_error(*args, **kwargs):
            logger.warning(f"[CAPTURE] Deepgram error: {kwargs.get('error')}")
            self._from_thread(self._emit_error, CaptureErrorKind.NETWORK)

        def on_close(*args, **kwargs):
            if not self._closing:
                self._from_thread(self._emit_ended)

        connection.on(self.LiveTranscriptionEvents.Transcript, on_message)
        connection.on(self.LiveTranscriptionEvents.UtteranceEnd, on_utterance_end)
        connection.on(self.LiveTranscriptionEvents.Error, on_error)
        connection.on(self.LiveTranscriptionEvents.Close, on_close)

        options = self.LiveOptions(
            model="nova-2",
            language="en-US",
            smart_format=True,
            encoding="linear16",
            sample_rate=self.SAMPLE_RATE,
            channels=1,
            interim_results=True,
            utterance_end_ms="1000",
            vad_events=True,
        )
        if connection.start(options) is False:
            raise RuntimeError("Failed to start Deepgram connection")
        self._connection = connection

        def audio_cb(indata, frames, time_info, status):
            if status:
                logger.debug(f"[CAPTURE] sd_status: {status}")
            try:
                connection.send(bytes(indata))
            except Exception as e:
                logger.debug(f"[CAPTURE] Dropped audio block: {e!r}")

        try:
            self._stream = self.sd.RawInputStream(
                device=self.device,
                samplerate=self.SAMPLE_RATE,
                channels=1,
                dtype="int16",
                blocksize=self.BLOCK_SIZE,
                callback=audio_cb,
            )
            self._stream.start()
        except self.sd.PortAudioError as e:
            logger.error(f"[CAPTURE] Microphone unavailable: {e}")
            self._closing = True
            connection.finish()
            self._connection = None
            self._listening = False
            self._emit_error(CaptureErrorKind.PERMISSION_DENIED)
            return

        self._emit_started()

    def _end(self) -> None:
        self._closing = True
        self._utterance = ""
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            finally:
                self._stream = None
        if self._connection is not None:
            try:
                self._connection.finish()
            finally:
                self._connection = None

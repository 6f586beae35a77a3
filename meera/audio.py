"""Audio playback ownership.

One AudioChannel is created per session and injected into the orchestrator;
it is the only way playback is started or stopped. Acquiring a new handle
stops and discards the previous one, so at most one handle is ever active.
"""

from __future__ import annotations

import asyncio
import base64
import io
import uuid
import wave
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional

from loguru import logger

from meera.models import SpeechResult


def decode_data_uri(media: str) -> bytes:
    """Return the payload bytes of a base64 data URI."""
    if not media.startswith("data:") or "," not in media:
        raise ValueError("Not a data URI")
    header, payload = media.split(",", 1)
    if not header.endswith(";base64"):
        raise ValueError("Data URI is not base64 encoded")
    return base64.b64decode(payload)


def wav_duration(media: str) -> Optional[float]:
    """Duration in seconds of a WAV data URI, or None if it cannot be read."""
    try:
        with wave.open(io.BytesIO(decode_data_uri(media)), "rb") as wf:
            return wf.getnframes() / float(wf.getframerate())
    except (ValueError, EOFError, wave.Error):
        return None


class AudioOutput(ABC):
    """A place audio can be played. Implementations call handle.finish() when playback ends."""

    @abstractmethod
    def play(self, handle: "AudioHandle") -> None:
        pass

    @abstractmethod
    def stop(self, handle: "AudioHandle") -> None:
        pass


class AudioHandle:
    """Playable resource for one model turn."""

    def __init__(self, media: str, output: AudioOutput):
        self.id = uuid.uuid4().hex[:12]
        self.media = media
        self._output = output
        self._done = asyncio.Event()
        self.started = False
        self.stopped = False

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def play(self) -> None:
        if self.started or self.finished:
            return
        self.started = True
        try:
            self._output.play(self)
        except Exception as e:
            logger.warning(f"[AUDIO] Playback failed to start: {e!r}")
            self.finish()

    def stop(self) -> None:
        if self.finished:
            return
        self.stopped = True
        if self.started:
            try:
                self._output.stop(self)
            except Exception as e:
                logger.warning(f"[AUDIO] Error stopping playback: {e!r}")
        self.finish()

    def finish(self) -> None:
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()


class AudioChannel:
    """The single playback resource owned by the orchestrator."""

    def __init__(self, output: Optional[AudioOutput] = None):
        self.output = output
        self._active: Optional[AudioHandle] = None

    @property
    def available(self) -> bool:
        return self.output is not None

    @property
    def active(self) -> Optional[AudioHandle]:
        return self._active

    def acquire(self, media: str) -> Optional[AudioHandle]:
        """Stop whatever is playing and return a fresh handle (None when there is no output)."""
        self.release()
        if self.output is None or not media:
            return None
        self._active = AudioHandle(media, self.output)
        return self._active

    def release(self) -> None:
        if self._active is not None:
            self._active.stop()
            self._active = None


class SoundDeviceOutput(AudioOutput):
    """Local playback of WAV data URIs through the default output device."""

    def __init__(self, device: Any = None):
        import numpy as np
        import sounddevice as sd

        self._np = np
        self._sd = sd
        self.device = device

    def play(self, handle: AudioHandle) -> None:
        with wave.open(io.BytesIO(decode_data_uri(handle.media)), "rb") as wf:
            rate = wf.getframerate()
            channels = wf.getnchannels()
            frames = wf.readframes(wf.getnframes())

        samples = self._np.frombuffer(frames, dtype=self._np.int16)
        if channels > 1:
            samples = samples.reshape(-1, channels)

        loop = asyncio.get_running_loop()
        self._sd.play(samples, samplerate=rate, device=self.device)

        def _wait_done():
            self._sd.wait()
            loop.call_soon_threadsafe(handle.finish)

        loop.run_in_executor(None, _wait_done)

    def stop(self, handle: AudioHandle) -> None:
        self._sd.stop()


class ClientOutput(AudioOutput):
    """Playback on a remote client.

    The media reference is published to the client, which reports back when
    playback ended. If it never does, the handle finishes on its own after the
    clip's duration plus a margin.
    """

    def __init__(self, publish: Callable[[Dict[str, Any]], None], margin: float = 1.5):
        self.publish = publish
        self.margin = margin
        self._handles: Dict[str, AudioHandle] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def play(self, handle: AudioHandle) -> None:
        self._handles[handle.id] = handle
        self.publish({"type": "audio", "action": "play", "id": handle.id, "media": handle.media})

        duration = wav_duration(handle.media)
        if duration is not None:
            loop = asyncio.get_running_loop()
            self._timers[handle.id] = loop.call_later(duration + self.margin, self.ended, handle.id)

    def stop(self, handle: AudioHandle) -> None:
        self._forget(handle.id)
        self.publish({"type": "audio", "action": "stop", "id": handle.id})

    def ended(self, handle_id: str) -> bool:
        """Client reports that playback finished. Returns False for unknown or stale ids."""
        handle = self._forget(handle_id)
        if handle is None:
            return False
        handle.finish()
        return True

    def _forget(self, handle_id: str) -> Optional[AudioHandle]:
        timer = self._timers.pop(handle_id, None)
        if timer is not None:
            timer.cancel()
        return self._handles.pop(handle_id, None)


class SpeechQueue:
    """Speaks a reply one sentence at a time through the session's AudioChannel.

    Sentences are synthesized in order, the next one while the current one
    plays. A sentence whose synthesis fails or times out is skipped, so a slow
    or broken speech service only costs audio, never the turn. Exposes the
    same play/stop/wait surface as AudioHandle, and wait() returns once the
    queue has drained or been stopped.
    """

    def __init__(self, synthesizer, channel: AudioChannel, sentences: Iterable[str], timeout: Optional[float] = None):
        """
        Args:
            synthesizer: Object with an async synthesize(text) -> SpeechResult
            channel: Playback owner; each sentence acquires a fresh handle from it
            sentences: Text chunks to speak, in order
            timeout: Seconds allowed per synthesis call (None waits indefinitely)
        """
        self.synthesizer = synthesizer
        self.channel = channel
        self.sentences = [s for s in sentences if s.strip()]
        self.timeout = timeout
        self.played = 0
        self.stopped = False
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def play(self) -> None:
        if self._task is not None or self.finished:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self.finished:
            return
        self.stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.channel.release()
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()

    async def _synthesize(self, text: str) -> SpeechResult:
        try:
            return await asyncio.wait_for(self.synthesizer.synthesize(text), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[AUDIO] Speech synthesis timed out after {self.timeout}s, skipping sentence")
            return SpeechResult(error="Speech synthesis timed out")
        except Exception as e:
            logger.warning(f"[AUDIO] Speech synthesis raised: {e!r}")
            return SpeechResult(error=str(e) or type(e).__name__)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        pending: Optional[asyncio.Task] = None
        try:
            if self.sentences:
                pending = loop.create_task(self._synthesize(self.sentences[0]))
            for i in range(len(self.sentences)):
                result = await pending
                pending = None
                if i + 1 < len(self.sentences):
                    pending = loop.create_task(self._synthesize(self.sentences[i + 1]))

                if not result.ok:
                    logger.info(f"[AUDIO] Sentence {i + 1} will be silent: {result.error}")
                    continue
                handle = self.channel.acquire(result.media)
                if handle is None:
                    continue
                handle.play()
                await handle.wait()
                self.played += 1
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
            self._done.set()

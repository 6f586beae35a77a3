"""Typewriter-style progressive reveal of an already-known response."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Union

from loguru import logger

from meera.audio import AudioHandle, SpeechQueue


class RevealAnimator:
    """Grows a visible prefix of the text at a fixed cadence.

    Only one reveal runs at a time: start() cancels the previous reveal and its
    audio before beginning. Completion fires exactly once per reveal, after the
    whole text is visible and the audio (if any) has finished playing.
    """

    def __init__(
        self,
        interval: float = 0.03,
        chunk_size: int = 1,
        on_progress: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            interval: Seconds between reveal steps
            chunk_size: Characters added per step
            on_progress: Called with the visible prefix after every step
            on_complete: Called with the full text when the reveal ends naturally
        """
        self.interval = max(0.0, float(interval))
        self.chunk_size = max(1, int(chunk_size))
        self.on_progress = on_progress
        self.on_complete = on_complete

        self._task: Optional[asyncio.Task] = None
        self._audio: Optional[Union[AudioHandle, SpeechQueue]] = None
        self._text = ""
        self._displayed = ""

    @property
    def text(self) -> str:
        return self._text

    @property
    def displayed(self) -> str:
        return self._displayed

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, text: str, audio: Optional[Union[AudioHandle, SpeechQueue]] = None) -> None:
        """Begin revealing text, optionally playing audio alongside. Must run inside an event loop."""
        self._cancel()
        self._text = text or ""
        self._displayed = ""
        self._audio = audio
        self._task = asyncio.get_running_loop().create_task(self._run(self._text, audio))

    def stop(self, finish: bool = True) -> str:
        """Cancel the timer and audio.

        Args:
            finish: Jump to the full text (True) or truncate at the current prefix (False)

        Returns:
            The text left visible
        """
        was_active = self.active
        self._cancel()
        if was_active and finish and self._displayed != self._text:
            self._set_displayed(self._text)
        return self._displayed

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._audio is not None:
            self._audio.stop()
            self._audio = None

    def _set_displayed(self, prefix: str) -> None:
        self._displayed = prefix
        if self.on_progress:
            self.on_progress(prefix)

    async def _run(self, text: str, audio: Optional[Union[AudioHandle, SpeechQueue]]) -> None:
        if audio is not None:
            audio.play()

        end = 0
        while end < len(text):
            end = min(len(text), end + self.chunk_size)
            self._set_displayed(text[:end])
            if end < len(text):
                await asyncio.sleep(self.interval)

        if audio is not None:
            await audio.wait()

        logger.debug(f"[REVEAL] Completed {len(text)} chars")
        self._task = None
        self._audio = None
        if self.on_complete:
            self.on_complete(text)

"""Remote text-to-speech client.

Synthesis failures never propagate: every call returns a SpeechResult, and a
result without media simply means the reply is revealed silently.
"""

from __future__ import annotations

import base64
import io
import re
import wave
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from meera.config import Config
from meera.models import SpeechResult

DEFAULT_SAMPLE_RATE = 24000

_SENTENCE_RE = re.compile(r"(?<=[.?!])\s+")
_RATE_RE = re.compile(r"rate=(\d+)")


def split_sentences(text: str) -> List[str]:
    """Simple sentence-based chunking for incremental playback."""
    return [s for s in _SENTENCE_RE.split(text or "") if s.strip()]


def pcm_to_wav(pcm: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE, channels: int = 1, sample_width: int = 2) -> bytes:
    """Wrap raw little-endian PCM in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def to_data_uri(wav_bytes: bytes) -> str:
    return "data:audio/wav;base64," + base64.b64encode(wav_bytes).decode("ascii")


def _extract_audio(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    candidates = data.get("candidates") or []
    if not candidates:
        return None
    for part in (candidates[0].get("content") or {}).get("parts") or []:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            return inline
    return None


class SpeechSynthesisClient:
    """Turns response text into a playable audio reference via Gemini TTS."""

    def __init__(
        self,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model or Config.GEMINI_TTS_MODEL
        self.voice = voice or Config.GEMINI_TTS_VOICE
        self.timeout = timeout if timeout is not None else Config.REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool((Config.GEMINI_API_KEY or "").strip())

    def _body(self, text: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}},
                },
            },
        }

    async def synthesize(self, text: str) -> SpeechResult:
        if not (text or "").strip():
            return SpeechResult(error="Nothing to synthesize")
        if not self.configured:
            return SpeechResult(error="Speech synthesis is not configured")

        base_url = Config.GEMINI_BASE_URL.rstrip("/")
        url = f"{base_url}/v1beta/models/{self.model}:generateContent"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": (Config.GEMINI_API_KEY or "").strip(),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(url, json=self._body(text), headers=headers)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as e:
            logger.warning(f"[TTS] Synthesis request failed: {e!r}")
            return SpeechResult(error=str(e) or type(e).__name__)
        except ValueError as e:
            logger.warning(f"[TTS] Malformed synthesis response: {e}")
            return SpeechResult(error="Malformed synthesis response")

        inline = _extract_audio(data)
        if inline is None:
            logger.warning("[TTS] No audio returned")
            return SpeechResult(error="No audio returned")

        try:
            pcm = base64.b64decode(inline["data"])
        except ValueError:
            return SpeechResult(error="Audio payload is not valid base64")

        match = _RATE_RE.search(inline.get("mimeType") or inline.get("mime_type") or "")
        rate = int(match.group(1)) if match else DEFAULT_SAMPLE_RATE
        return SpeechResult(media=to_data_uri(pcm_to_wav(pcm, sample_rate=rate)))

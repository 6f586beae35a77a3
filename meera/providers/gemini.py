from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from meera.config import Config
from meera.prompt import SYSTEM_PROMPT
from meera.schema import ChatHistoryMessage, history_text


def configured() -> bool:
    return bool((Config.GEMINI_API_KEY or "").strip())


def _headers() -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        # Recommended auth header for Gemini Developer API
        "x-goog-api-key": (Config.GEMINI_API_KEY or "").strip(),
    }


def _url(action: str) -> str:
    base_url = Config.GEMINI_BASE_URL.rstrip("/")
    return f"{base_url}/v1beta/models/{Config.GEMINI_MODEL}:{action}"


def build_body(history: List[ChatHistoryMessage], message: str) -> Dict[str, Any]:
    contents = [
        {"role": h.role, "parts": [{"text": history_text(h)}]}
        for h in history
    ]
    contents.append({"role": "user", "parts": [{"text": message}]})
    return {
        "system_instruction": {"parts": [{"text": SYSTEM_PROMPT}]},
        "contents": contents,
    }


def extract_text(data: Dict[str, Any]) -> str:
    """Join the text parts of the first candidate; empty string when there are none."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0].get("content") or {}).get("parts") or [])
    return "".join([p.get("text", "") for p in parts if isinstance(p, dict)])


async def generate(client: httpx.AsyncClient, history: List[ChatHistoryMessage], message: str) -> str:
    """
    Uses the Gemini Developer API generateContent endpoint.
    Gemini REST: POST /v1beta/models/{model}:generateContent
    """
    r = await client.post(_url("generateContent"), json=build_body(history, message), headers=_headers())
    r.raise_for_status()
    return extract_text(r.json())


async def stream(client: httpx.AsyncClient, history: List[ChatHistoryMessage], message: str) -> AsyncIterator[str]:
    """Incremental variant over server-sent events (streamGenerateContent?alt=sse)."""
    url = _url("streamGenerateContent") + "?alt=sse"
    async with client.stream("POST", url, json=build_body(history, message), headers=_headers()) as r:
        r.raise_for_status()
        async for line in r.aiter_lines():
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if not payload:
                continue
            text = extract_text(json.loads(payload))
            if text:
                yield text

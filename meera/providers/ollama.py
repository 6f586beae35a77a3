from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from meera.config import Config
from meera.prompt import SYSTEM_PROMPT
from meera.schema import ChatHistoryMessage, history_text


def configured() -> bool:
    # No API key needed, it's local
    return True


def build_payload(history: List[ChatHistoryMessage], message: str, *, stream: bool = False) -> Dict[str, Any]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    for h in history:
        messages.append({
            "role": "assistant" if h.role == "model" else "user",
            "content": history_text(h),
        })
    messages.append({"role": "user", "content": message})
    return {
        "model": Config.OLLAMA_MODEL,
        "messages": messages,
        "stream": stream,
    }


async def generate(client: httpx.AsyncClient, history: List[ChatHistoryMessage], message: str) -> str:
    base_url = Config.OLLAMA_URL.rstrip("/")
    r = await client.post(f"{base_url}/api/chat", json=build_payload(history, message))
    r.raise_for_status()
    data = r.json()
    return (data.get("message") or {}).get("content", "") or ""


async def stream(client: httpx.AsyncClient, history: List[ChatHistoryMessage], message: str) -> AsyncIterator[str]:
    """Ollama streams newline-delimited JSON objects until one has done=true."""
    base_url = Config.OLLAMA_URL.rstrip("/")
    payload = build_payload(history, message, stream=True)
    async with client.stream("POST", f"{base_url}/api/chat", json=payload) as r:
        r.raise_for_status()
        async for line in r.aiter_lines():
            if not line.strip():
                continue
            data = json.loads(line)
            chunk = (data.get("message") or {}).get("content", "")
            if chunk:
                yield chunk
            if data.get("done"):
                break

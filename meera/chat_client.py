from __future__ import annotations

from types import ModuleType
from typing import AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from meera.config import Config
from meera.errors import ChatRequestError, EmptyMessageError, ProviderNotFoundError
from meera.prompt import FALLBACK_RESPONSE, NOT_CONFIGURED_RESPONSE
from meera.providers import gemini as gemini_provider
from meera.providers import ollama as ollama_provider
from meera.schema import ChatHistoryMessage

# Provider registry
PROVIDERS: Dict[str, ModuleType] = {
    "gemini": gemini_provider,
    "ollama": ollama_provider,
}


def validate_message(message: str) -> str:
    """Return the trimmed message, or raise EmptyMessageError before any network call."""
    text = (message or "").strip()
    if not text:
        raise EmptyMessageError()
    return text


class ChatClient:
    """Sends conversation history plus a new message to the remote chat model.

    No retries: a failed request raises ChatRequestError and the caller decides
    what the user sees.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            provider: Provider name (defaults to Config.CHAT_PROVIDER)
            timeout: Request timeout in seconds (defaults to Config.REQUEST_TIMEOUT_SECONDS)
            transport: Optional httpx transport, used by tests to fake the remote side
        """
        self.provider_name = (provider or Config.CHAT_PROVIDER).strip().lower()
        if self.provider_name not in PROVIDERS:
            raise ProviderNotFoundError(
                f"Unknown provider '{self.provider_name}'. Valid: {', '.join(PROVIDERS.keys())}"
            )
        self.timeout = timeout if timeout is not None else Config.REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def provider(self) -> ModuleType:
        return PROVIDERS[self.provider_name]

    @property
    def configured(self) -> bool:
        return self.provider.configured()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def send(self, history: List[ChatHistoryMessage], message: str) -> str:
        """Send message to the model and get the full response text.

        Args:
            history: Prior turns in the remote schema, oldest first
            message: The new user message

        Returns:
            Non-empty response text (the fallback text when the model returned none)

        Raises:
            EmptyMessageError: If message is empty after trimming
            ChatRequestError: If the remote call fails
        """
        text = validate_message(message)

        if not self.configured:
            logger.warning(f"[CHAT] Provider '{self.provider_name}' is not configured")
            return NOT_CONFIGURED_RESPONSE

        try:
            async with self._client() as client:
                response_text = await self.provider.generate(client, history, text)
        except httpx.HTTPStatusError as e:
            logger.error(f"[CHAT] {self.provider_name} returned HTTP {e.response.status_code}")
            raise ChatRequestError(
                f"HTTP {e.response.status_code} from {self.provider_name}",
                provider=self.provider_name,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"[CHAT] {self.provider_name} request failed: {e!r}")
            raise ChatRequestError(str(e) or type(e).__name__, provider=self.provider_name) from e
        except ValueError as e:
            logger.error(f"[CHAT] Malformed response from {self.provider_name}: {e}")
            raise ChatRequestError(f"Malformed response: {e}", provider=self.provider_name) from e

        if not response_text.strip():
            logger.warning(f"[CHAT] Empty response from {self.provider_name}, using fallback")
            return FALLBACK_RESPONSE
        return response_text

    async def stream(self, history: List[ChatHistoryMessage], message: str) -> AsyncIterator[str]:
        """Streaming variant: yields response chunks as they arrive."""
        text = validate_message(message)

        if not self.configured:
            logger.warning(f"[CHAT] Provider '{self.provider_name}' is not configured")
            yield NOT_CONFIGURED_RESPONSE
            return

        produced = False
        try:
            async with self._client() as client:
                async for chunk in self.provider.stream(client, history, text):
                    produced = produced or bool(chunk.strip())
                    yield chunk
        except httpx.HTTPStatusError as e:
            raise ChatRequestError(
                f"HTTP {e.response.status_code} from {self.provider_name}",
                provider=self.provider_name,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ChatRequestError(str(e) or type(e).__name__, provider=self.provider_name) from e
        except ValueError as e:
            raise ChatRequestError(f"Malformed stream: {e}", provider=self.provider_name) from e

        if not produced:
            yield FALLBACK_RESPONSE

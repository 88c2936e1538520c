"""
OpenRouter chat-completion client used by text nodes routed to chat-style
providers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from noder.config import EngineConfig
from noder.errors import ProviderError

logger = logging.getLogger(__name__)


class OpenRouterClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = 2,
        retry_delay: float = EngineConfig.RETRY_DELAY_SECONDS,
        app_title: str = "noder",
    ):
        self.base_url = (base_url or EngineConfig.OPENROUTER_BASE_URL).rstrip("/")
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(EngineConfig.REQUEST_TIMEOUT_SECONDS, connect=20.0)
        )
        self._owns_http = http_client is None
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.app_title = app_title

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def chat_completion(
        self, *, api_key: str, model: str, messages: list[dict[str, Any]]
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_title,
        }
        payload = {"model": model, "messages": messages}

        last_error: ProviderError | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._http.post(
                    f"{self.base_url}/chat/completions", headers=headers, json=payload
                )
            except httpx.HTTPError as exc:
                last_error = ProviderError(f"OpenRouter request failed: {exc}")
            else:
                if response.status_code < 400:
                    return response.json()
                last_error = ProviderError(
                    f"OpenRouter API error ({response.status_code}): {response.text[:500]}",
                    status_code=response.status_code,
                )
                if response.status_code < 500 and response.status_code != 429:
                    raise last_error

            if attempt < self.max_retries:
                logger.warning(
                    "[OpenRouter] chat completion failed (attempt %d/%d), retrying...",
                    attempt,
                    self.max_retries,
                )
                await asyncio.sleep(self.retry_delay * attempt)

        if last_error is None:
            raise ProviderError(f"OpenRouter request was not attempted (max_retries={self.max_retries})")
        raise last_error

"""Chat completion client with API-key failover."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from telechat_bot.config import CompletionConfig
from telechat_bot.errors import CompletionError, ConfigError, CredentialsExhaustedError
from telechat_bot.log import get_logger

logger = get_logger(__name__)

Prompt = list[dict[str, str]]


@dataclass
class CompletionResult:
    text: str
    reasoning: str = ""


class CredentialPool:
    """Ordered API keys with a circular cursor.

    The cursor is only reachable through ``current()`` and ``rotate()``,
    both atomic under one lock.
    """

    def __init__(self, keys: Sequence[str]):
        cleaned = tuple(k.strip() for k in keys if k and k.strip())
        if not cleaned:
            raise ConfigError("at least one completion API key is required")
        self._keys = cleaned
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> str:
        with self._lock:
            return self._keys[self._index]

    def rotate(self, failed: str | None = None) -> None:
        """Advance to the next key.

        When ``failed`` is given and another caller has already moved past
        it, the cursor is left alone so that key is not skipped twice.
        """
        with self._lock:
            if len(self._keys) <= 1:
                return
            if failed is not None and self._keys[self._index] != failed:
                return
            self._index = (self._index + 1) % len(self._keys)
            logger.info("api_key_rotated", key_index=self._index, pool_size=len(self._keys))


class CompletionGateway:
    """Sends prompts to an OpenAI-compatible chat completion endpoint.

    Any failed attempt (network error, non-200, empty choices) rotates to the
    next key and retries immediately, once per key in the pool.
    """

    def __init__(
        self,
        config: CompletionConfig,
        pool: CredentialPool,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._pool = pool
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout)

    @property
    def model_name(self) -> str:
        return self._config.model

    async def send(self, messages: Prompt) -> CompletionResult:
        attempts = max(len(self._pool), 1)
        last_error: CompletionError | None = None

        for attempt in range(1, attempts + 1):
            key = self._pool.current()
            try:
                return await self._attempt(messages, key)
            except CompletionError as e:
                last_error = e
                logger.warning(
                    "completion_attempt_failed",
                    attempt=attempt,
                    attempts=attempts,
                    status=e.status_code,
                    rotate_reason="auth_or_rate_limit" if e.should_rotate else "other",
                    error=str(e),
                )
                if attempt < attempts:
                    self._pool.rotate(failed=key)

        raise CredentialsExhaustedError(attempts, last_error)

    async def _attempt(self, messages: Prompt, key: str) -> CompletionResult:
        payload: dict[str, Any] = {"model": self._config.model, "messages": messages}
        logger.debug("api_request", model=self._config.model, message_count=len(messages))

        try:
            response = await self._http.post(
                self._config.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {key}"},
                timeout=self._config.timeout,
            )
        except httpx.HTTPError as e:
            raise CompletionError(f"request failed: {e!r}") from e

        if response.status_code != 200:
            raise CompletionError(
                f"api error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError("response is not valid JSON", status_code=200, body=response.text) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise CompletionError("api returned no choices", status_code=200, body=response.text)

        message = choices[0].get("message") or {}
        logger.debug("api_response", model=self._config.model, finish_reason=choices[0].get("finish_reason"))
        return CompletionResult(
            text=message.get("content") or "",
            reasoning=message.get("reasoning") or message.get("reasoning_content") or "",
        )

    async def close(self) -> None:
        await self._http.aclose()

"""Abstract base class for LLM providers, plus the shared HTTP plumbing."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import httpx

from toolrelay.llm.dialect import DialectRules
from toolrelay.llm.errors import ProviderError
from toolrelay.llm.sse import iter_sse_payloads
from toolrelay.llm.types import LLMResponse, Message, StreamChunk

logger = logging.getLogger(__name__)


class Provider(ABC):
    """
    A provider encapsulates access to a single LLM vendor endpoint.

    Implementations must support:
      - Availability checks (``is_available``).
      - Non-streaming completions (``call_with_messages``).
      - Streaming completions yielding canonical ``StreamChunk`` objects
        (``call_with_messages_stream``).  The last chunk has
        ``type="done"``.
    """

    dialect: DialectRules

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry name of the provider (e.g. ``"groq"``)."""
        ...

    @property
    def model(self) -> str | None:
        return None

    @abstractmethod
    def is_available(self) -> bool:
        """True when the provider has what it needs to make a call."""
        ...

    @abstractmethod
    async def call_with_messages(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> LLMResponse:
        """Run one non-streaming completion over a prepared message list."""
        ...

    @abstractmethod
    async def call_with_messages_stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream one completion.

        Yields canonical ``StreamChunk`` objects, finite and consumed once.
        """
        ...
        # Make the method an async generator so sub-classes can ``yield``.
        # This line is unreachable but satisfies the type checker.
        if False:  # pragma: no cover
            yield StreamChunk()  # type: ignore[misc]

    async def call(
        self,
        message: str,
        history: list[Message] | None = None,
        tools: list[dict] | None = None,
    ) -> LLMResponse:
        """Convenience: append *message* as a user turn and call the model."""
        messages = list(history or []) + [Message(role="user", content=message)]
        return await self.call_with_messages(messages, tools)


class HTTPProvider(Provider):
    """
    Provider base with retrying JSON POST and SSE streaming over ``httpx``.

    Parameters
    ----------
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Number of automatic retries on transient HTTP errors (5xx, 429) and
        transport failures.  A stream is never retried once it has yielded.
    retry_base_delay:
        First backoff delay in seconds; doubles on every retry.
    transport:
        Optional ``httpx`` transport, mainly for tests.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _backoff(self, attempt: int) -> None:
        delay = self._retry_base_delay * (2 ** attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    def _require_available(self) -> None:
        if not self.is_available():
            raise ProviderError(
                f"{self.name} provider is not configured",
                error_code="not_configured",
                provider=self.name,
            )

    # ------------------------------------------------------------------
    # Non-streaming request
    # ------------------------------------------------------------------

    async def _post_json(
        self, url: str, body: dict, headers: dict[str, str]
    ) -> Any:
        last_error: ProviderError | None = None
        for attempt in range(1 + self._max_retries):
            if attempt:
                await self._backoff(attempt - 1)
            try:
                async with self._client() as client:
                    resp = await client.post(url, json=body, headers=headers)
            except httpx.TransportError as exc:
                logger.warning(
                    "%s: transport error (attempt %d): %s", self.name, attempt + 1, exc
                )
                last_error = ProviderError(
                    f"{self.name} transport error: {exc}",
                    error_code="transport_error",
                    provider=self.name,
                )
                last_error.__cause__ = exc
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                logger.warning(
                    "%s: HTTP %d (attempt %d)", self.name, resp.status_code, attempt + 1
                )
                last_error = ProviderError.from_response(self.name, resp)
                continue
            if resp.status_code >= 400:
                raise ProviderError.from_response(self.name, resp)

            try:
                return resp.json()
            except ValueError as exc:
                raise ProviderError(
                    f"{self.name} returned invalid JSON",
                    status_code=resp.status_code,
                    error_code="invalid_response",
                    provider=self.name,
                ) from exc

        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Streaming request
    # ------------------------------------------------------------------

    async def _stream_payloads(
        self, url: str, body: dict, headers: dict[str, str]
    ) -> AsyncIterator[Any]:
        """Yield parsed SSE ``data:`` payloads, retrying only before the first one."""
        last_error: ProviderError | None = None
        for attempt in range(1 + self._max_retries):
            if attempt:
                await self._backoff(attempt - 1)
            started = False
            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST", url, json=body, headers=headers
                    ) as response:
                        if response.status_code >= 400:
                            # Read body so the connection is released.
                            raw = await response.aread()
                            error = ProviderError.from_response(self.name, response, raw)
                            if response.status_code == 429 or response.status_code >= 500:
                                logger.warning(
                                    "%s: HTTP %d on stream (attempt %d)",
                                    self.name, response.status_code, attempt + 1,
                                )
                                last_error = error
                                continue
                            raise error

                        async for payload in iter_sse_payloads(response):
                            started = True
                            yield payload
                        return  # success
            except httpx.TransportError as exc:
                error = ProviderError(
                    f"{self.name} transport error: {exc}",
                    error_code="transport_error",
                    provider=self.name,
                )
                if started:
                    raise error from exc
                logger.warning(
                    "%s: transport error on stream (attempt %d): %s",
                    self.name, attempt + 1, exc,
                )
                error.__cause__ = exc
                last_error = error

        assert last_error is not None
        raise last_error

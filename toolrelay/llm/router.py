"""
LLM Router -- an explicit registry of providers.

The router is passed into the orchestrator rather than looked up globally,
so tests can register fakes and several orchestrators can share one set of
read-only provider instances.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from toolrelay.config import ToolrelayConfig
from toolrelay.llm.providers import create_provider
from toolrelay.llm.providers.base import Provider
from toolrelay.llm.types import LLMResponse, Message, StreamChunk

logger = logging.getLogger(__name__)


class LLMRouter:
    """
    Routes chat requests to a named provider.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._active: str | None = None

    @classmethod
    def from_config(
        cls,
        cfg: ToolrelayConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> LLMRouter:
        """Build a router with one provider per configured entry."""
        router = cls()
        for name, provider_cfg in cfg.providers.items():
            router.register_provider(name, create_provider(provider_cfg, name=name, transport=transport))
        router.set_active(cfg.llm.active)
        return router

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def register_provider(self, name: str, provider: Provider) -> None:
        """Register a provider under *name*.  Overwrites any existing entry."""
        self._providers[name] = provider
        if self._active is None:
            self._active = name

    def set_active(self, name: str) -> None:
        """
        Switch the active provider.

        Raises ``KeyError`` if *name* has not been registered.
        """
        if name not in self._providers:
            raise KeyError(
                f"Unknown provider {name!r}. "
                f"Registered: {list(self._providers)}"
            )
        self._active = name

    @property
    def active_name(self) -> str | None:
        """Return the name of the currently active provider (or ``None``)."""
        return self._active

    @property
    def active_provider(self) -> Provider:
        """
        Return the active ``Provider`` instance.

        Raises ``RuntimeError`` if no provider is active.
        """
        if self._active is None or self._active not in self._providers:
            raise RuntimeError("No active LLM provider")
        return self._providers[self._active]

    @property
    def provider_names(self) -> list[str]:
        """Return the list of registered provider names."""
        return list(self._providers)

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def resolve(self, name: str | None = None) -> Provider:
        """
        Return the provider registered as *name*, or the active one.

        The active selection is left unchanged.  Raises ``KeyError`` for an
        unknown name.
        """
        if name is None:
            return self.active_provider
        provider = self._providers.get(name)
        if provider is None:
            raise KeyError(f"Unknown provider {name!r}. Registered: {list(self._providers)}")
        return provider

    def available(self) -> dict[str, bool]:
        """Map of provider name -> ``is_available()``."""
        return {name: p.is_available() for name, p in self._providers.items()}

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        *,
        provider: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream canonical chunks from *provider* (default: the active one)."""
        target = self.resolve(provider)
        async for chunk in target.call_with_messages_stream(messages, tools):
            yield chunk

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        *,
        provider: str | None = None,
    ) -> LLMResponse:
        """Non-streaming call to *provider* (default: the active one)."""
        return await self.resolve(provider).call_with_messages(messages, tools)

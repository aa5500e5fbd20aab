"""Vendor adapters and the factory that builds them from config."""

from __future__ import annotations

import httpx

from toolrelay.config import (
    BaseProviderConfig,
    CerebrasConfig,
    DeepSeekConfig,
    GroqConfig,
    LiminalityConfig,
    OpenAICompatConfig,
    ResponsesConfig,
    XAIConfig,
)
from toolrelay.llm.providers.base import HTTPProvider, Provider
from toolrelay.llm.providers.liminality import LiminalityProvider
from toolrelay.llm.providers.openai_compat import (
    CerebrasProvider,
    DeepSeekProvider,
    GroqProvider,
    OpenAICompatProvider,
    XAIProvider,
)
from toolrelay.llm.providers.responses import ResponsesEventMapper, ResponsesProvider

_PROVIDER_CLASSES: dict[type[BaseProviderConfig], type[HTTPProvider]] = {
    OpenAICompatConfig: OpenAICompatProvider,
    GroqConfig: GroqProvider,
    XAIConfig: XAIProvider,
    DeepSeekConfig: DeepSeekProvider,
    CerebrasConfig: CerebrasProvider,
    LiminalityConfig: LiminalityProvider,
    ResponsesConfig: ResponsesProvider,
}


def create_provider(
    config: BaseProviderConfig,
    *,
    name: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HTTPProvider:
    """Instantiate the adapter matching *config*'s vendor."""
    cls = _PROVIDER_CLASSES.get(type(config))
    if cls is None:
        raise ValueError(f"No provider adapter for {type(config).__name__}")
    return cls(config, name=name, transport=transport)  # type: ignore[arg-type]


__all__ = [
    "CerebrasProvider",
    "DeepSeekProvider",
    "GroqProvider",
    "HTTPProvider",
    "LiminalityProvider",
    "OpenAICompatProvider",
    "Provider",
    "ResponsesEventMapper",
    "ResponsesProvider",
    "XAIProvider",
    "create_provider",
]

"""Provider registry and construction."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from querybuddy.llm.anthropic_provider import AnthropicProvider
from querybuddy.llm.base import LLMProvider
from querybuddy.llm.copilot_provider import CopilotProvider
from querybuddy.llm.gemini_provider import GeminiProvider
from querybuddy.llm.models import ProviderType
from querybuddy.llm.openai_provider import OpenAIProvider, OpenRouterProvider, VercelProvider

if TYPE_CHECKING:
    from querybuddy.core.config import Settings

PROVIDERS: dict[ProviderType, type] = {
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.ANTHROPIC: AnthropicProvider,
    ProviderType.GOOGLE: GeminiProvider,
    ProviderType.OPENROUTER: OpenRouterProvider,
    ProviderType.VERCEL: VercelProvider,
    ProviderType.COPILOT: CopilotProvider,
}


def create_provider(
    provider_type: ProviderType | str,
    api_key: str,
    *,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> LLMProvider:
    """Create a provider instance for a provider type.

    Args:
        provider_type: A ProviderType or its string value ("openai", ...).
        api_key: Vendor API key. Ignored by the Copilot bridge.
        settings: Optional settings supplying timeouts, max_tokens and the
            Copilot CLI location.
        client: Optional shared httpx client for the HTTP adapters.

    Raises:
        ValueError: If the provider type is unknown.
    """
    try:
        kind = ProviderType(provider_type)
    except ValueError:
        available = ", ".join(p.value for p in PROVIDERS)
        raise ValueError(f"Unknown provider '{provider_type}'. Available: {available}") from None

    timeout = settings.llm.request_timeout if settings else None

    if kind == ProviderType.COPILOT:
        kwargs: dict = {}
        if settings:
            kwargs["cli_path"] = settings.copilot.cli_path
            kwargs["cli_args"] = settings.copilot.cli_args
            kwargs["timeout"] = timeout
        return CopilotProvider(api_key, **kwargs)

    kwargs = {"client": client}
    if timeout is not None:
        kwargs["timeout"] = timeout
    if kind == ProviderType.ANTHROPIC and settings:
        kwargs["max_tokens"] = settings.llm.max_tokens

    return PROVIDERS[kind](api_key, **kwargs)

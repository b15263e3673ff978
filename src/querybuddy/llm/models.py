"""Model identifiers and the provider each one is served by."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from querybuddy.llm.errors import ProviderError


class ProviderType(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    VERCEL = "vercel"
    COPILOT = "copilot"


# Prefix → provider for ids of the form "<prefix>/<slug>".
_PREFIXED: dict[str, ProviderType] = {
    "anthropic/": ProviderType.ANTHROPIC,
    "google/": ProviderType.GOOGLE,
    "openrouter/": ProviderType.OPENROUTER,
    "vercel/": ProviderType.VERCEL,
    "copilot/": ProviderType.COPILOT,
}

_OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4", "codex-")


@dataclass(frozen=True)
class AIModel:
    """A parsed model id.

    ``id`` is the full identifier as the user selected it (e.g.
    ``"anthropic/claude-sonnet-4-5"``); ``slug`` is what the vendor API
    expects (``"claude-sonnet-4-5"``).
    """

    id: str
    provider: ProviderType
    slug: str

    @classmethod
    def parse(cls, model_id: str) -> AIModel:
        for prefix, provider in _PREFIXED.items():
            if model_id.startswith(prefix):
                slug = model_id[len(prefix):]
                if not slug:
                    break
                return cls(id=model_id, provider=provider, slug=slug)

        if model_id.startswith(_OPENAI_PREFIXES):
            return cls(id=model_id, provider=ProviderType.OPENAI, slug=model_id)
        if model_id.startswith("gemini-"):
            return cls(id=model_id, provider=ProviderType.GOOGLE, slug=model_id)

        raise ProviderError(f"Unknown model: {model_id}")

    @property
    def api_model_id(self) -> str:
        return self.slug

    def __str__(self) -> str:
        return self.id


@dataclass
class ModelInfo:
    id: str
    name: str
    provider: ProviderType
    logo_provider: str | None = None


def get_available_models() -> list[ModelInfo]:
    """Built-in models offered without querying any vendor."""
    return [
        ModelInfo(id="gpt-5", name="GPT-5", provider=ProviderType.OPENAI),
        ModelInfo(id="gpt-5-mini", name="GPT-5 Mini", provider=ProviderType.OPENAI),
        ModelInfo(id="gemini-3-flash-preview", name="Gemini 3 Flash", provider=ProviderType.GOOGLE),
        ModelInfo(id="gemini-3-pro-preview", name="Gemini 3 Pro", provider=ProviderType.GOOGLE),
    ]

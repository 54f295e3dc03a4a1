"""Catalogue of known OpenAI-compatible providers and their models."""

from __future__ import annotations

from dataclasses import dataclass, field

__all__ = [
    "ProviderInfo",
    "PROVIDERS",
    "provider_for_model",
    "provider_for_endpoint",
    "models_for_provider",
    "is_model_free",
    "default_fallback_models",
]


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    """Static description of an AI provider."""

    name: str
    display_name: str
    base_url: str
    help_url: str
    free_models: tuple[str, ...] = ()
    paid_models: tuple[str, ...] = field(default_factory=tuple)

    @property
    def models(self) -> tuple[str, ...]:
        return self.free_models + self.paid_models


PROVIDERS: dict[str, ProviderInfo] = {
    "openrouter": ProviderInfo(
        name="openrouter",
        display_name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        help_url="https://openrouter.ai/docs",
        free_models=(
            "moonshotai/kimi-k2:free",
            "meta-llama/llama-3.3-70b-instruct:free",
            "meta-llama/llama-3.1-8b-instruct:free",
            "microsoft/phi-3-mini-128k-instruct:free",
            "google/gemma-2-9b-it:free",
        ),
        paid_models=("gpt-4-turbo", "gpt-4", "claude-3-opus", "claude-3-sonnet", "gemini-pro"),
    ),
    "openai": ProviderInfo(
        name="openai",
        display_name="OpenAI",
        base_url="https://api.openai.com/v1",
        help_url="https://platform.openai.com/docs",
        paid_models=("gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"),
    ),
    "anthropic": ProviderInfo(
        name="anthropic",
        display_name="Anthropic",
        base_url="https://api.anthropic.com/v1",
        help_url="https://docs.anthropic.com/claude/reference",
        paid_models=("claude-3-opus", "claude-3-sonnet", "claude-3-haiku"),
    ),
    "google": ProviderInfo(
        name="google",
        display_name="Google AI",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        help_url="https://cloud.google.com/ai/docs",
        paid_models=("gemini-pro", "gemini-1.5-pro"),
    ),
}

# Explicit owner for model ids listed by more than one provider.
_MODEL_OWNERS: dict[str, str] = {
    "gpt-4-turbo": "openai",
    "gpt-4": "openai",
    "claude-3-opus": "anthropic",
    "claude-3-sonnet": "anthropic",
    "gemini-pro": "google",
}


def provider_for_model(model_name: str) -> ProviderInfo | None:
    """Return the provider that serves ``model_name``, if known."""

    key = (model_name or "").strip()
    if not key:
        return None
    owner = _MODEL_OWNERS.get(key)
    if owner:
        return PROVIDERS[owner]
    for provider in PROVIDERS.values():
        if key in provider.models:
            return provider
    return None


def provider_for_endpoint(endpoint: str) -> ProviderInfo | None:
    """Match a configured API endpoint against the catalogue."""

    normalized = (endpoint or "").strip().rstrip("/").lower()
    if not normalized:
        return None
    for provider in PROVIDERS.values():
        if normalized.startswith(provider.base_url.lower()):
            return provider
    return None


def models_for_provider(provider_name: str) -> tuple[str, ...]:
    provider = PROVIDERS.get(provider_name)
    return provider.models if provider else ()


def is_model_free(model_name: str) -> bool:
    for provider in PROVIDERS.values():
        if model_name in provider.free_models:
            return True
    return False


def default_fallback_models() -> list[str]:
    """Ordered fallback list used when settings do not configure one."""

    return list(PROVIDERS["openrouter"].free_models)

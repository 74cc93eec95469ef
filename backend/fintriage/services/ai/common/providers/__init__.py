"""Provider factory: builds a provider from an explicit credential."""

from __future__ import annotations

import logging

from fintriage.core.config import get_settings

from .base import BaseProvider, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "ProviderResult", "MockProvider", "UnknownProviderError"]


class UnknownProviderError(ValueError):
    pass


def get_provider(provider_name: str, *, api_key: str | None) -> BaseProvider | None:
    """Return a provider for *provider_name* using *api_key*.

    ``None`` means refinement is unavailable: no credential, or the provider
    is not in the ``AI_ALLOWED_PROVIDERS`` allowlist. ``mock`` needs no key.
    Unknown names raise ``UnknownProviderError``.
    """
    name = (provider_name or "").lower().strip()
    allowed = get_settings().ai_allowed_providers

    if allowed and name not in allowed:
        logger.warning("Provider %r not in allowlist, AI refinement disabled", name)
        return None

    if name == "mock":
        return MockProvider()

    if name == "claude":
        from .claude import ClaudeProvider

        factory = ClaudeProvider
    elif name == "groq":
        from .groq import GroqProvider

        factory = GroqProvider
    elif name == "openai":
        from .openai import OpenAIProvider

        factory = OpenAIProvider
    else:
        raise UnknownProviderError(f"Unknown AI provider: {provider_name!r}")

    if not api_key:
        logger.info("No API key for provider %r, AI refinement disabled", name)
        return None
    return factory(api_key=api_key)

"""AI Router: resolves provider, model and call limits for one refinement run."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fintriage.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedConfig:
    """Final provider + model after applying defaults."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


def resolve(
    provider_name: str,
    *,
    api_key: str | None,
    model: str = "",
    timeout_seconds: float | None = None,
) -> ResolvedConfig | None:
    """Resolve a provider for *provider_name* with the caller's credential.

    Returns ``None`` when the provider cannot be used (no key, not allowed).
    Sampling limits come from settings; timeout falls back to
    ``AI_TIMEOUT_SECONDS``.
    """
    settings = get_settings()
    provider = get_provider(provider_name or "groq", api_key=api_key)
    if provider is None:
        return None

    return ResolvedConfig(
        provider=provider,
        model=(model or "").strip() or provider.default_model,
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=timeout_seconds if timeout_seconds is not None else settings.ai_timeout_seconds,
    )

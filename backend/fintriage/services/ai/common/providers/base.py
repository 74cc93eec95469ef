"""Provider contracts: the abstract base plus the shared JSON-over-HTTP call."""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"
    default_model: str = ""

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout_seconds: float = 8.0,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``.

        Transport and HTTP errors propagate; callers decide how to degrade.
        """


class HTTPProvider(BaseProvider):
    """A provider reached with one authenticated JSON POST per completion."""

    endpoint: str = ""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    @abc.abstractmethod
    def build_headers(self) -> dict[str, str]: ...

    @abc.abstractmethod
    def build_payload(
        self,
        prompt: str,
        *,
        system_prompt: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    def parse_reply(self, data: dict[str, Any]) -> tuple[str, int, int]:
        """Return ``(text, prompt_tokens, completion_tokens)`` from the decoded body."""

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout_seconds: float = 8.0,
    ) -> ProviderResult:
        model = model or self.default_model
        payload = self.build_payload(
            prompt,
            system_prompt=system_prompt,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(self.endpoint, headers=self.build_headers(), json=payload)
            resp.raise_for_status()
            data = resp.json()
        elapsed = (time.monotonic() - t0) * 1000

        text, prompt_tokens, completion_tokens = self.parse_reply(data)
        logger.debug("%s completion model=%s latency_ms=%.1f", self.name, model, elapsed)
        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=round(elapsed, 2),
        )

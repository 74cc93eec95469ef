"""Mock provider: canned reply for tests and keyless environments."""

from __future__ import annotations

from .base import BaseProvider, ProviderResult


class MockProvider(BaseProvider):
    name = "mock"
    default_model = "mock-v1"

    def __init__(self, reply: str = "{}") -> None:
        self._reply = reply
        self.prompts: list[str] = []

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
        self.prompts.append(prompt)
        return ProviderResult(
            raw_text=self._reply,
            model=model or self.default_model,
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(self._reply.split()),
        )

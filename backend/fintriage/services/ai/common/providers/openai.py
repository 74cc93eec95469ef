"""OpenAI chat completions; Groq reuses this through its compatible endpoint."""

from __future__ import annotations

from typing import Any

from .base import HTTPProvider


class OpenAIProvider(HTTPProvider):
    name = "openai"
    default_model = "gpt-4o-mini-2024-07-18"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, prompt, *, system_prompt, model, temperature, max_tokens) -> dict[str, Any]:
        messages = [{"role": "user", "content": prompt}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})
        return {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "messages": messages,
        }

    def parse_reply(self, data: dict[str, Any]) -> tuple[str, int, int]:
        text = data["choices"][0]["message"]["content"] or ""
        usage = data.get("usage") or {}
        return text, usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)

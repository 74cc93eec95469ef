"""Anthropic messages API."""

from __future__ import annotations

from typing import Any

from .base import HTTPProvider

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeProvider(HTTPProvider):
    name = "claude"
    default_model = "claude-3-5-haiku-20241022"
    endpoint = "https://api.anthropic.com/v1/messages"

    def build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def build_payload(self, prompt, *, system_prompt, model, temperature, max_tokens) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def parse_reply(self, data: dict[str, Any]) -> tuple[str, int, int]:
        # Replies are a list of content blocks; only text blocks carry the answer.
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage") or {}
        return text, usage.get("input_tokens", 0), usage.get("output_tokens", 0)

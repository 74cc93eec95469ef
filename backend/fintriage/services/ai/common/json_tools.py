"""Pull the first JSON object out of an LLM reply (code fences and chatter tolerated)."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str | None) -> dict[str, Any] | None:
    """Return the first decodable JSON object in *text*, or ``None``.

    Arrays and scalars are not accepted: every caller expects a field map.
    """
    if not text or not text.strip():
        return None

    candidates = [block.strip() for block in _FENCE_RE.findall(text)]
    candidates.append(text.strip())

    for candidate in candidates:
        parsed = _first_object(candidate)
        if parsed is not None:
            return parsed

    logger.debug("No JSON object found in model reply (%d chars)", len(text))
    return None


def _first_object(text: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except ValueError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None

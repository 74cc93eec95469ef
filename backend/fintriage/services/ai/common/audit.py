"""AI audit: one audit_logs row per model call made for a WhatsApp message."""

from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from fintriage.core.config import get_settings
from fintriage.services.commit_service import create_audit_log

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)

SCOPE_ACTIONS: dict[str, str] = {
    "finance_refine": "AI_FINANCE_REFINED",
}

# Result of turning the model reply into a proposal.
OUTCOME_PARSED = "parsed"
OUTCOME_NO_JSON = "no_json"
OUTCOME_INVALID = "invalid"


def _fingerprint(text: str) -> str:
    return hashlib.sha256((text or "").encode()).hexdigest()


def log_ai_run(
    db: Session,
    *,
    scope: str,
    provider_result: ProviderResult,
    prompt_text: str,
    parsed_output: dict[str, Any] | None,
    outcome: str = OUTCOME_PARSED,
    entity_id: str | None = None,
    actor_id: str | None = None,
    extra_meta: dict[str, Any] | None = None,
) -> None:
    """Stage the audit row for one call; committing is up to the caller.

    Message text never lands here unless ``AI_DEBUG_STORE_RAW=true``;
    prompt and reply are kept as SHA-256 fingerprints instead.
    """
    metadata: dict[str, Any] = {
        "scope": scope,
        "outcome": outcome,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_hash": _fingerprint(prompt_text),
        "response_hash": _fingerprint(provider_result.raw_text),
    }
    if get_settings().ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        metadata["response_raw"] = provider_result.raw_text
    if extra_meta:
        metadata.update(extra_meta)

    action = SCOPE_ACTIONS.get(scope)
    if action is None:
        logger.warning("No audit action registered for AI scope %r", scope)
        action = "AI_RUN"

    create_audit_log(
        db,
        entity_type="whatsapp_message" if entity_id else "ai",
        entity_id=entity_id or str(uuid.uuid4()),
        action=action,
        old_value=None,
        new_value=parsed_output,
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata=metadata,
    )

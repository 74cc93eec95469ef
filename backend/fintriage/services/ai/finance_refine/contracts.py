"""Finance refine scope contracts: optional fields proposed by the model."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from fintriage.services.triage.contracts import Classification, EntryType

REFINABLE_FIELDS = ("value", "type", "description", "category_id", "client_id", "weight", "shipping")


class AIFinanceRefineResult(BaseModel):
    """Model proposal for a message's candidate record.

    Every field is optional; an absent or empty field leaves the heuristic
    value untouched. Nothing here is committed without reviewer approval.
    """

    model_config = ConfigDict(extra="ignore")

    classification: Optional[Classification] = None
    value: Optional[str] = None
    type: Optional[EntryType] = None
    description: Optional[str] = None
    category_id: Optional[str] = None
    client_id: Optional[str] = None
    weight: Optional[str] = None
    shipping: Optional[str] = None

    @field_validator("classification", "type", mode="before")
    @classmethod
    def _drop_unknown_enum(cls, value: Any, info) -> Any:
        if value is None:
            return None
        text = str(value).strip().lower()
        enum_cls = Classification if info.field_name == "classification" else EntryType
        if text not in {member.value for member in enum_cls}:
            return None
        return text

    @field_validator("value", "description", "category_id", "client_id", "weight", "shipping", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            # Models answer numbers with a dot decimal mark.
            return str(value)
        if isinstance(value, str):
            return value.strip() or None
        return None

"""Triage contracts: reference snapshots and the reviewer's candidate draft.

Reference rows are copied out of the ORM into frozen dataclasses so the
classifier, extractor and matcher stay pure functions of plain values.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import StrEnum
from typing import Any, Optional


class Classification(StrEnum):
    TRANSACTION = "transaction"
    SALE = "sale"
    DISCARD = "discard"


class MessageStatus(StrEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class EntryType(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"


@dataclass(frozen=True)
class CategoryRef:
    id: str
    name: str
    parent_id: Optional[str] = None
    icon: Optional[str] = None


@dataclass(frozen=True)
class AccountRef:
    id: str
    name: str


@dataclass(frozen=True)
class ClientRef:
    id: str
    name: str
    phone: Optional[str] = None
    category: Optional[str] = None
    photo_url: Optional[str] = None


@dataclass(frozen=True)
class CandidateFields:
    """Raw output of the heuristic extractor; empty string means no signal."""

    value: str = ""
    type: EntryType = EntryType.EXPENSE
    category_id: str = ""
    account_id: str = ""
    client_id: str = ""
    weight: str = ""
    shipping: str = ""
    description: str = ""


@dataclass(frozen=True)
class CandidateRecord:
    value: str = ""
    date: str = ""
    type: EntryType = EntryType.EXPENSE
    description: str = ""
    category_id: str = ""
    account_id: str = ""
    client_id: str = ""
    weight: str = ""
    shipping: str = ""
    seller: str = ""

    def with_field(self, name: str, value: Any) -> "CandidateRecord":
        if name not in CANDIDATE_FIELDS:
            raise ValueError(f"Unknown candidate field: {name}")
        if name == "type":
            value = EntryType(value)
        else:
            value = "" if value is None else str(value)
        return replace(self, **{name: value})

    def to_dict(self) -> dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}


CANDIDATE_FIELDS = frozenset(f.name for f in fields(CandidateRecord))

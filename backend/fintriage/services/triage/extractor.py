"""Heuristic field extraction from free-text WhatsApp messages.

Each rule is a standalone pure function; ``extract()`` composes them in a
fixed order. Nothing here raises: a missing signal is an empty string or the
configured default.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .contracts import AccountRef, CandidateFields, CategoryRef, ClientRef, EntryType
from .matching import find_client_in_text, match_by_name, rank_client_matches

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_TYPE = EntryType.EXPENSE
INCOME_DESCRIPTION = "Venda/Recebimento"
EXPENSE_DESCRIPTION = "Pagamento/Despesa"

_NUMBER = r"\d+(?:\.\d{3})*(?:,\d{1,2})?|\d+(?:\.\d{1,2})?"

_DATE_SHAPED_RE = re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}")
_CONTENT_DATE_RE = re.compile(r"(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})")
_VALUE_LABEL_RE = re.compile(rf"valor:?\s*(?:r\$?\s*)?({_NUMBER})", re.IGNORECASE)
_CURRENCY_VALUE_RE = re.compile(rf"R\$ ?({_NUMBER})", re.IGNORECASE)
_DECIMAL_VALUE_RE = re.compile(r"(\d+(?:\.\d{3})*,\d{1,2})")
_WEIGHT_RE = re.compile(r"peso:?\s*(\d+(?:[.,]\d{1,2})?)\s*(?:g|gr|gramas)?", re.IGNORECASE)
_SHIPPING_RE = re.compile(r"frete:?\s*(?:r\$?\s*)?(\d+(?:[.,]\d{1,2})?)", re.IGNORECASE)
TYPE_LABEL_RE = re.compile(r"tipo:?\s*([a-zA-ZÀ-ÿ]+)", re.IGNORECASE)

# Captured spans stop at the next field keyword: labels are often chained on one line.
_CLIENT_LABEL_RE = re.compile(
    r"(?:cliente|nome)\s*[:\-]?\s*([^\n\r]+?)"
    r"(?=\s*(?:descricao|descrição|venda|tipo|valor|data|peso|frete|obs|R\$|$|\n|[,.]))",
    re.IGNORECASE,
)
_DESCRIPTION_LABEL_RE = re.compile(
    r"(?:descricao|descrição)\s*[:\-]?\s*(.+?)"
    r"(?=\s*(?:cliente|nome|tipo|valor|data|peso|frete|obs|R\$|$|\n))",
    re.IGNORECASE,
)

INCOME_LABELS = ("venda", "recebimento", "receita", "entrada", "lucro")
EXPENSE_LABELS = ("despesa", "gasto", "saída", "saida", "pagamento", "compra")

# Expense verbs are checked before receipt verbs.
_EXPENSE_KEYWORD_RES = tuple(
    re.compile(pattern)
    for pattern in (
        r"paguei",
        r"\bpago\b",
        r"gasto",
        r"despesa",
        r"comprei",
        r"compra",
        r"saída",
        r"transferi",
    )
)
INCOME_KEYWORDS = (
    "recebi",
    "recebido",
    "recebimento",
    "pix recebido",
    "cliente pagou",
    "pagou",
    "depositou",
    "depósito",
    "entrada",
    "venda",
)


def mask_dates(content: str) -> str:
    return _DATE_SHAPED_RE.sub(" [DATE] ", content or "")


def extract_value(content: str) -> str:
    masked = mask_dates(content)
    for pattern in (_VALUE_LABEL_RE, _CURRENCY_VALUE_RE, _DECIMAL_VALUE_RE):
        match = pattern.search(masked)
        if match:
            return match.group(1)
    return ""


def _entry_type_from_label(word: str) -> Optional[EntryType]:
    word = word.lower()
    if any(label in word for label in INCOME_LABELS):
        return EntryType.INCOME
    if any(label in word for label in EXPENSE_LABELS):
        return EntryType.EXPENSE
    return None


def extract_entry_type(content: str, default: EntryType = DEFAULT_ENTRY_TYPE) -> EntryType:
    """Label first, then expense keywords, then income keywords, then *default*.

    A ``tipo:`` word that names neither type is ignored.
    """
    lower = (content or "").lower()

    label = TYPE_LABEL_RE.search(lower)
    if label:
        resolved = _entry_type_from_label(label.group(1))
        if resolved is not None:
            return resolved

    if any(pattern.search(lower) for pattern in _EXPENSE_KEYWORD_RES):
        return EntryType.EXPENSE
    if any(keyword in lower for keyword in INCOME_KEYWORDS):
        return EntryType.INCOME
    return EntryType(default)


def match_category(content: str, categories: Sequence[CategoryRef]) -> str:
    match = match_by_name(content, categories)
    return match.id if match else ""


def match_account(content: str, accounts: Sequence[AccountRef]) -> str:
    match = match_by_name(content, accounts)
    return match.id if match else ""


def extract_client_label(content: str) -> str:
    """Lowercased name following a ``cliente:``/``nome:`` label, or ''."""
    match = _CLIENT_LABEL_RE.search(content or "")
    if not match:
        return ""
    return match.group(1).strip().lower()


def resolve_client(content: str, clients: Sequence[ClientRef]) -> str:
    if not clients:
        return ""

    search_name = extract_client_label(content)
    if search_name:
        ranked = rank_client_matches(search_name, clients)
        if ranked:
            return ranked[0].id

    found = find_client_in_text(content, clients)
    return found.id if found else ""


def extract_weight(content: str) -> str:
    match = _WEIGHT_RE.search((content or "").lower())
    return match.group(1) if match else ""


def extract_shipping(content: str) -> str:
    match = _SHIPPING_RE.search((content or "").lower())
    return match.group(1) if match else ""


def extract_description(content: str, entry_type: EntryType) -> str:
    match = _DESCRIPTION_LABEL_RE.search(content or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    return INCOME_DESCRIPTION if entry_type == EntryType.INCOME else EXPENSE_DESCRIPTION


def extract_date(content: str, received_at: Optional[datetime], tz_name: str = "America/Sao_Paulo") -> str:
    """ISO date from the first DD/MM/YYYY in the text, else the receipt day in *tz_name*."""
    match = _CONTENT_DATE_RE.search(content or "")
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            logger.debug("Ignoring impossible date %s in message content", match.group(0))

    if received_at is None:
        received_at = datetime.now(timezone.utc)
    if received_at.tzinfo is None:
        # SQLite hands back naive UTC values.
        received_at = received_at.replace(tzinfo=timezone.utc)
    return received_at.astimezone(ZoneInfo(tz_name)).date().isoformat()


def extract(
    content: str,
    categories: Sequence[CategoryRef],
    accounts: Sequence[AccountRef] = (),
    clients: Sequence[ClientRef] = (),
    *,
    default_type: EntryType = DEFAULT_ENTRY_TYPE,
) -> CandidateFields:
    content = content or ""
    entry_type = extract_entry_type(content, default_type)
    return CandidateFields(
        value=extract_value(content),
        type=entry_type,
        category_id=match_category(content, categories),
        account_id=match_account(content, accounts),
        client_id=resolve_client(content, clients),
        weight=extract_weight(content),
        shipping=extract_shipping(content),
        description=extract_description(content, entry_type),
    )

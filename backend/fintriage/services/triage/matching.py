"""Reference matching: resolve names found in free text to category/account/client ids."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Optional, TypeVar

from .contracts import ClientRef

_SEPARATORS_RE = re.compile(r"[.,\-]")
_NON_DIGITS_RE = re.compile(r"\D")

MIN_CLIENT_NAME_LENGTH = 3
LOCAL_NUMBER_MIN_DIGITS = 10

_Ref = TypeVar("_Ref")


def _longest_first(refs: Iterable[_Ref]) -> list[_Ref]:
    return sorted(refs, key=lambda ref: len(getattr(ref, "name", "") or ""), reverse=True)


def match_by_name(text: str, refs: Sequence[_Ref]) -> Optional[_Ref]:
    """Return the reference whose name occurs in *text*, trying longest names first."""
    lower = (text or "").lower()
    if not lower:
        return None
    for ref in _longest_first(refs):
        name = (getattr(ref, "name", "") or "").strip().lower()
        if name and name in lower:
            return ref
    return None


def rank_client_matches(search_name: str, clients: Sequence[ClientRef]) -> list[ClientRef]:
    """Clients whose name contains *search_name* or is contained by it.

    Ordered exact match first, then names starting with the search string,
    then longer names.
    """
    search = (search_name or "").strip().lower()
    if not search:
        return []

    matches = []
    for client in clients:
        name = (client.name or "").lower()
        if not name:
            continue
        if search in name or name in search:
            matches.append(client)

    def _rank(client: ClientRef) -> tuple[int, int, int]:
        name = client.name.lower()
        return (
            0 if name == search else 1,
            0 if name.startswith(search) else 1,
            -len(name),
        )

    return sorted(matches, key=_rank)


def _strip_separators(value: str) -> str:
    return _SEPARATORS_RE.sub(" ", value)


def find_client_in_text(text: str, clients: Sequence[ClientRef]) -> Optional[ClientRef]:
    """Scan the whole message for any known client name, longest first."""
    lower = (text or "").lower()
    if not lower:
        return None
    clean_lower = _strip_separators(lower)

    for client in _longest_first(clients):
        name = (client.name or "").lower()
        if len(name) < MIN_CLIENT_NAME_LENGTH:
            continue
        if name in lower or _strip_separators(name) in clean_lower:
            return client
    return None


def normalize_phone(raw: Optional[str], country_code: str = "55") -> str:
    """Keep digits only and drop a leading country code when a local number remains."""
    digits = _NON_DIGITS_RE.sub("", (raw or "").split("@", 1)[0])
    if country_code and digits.startswith(country_code) and len(digits) > LOCAL_NUMBER_MIN_DIGITS:
        return digits[len(country_code):]
    return digits


def match_sender(
    remote_jid: Optional[str],
    contacts: Sequence[ClientRef],
    *,
    country_code: str = "55",
) -> Optional[ClientRef]:
    """Best-effort sender identity for display; equality or one-sided suffix match."""
    sender = normalize_phone(remote_jid, country_code)
    if not sender:
        return None

    for contact in contacts:
        if not contact.phone:
            continue
        phone = normalize_phone(contact.phone, country_code)
        if not phone:
            continue
        if sender == phone or phone.endswith(sender) or sender.endswith(phone):
            return contact
    return None

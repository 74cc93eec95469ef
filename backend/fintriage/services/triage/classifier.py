"""Queue classification for inbound WhatsApp messages."""

from __future__ import annotations

import re

from .contracts import Classification
from .extractor import TYPE_LABEL_RE

# Sale vocabulary is checked before transaction vocabulary; "cliente" and
# "pedido" overlap both and the business is sale-first.
SALE_BEFORE_TRANSACTION = True

SALE_LABEL = "venda"
TRANSACTION_LABELS = ("recebimento", "pagamento", "despesa", "entrada", "saida", "saída")

PAYMENT_CONFIRMATION_PHRASES = (
    "pagamento recebido",
    "pix recebido",
    "cliente pagou",
    "recebi o pix",
    "pagou a venda",
    "recebimento de",
    "comprovante de pagamento",
)

SALE_KEYWORDS = (
    "venda",
    "vendas",
    "pedido",
    "encomenda",
    "cliente",
    "comprar",
    "quero",
    "gostaria",
    "preço",
    "quanto",
    "gramas",
    "gram",
    "peso",
    "frete",
    "entrega",
    "envio",
    "joia",
    "peça",
    "produto",
)

TRANSACTION_KEYWORDS = (
    "paguei",
    "pagamento",
    "transferência",
    "pix",
    "boleto",
    "conta",
    "recebi",
    "recebido",
    "nota",
    "fatura",
    "gasto",
    "despesa",
    "depósito",
    "depositou",
    "transferi",
)

_CURRENCY_HINT_RE = re.compile(r"r\$\s?\d+|\d+,\d{2}")


def _classify_label(lower: str) -> Classification | None:
    match = TYPE_LABEL_RE.search(lower)
    if not match:
        return None
    word = match.group(1)
    if SALE_LABEL in word:
        return Classification.SALE
    if any(label in word for label in TRANSACTION_LABELS):
        return Classification.TRANSACTION
    return None


def classify(content: str | None, *, sale_before_transaction: bool = SALE_BEFORE_TRANSACTION) -> Classification:
    """Route a message body to the transaction, sale or discard queue.

    First match wins: explicit ``tipo:`` label, payment-confirmation phrases,
    sale/transaction vocabulary, then a bare currency amount.
    """
    lower = (content or "").lower()
    if not lower.strip():
        return Classification.DISCARD

    labelled = _classify_label(lower)
    if labelled is not None:
        return labelled

    if any(phrase in lower for phrase in PAYMENT_CONFIRMATION_PHRASES):
        return Classification.TRANSACTION

    vocabularies = [
        (SALE_KEYWORDS, Classification.SALE),
        (TRANSACTION_KEYWORDS, Classification.TRANSACTION),
    ]
    if not sale_before_transaction:
        vocabularies.reverse()
    for keywords, classification in vocabularies:
        if any(keyword in lower for keyword in keywords):
            return classification

    if _CURRENCY_HINT_RE.search(lower):
        return Classification.TRANSACTION
    return Classification.DISCARD

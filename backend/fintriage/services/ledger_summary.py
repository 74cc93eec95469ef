"""Read model over the permanent ledgers: period totals and client receivables."""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from fintriage.models.ledger import Contact, Sale, Transaction
from fintriage.services.triage.numbers import quantize_money

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"


@dataclass(frozen=True)
class LedgerSummary:
    income: Decimal
    expenses: Decimal
    balance: Decimal
    sales_total: Decimal
    sales_count: int
    transactions_count: int


@dataclass(frozen=True)
class ClientBalance:
    client_id: str
    name: str
    sales_total: Decimal
    received: Decimal
    receivable: Decimal


def _money(value) -> Decimal:
    return quantize_money(Decimal(str(value or 0)))


def _in_period(query, column, start: Optional[date], end: Optional[date]):
    if start is not None:
        query = query.filter(column >= start)
    if end is not None:
        query = query.filter(column <= end)
    return query


def _transaction_total(db: Session, entry_type: str, start: Optional[date], end: Optional[date]) -> Decimal:
    query = db.query(func.coalesce(func.sum(Transaction.value), 0)).filter(
        Transaction.status == CONFIRMED,
        Transaction.type == entry_type,
    )
    return _money(_in_period(query, Transaction.date, start, end).scalar())


def summarize_ledger(db: Session, start: Optional[date] = None, end: Optional[date] = None) -> LedgerSummary:
    income = _transaction_total(db, "income", start, end)
    expenses = _transaction_total(db, "expense", start, end)

    sales_query = _in_period(
        db.query(func.coalesce(func.sum(Sale.value), 0), func.count(Sale.id)),
        Sale.date,
        start,
        end,
    )
    sales_total, sales_count = sales_query.one()

    transactions_count = _in_period(
        db.query(func.count(Transaction.id)).filter(Transaction.status == CONFIRMED),
        Transaction.date,
        start,
        end,
    ).scalar()

    return LedgerSummary(
        income=income,
        expenses=expenses,
        balance=income - expenses,
        sales_total=_money(sales_total),
        sales_count=int(sales_count or 0),
        transactions_count=int(transactions_count or 0),
    )


def client_balances(db: Session) -> list[ClientBalance]:
    """Per-client receivable: sales billed minus income received from that client."""
    sold = dict(
        db.query(Sale.client_id, func.coalesce(func.sum(Sale.value) + func.sum(Sale.shipping), 0))
        .group_by(Sale.client_id)
        .all()
    )
    received = dict(
        db.query(Transaction.contact_id, func.coalesce(func.sum(Transaction.value), 0))
        .filter(
            Transaction.status == CONFIRMED,
            Transaction.type == "income",
            Transaction.contact_id.isnot(None),
        )
        .group_by(Transaction.contact_id)
        .all()
    )

    client_ids = set(sold) | set(received)
    if not client_ids:
        return []
    names = dict(db.query(Contact.id, Contact.name).filter(Contact.id.in_(client_ids)).all())

    balances = []
    for client_id in client_ids:
        sales_total = _money(sold.get(client_id))
        paid = _money(received.get(client_id))
        balances.append(
            ClientBalance(
                client_id=str(client_id),
                name=names.get(client_id, ""),
                sales_total=sales_total,
                received=paid,
                receivable=sales_total - paid,
            )
        )
    balances.sort(key=lambda item: (-item.receivable, item.name))
    return balances

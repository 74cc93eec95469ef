"""Read side of the review queue: open messages and reference snapshots."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fintriage.models.ledger import Account, Category, Contact, WhatsAppMessage
from fintriage.services.triage.contracts import AccountRef, CategoryRef, ClientRef, MessageStatus

logger = logging.getLogger(__name__)

SELLER_CATEGORY = "Vendedor"
OPEN_STATUSES = (MessageStatus.PENDING.value, MessageStatus.ERROR.value)


@dataclass(frozen=True)
class ReferenceData:
    categories: tuple[CategoryRef, ...] = ()
    accounts: tuple[AccountRef, ...] = ()
    clients: tuple[ClientRef, ...] = ()

    @property
    def sellers(self) -> tuple[ClientRef, ...]:
        return tuple(client for client in self.clients if client.category == SELLER_CATEGORY)

    @property
    def default_account_id(self) -> str:
        return self.accounts[0].id if self.accounts else ""

    def category(self, category_id: str) -> Optional[CategoryRef]:
        return next((ref for ref in self.categories if ref.id == category_id), None)

    def subcategories(self, parent_id: str) -> tuple[CategoryRef, ...]:
        return tuple(ref for ref in self.categories if ref.parent_id == parent_id)


@dataclass(frozen=True)
class MessageSnapshot:
    id: str
    created_at: object
    instance_name: Optional[str]
    remote_jid: str
    content: str
    status: MessageStatus
    ignore_reason: Optional[str] = None
    raw_data: dict = field(default_factory=dict)


def _str_id(value) -> str:
    return str(value) if value is not None else ""


def parse_message_id(message_id) -> uuid.UUID | None:
    if isinstance(message_id, uuid.UUID):
        return message_id
    try:
        return uuid.UUID(str(message_id))
    except (TypeError, ValueError):
        return None


def snapshot(message: WhatsAppMessage) -> MessageSnapshot:
    return MessageSnapshot(
        id=_str_id(message.id),
        created_at=message.created_at,
        instance_name=message.instance_name,
        remote_jid=message.remote_jid or "",
        content=message.content or "",
        status=MessageStatus(message.status),
        ignore_reason=message.ignore_reason,
        raw_data=message.raw_data or {},
    )


def load_open_messages(db: Session) -> list[MessageSnapshot]:
    """Pending and error messages, newest first."""
    rows = db.execute(
        select(WhatsAppMessage)
        .where(WhatsAppMessage.status.in_(OPEN_STATUSES))
        .order_by(WhatsAppMessage.created_at.desc(), WhatsAppMessage.id)
    ).scalars()
    return [snapshot(row) for row in rows]


def get_message(db: Session, message_id) -> Optional[WhatsAppMessage]:
    parsed = parse_message_id(message_id)
    if parsed is None:
        return None
    return db.get(WhatsAppMessage, parsed)


def load_references(db: Session) -> ReferenceData:
    categories = tuple(
        CategoryRef(
            id=_str_id(row.id),
            name=row.name,
            parent_id=_str_id(row.parent_id) or None,
            icon=row.icon,
        )
        for row in db.execute(select(Category).order_by(Category.name)).scalars()
    )
    accounts = tuple(
        AccountRef(id=_str_id(row.id), name=row.name)
        for row in db.execute(select(Account).order_by(Account.created_at, Account.name)).scalars()
    )
    clients = tuple(
        ClientRef(
            id=_str_id(row.id),
            name=row.name,
            phone=row.phone,
            category=row.category,
            photo_url=row.photo_url,
        )
        for row in db.execute(select(Contact).order_by(Contact.name)).scalars()
    )
    return ReferenceData(categories=categories, accounts=accounts, clients=clients)

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processed', 'error')",
            name="ck_whatsapp_messages_status",
        ),
        Index("ix_whatsapp_messages_status_created", "status", "created_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    instance_name = Column(String(128))
    remote_jid = Column(String(128), nullable=False)
    content = Column(Text)
    message_type = Column(String(32), nullable=False, default="text", server_default=text("'text'"))
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    ignore_reason = Column(Text)
    raw_data = Column(JSON_TYPE)


class Category(Base):
    __tablename__ = "categories"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name = Column(String(128), nullable=False)
    parent_id = Column(UUID_TYPE, ForeignKey("categories.id", ondelete="SET NULL"))
    icon = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Account(Base):
    __tablename__ = "accounts"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name = Column(String(255), nullable=False)
    phone = Column(String(32))
    category = Column(String(64))
    photo_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("type IN ('income', 'expense')", name="ck_transactions_type"),
        Index("ix_transactions_date", "date"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    description = Column(Text)
    value = Column(Numeric(12, 2), nullable=False)
    type = Column(String(16), nullable=False)
    date = Column(Date, nullable=False)
    category_id = Column(UUID_TYPE, ForeignKey("categories.id", ondelete="SET NULL"))
    account_id = Column(UUID_TYPE, ForeignKey("accounts.id", ondelete="SET NULL"))
    contact_id = Column(UUID_TYPE, ForeignKey("contacts.id", ondelete="SET NULL"))
    status = Column(String(16), nullable=False, default="confirmed", server_default=text("'confirmed'"))
    is_ai = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    ai_metadata = Column(JSON_TYPE)
    # At most one ledger record per source message.
    source_message_id = Column(UUID_TYPE, unique=True)
    recorded_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Sale(Base):
    __tablename__ = "sales"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    code = Column(String(32), nullable=False, unique=True)
    date = Column(Date, nullable=False)
    client_id = Column(UUID_TYPE, ForeignKey("contacts.id", ondelete="RESTRICT"), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    weight = Column(Numeric(10, 2))
    shipping = Column(Numeric(12, 2), nullable=False, default=0, server_default=text("0"))
    seller = Column(String(128))
    ai_metadata = Column(JSON_TYPE)
    source_message_id = Column(UUID_TYPE, unique=True)
    recorded_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

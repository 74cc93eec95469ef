"""Shared SQLite fixtures for database-backed review tests."""

import uuid
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fintriage.models.ledger import Account, Base, Category, Contact, WhatsAppMessage

BASE_TIME = datetime(2024, 5, 20, 15, 0, 0)


class ReviewDatabase:
    def __init__(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self._minutes = 0

    def dispose(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _add(self, obj):
        db = self.SessionLocal()
        try:
            db.add(obj)
            db.commit()
            db.refresh(obj)
            db.expunge(obj)
        finally:
            db.close()
        return obj

    def add_message(self, content, *, status="pending", remote_jid="5511999998888@s.whatsapp.net", reason=None):
        # Each message is one minute newer than the previous one.
        self._minutes += 1
        return self._add(
            WhatsAppMessage(
                id=uuid.uuid4(),
                created_at=BASE_TIME + timedelta(minutes=self._minutes),
                instance_name="loja-principal",
                remote_jid=remote_jid,
                content=content,
                status=status,
                ignore_reason=reason,
            )
        )

    def add_category(self, name, parent_id=None):
        return self._add(Category(id=uuid.uuid4(), name=name, parent_id=parent_id))

    def add_account(self, name):
        self._minutes += 1
        return self._add(Account(id=uuid.uuid4(), name=name, created_at=BASE_TIME + timedelta(minutes=self._minutes)))

    def add_contact(self, name, phone=None, category="Cliente"):
        return self._add(Contact(id=uuid.uuid4(), name=name, phone=phone, category=category))

    def message(self, message_id):
        db = self.SessionLocal()
        try:
            return db.get(WhatsAppMessage, message_id)
        finally:
            db.close()

    def count(self, model, **filters):
        db = self.SessionLocal()
        try:
            return db.query(model).filter_by(**filters).count()
        finally:
            db.close()

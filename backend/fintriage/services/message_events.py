"""In-process change feed for committed ``whatsapp_messages`` changes.

Session hooks collect changed message ids during flush (and for bulk
UPDATE/DELETE statements), publish them after commit and drop them on
rollback. Subscribers get the set of ids; ``ALL_MESSAGES`` marks a bulk
statement whose rows are unknown.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from threading import Lock

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, Session

from fintriage.models.ledger import WhatsAppMessage

logger = logging.getLogger(__name__)

ALL_MESSAGES = "*"
_PENDING_KEY = "whatsapp_message_changes"

Subscriber = Callable[[frozenset[str]], None]


class MessageChangeFeed:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, message_ids: Iterable[str]) -> None:
        ids = frozenset(message_ids)
        if not ids:
            return
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(ids)
            except Exception:
                logger.exception("Message change subscriber failed")

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


message_feed = MessageChangeFeed()


def _pending(session: Session) -> set[str]:
    return session.info.setdefault(_PENDING_KEY, set())


def mark_changed(session: Session, message_ids: Iterable[str]) -> None:
    """Queue ids for publication when *session* commits."""
    _pending(session).update(str(message_id) for message_id in message_ids)


@event.listens_for(Session, "after_flush")
def _collect_flushed(session: Session, flush_context) -> None:
    for instance in (*session.new, *session.dirty, *session.deleted):
        if isinstance(instance, WhatsAppMessage) and instance.id is not None:
            _pending(session).add(str(instance.id))


@event.listens_for(Session, "do_orm_execute")
def _collect_bulk(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is WhatsAppMessage:
        _pending(orm_execute_state.session).add(ALL_MESSAGES)


@event.listens_for(Session, "after_commit")
def _publish_committed(session: Session) -> None:
    changed = session.info.pop(_PENDING_KEY, None)
    if changed:
        message_feed.publish(changed)


@event.listens_for(Session, "after_rollback")
def _discard_rolled_back(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)

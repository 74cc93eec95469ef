import unittest

from sqlalchemy import delete

from fintriage.models.ledger import WhatsAppMessage
from fintriage.services.message_events import (
    ALL_MESSAGES,
    MessageChangeFeed,
    mark_changed,
    message_feed,
)

from helpers import ReviewDatabase


class MessageChangeFeedTests(unittest.TestCase):
    def test_publish_reaches_subscribers_until_unsubscribed(self):
        feed = MessageChangeFeed()
        received = []
        unsubscribe = feed.subscribe(received.append)

        feed.publish(["a", "b"])
        unsubscribe()
        feed.publish(["c"])

        self.assertEqual(received, [frozenset({"a", "b"})])
        self.assertEqual(feed.subscriber_count(), 0)

    def test_empty_publish_is_ignored(self):
        feed = MessageChangeFeed()
        received = []
        feed.subscribe(received.append)
        feed.publish([])
        self.assertEqual(received, [])

    def test_failing_subscriber_does_not_block_others(self):
        feed = MessageChangeFeed()
        received = []

        def _broken(ids):
            raise RuntimeError("boom")

        feed.subscribe(_broken)
        feed.subscribe(received.append)

        with self.assertLogs("fintriage.services.message_events", level="ERROR"):
            feed.publish(["x"])
        self.assertEqual(received, [frozenset({"x"})])


class SessionHookTests(unittest.TestCase):
    def setUp(self):
        self.store = ReviewDatabase()
        self.received = []
        self._unsubscribe = message_feed.subscribe(self.received.append)

    def tearDown(self):
        self._unsubscribe()
        self.store.dispose()

    def _all_ids(self):
        return set().union(*self.received) if self.received else set()

    def test_commit_publishes_changed_message(self):
        message = self.store.add_message("Paguei 10,00")
        self.received.clear()

        db = self.store.SessionLocal()
        try:
            row = db.get(WhatsAppMessage, message.id)
            row.status = "processed"
            db.commit()
        finally:
            db.close()

        self.assertIn(str(message.id), self._all_ids())

    def test_rollback_publishes_nothing(self):
        message = self.store.add_message("Paguei 10,00")
        self.received.clear()

        db = self.store.SessionLocal()
        try:
            row = db.get(WhatsAppMessage, message.id)
            row.status = "processed"
            db.flush()
            db.rollback()
        finally:
            db.close()

        self.assertEqual(self.received, [])

    def test_bulk_delete_marks_everything(self):
        self.store.add_message("oi", status="ignored")
        self.received.clear()

        db = self.store.SessionLocal()
        try:
            db.execute(delete(WhatsAppMessage).where(WhatsAppMessage.status == "ignored"))
            db.commit()
        finally:
            db.close()

        self.assertIn(ALL_MESSAGES, self._all_ids())

    def test_mark_changed_is_published_on_commit(self):
        db = self.store.SessionLocal()
        try:
            mark_changed(db, ["external-id"])
            db.commit()
        finally:
            db.close()

        self.assertEqual(self.received, [frozenset({"external-id"})])

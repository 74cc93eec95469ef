"""Approval/rejection commit engine for reviewed WhatsApp messages.

Message status is a small state machine (``ALLOWED_TRANSITIONS``).
Approval is two-phase: the permanent record commits first, the status
transition second, after re-locking the message and re-checking it is still
pending. Each record keeps its source message id under a unique key, so one
message never yields two records. A failed record insert leaves the message
pending; a failed status update after the record committed is an
inconsistency that is logged, alerted and raised.
"""

import logging
import secrets
import string
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fintriage.core.config import get_settings
from fintriage.models.ledger import AuditLog, Sale, Transaction, WhatsAppMessage
from fintriage.services.message_events import mark_changed
from fintriage.services.message_store import load_references, parse_message_id
from fintriage.services.triage.contracts import CandidateRecord, EntryType, MessageStatus
from fintriage.services.triage.extractor import EXPENSE_DESCRIPTION, INCOME_DESCRIPTION
from fintriage.services.triage.matching import match_sender
from fintriage.services.triage.numbers import parse_currency, parse_weight, quantize_money
from fintriage.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    MessageStatus.PENDING: [MessageStatus.PROCESSED, MessageStatus.ERROR],
    MessageStatus.ERROR: [MessageStatus.PENDING],
    MessageStatus.PROCESSED: [],
}

REJECT_REASONS = (
    "Não é financeiro",
    "Spam / Propaganda",
    "Duplicado",
    "Erro de interpretação",
    "Outro",
)
OTHER_REASON = "Outro"
DEFAULT_REJECT_REASON = "Sem motivo informado"

DEFAULT_SELLER = "WhatsApp IA"
SALE_CODE_PREFIX = "WPP-"
SALE_CODE_ALPHABET = string.ascii_uppercase + string.digits
SALE_CODE_LENGTH = 6

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "remote_jid",
    "email",
    "address",
    "tax_id",
    "cpf",
    "cnpj",
}

_KEEP = object()


class ReviewError(Exception):
    """Base for review commit failures; ``action`` names the user action."""

    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


class ReviewValidationError(ReviewError):
    pass


class ReviewNotFoundError(ReviewError):
    pass


class ReviewConflictError(ReviewError):
    pass


class ReviewBusyError(ReviewConflictError):
    pass


class ReviewWriteError(ReviewError):
    pass


class ReviewInconsistencyError(ReviewError):
    """The permanent record exists but the message status could not be updated."""

    def __init__(self, action: str, detail: str, record_id: str) -> None:
        super().__init__(action, detail)
        self.record_id = record_id


@dataclass(frozen=True)
class CommitOutcome:
    message_id: str
    status: MessageStatus
    record_type: Optional[str] = None
    record_id: Optional[str] = None


class InFlightGuard:
    """Per-message marker that rejects a second concurrent commit for the same id."""

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(message_id) -> str:
        # One key per message however the id is spelled.
        parsed = parse_message_id(message_id)
        return str(parsed) if parsed is not None else str(message_id).strip().lower()

    @contextmanager
    def hold(self, message_id: str, action: str = "commit") -> Iterator[None]:
        key = self._key(message_id)
        with self._lock:
            if key in self._held:
                raise ReviewBusyError(action, f"Message {key} is already being processed")
            self._held.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(key)

    def is_held(self, message_id: str) -> bool:
        with self._lock:
            return self._key(message_id) in self._held


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_value=old_value,
            new_value=new_value,
            actor_type=actor_type,
            actor_id=actor_id,
            audit_meta=metadata,
        )
    )
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def _with_for_update_if_supported(stmt, db: Session):
    # SQLite (CI/tests) does not support `SELECT ... FOR UPDATE`.
    if db.bind is None:
        return stmt
    if db.bind.dialect.name == "sqlite":
        return stmt
    return stmt.with_for_update()


def _actor_type(actor_id: Optional[str]) -> str:
    return "ADMIN" if actor_id else "SYSTEM"


def _load_message(db: Session, message_id: str, action: str) -> WhatsAppMessage:
    parsed = parse_message_id(message_id)
    if parsed is None:
        raise ReviewNotFoundError(action, f"Message {message_id} not found")
    stmt = _with_for_update_if_supported(select(WhatsAppMessage).where(WhatsAppMessage.id == parsed), db)
    message = db.execute(stmt).scalar_one_or_none()
    if message is None:
        raise ReviewNotFoundError(action, f"Message {message_id} not found")
    return message


def _require_transition(message: WhatsAppMessage, new_status: MessageStatus, action: str) -> None:
    current = MessageStatus(message.status)
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise ReviewConflictError(action, f"Cannot move message from {current} to {new_status}")


def _set_status(
    db: Session,
    message: WhatsAppMessage,
    new_status: MessageStatus,
    *,
    reason: Any = _KEEP,
    actor_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Write the status (and optionally the reason) and commit."""
    old_value = {"status": message.status, "ignore_reason": message.ignore_reason}
    message.status = new_status.value
    if reason is not _KEEP:
        message.ignore_reason = reason

    create_audit_log(
        db,
        entity_type="whatsapp_message",
        entity_id=str(message.id),
        action="STATUS_CHANGE",
        old_value=old_value,
        new_value={"status": message.status, "ignore_reason": message.ignore_reason},
        actor_type=_actor_type(actor_id),
        actor_id=actor_id,
        metadata=metadata,
    )
    db.commit()


def _parse_ref_id(value: str, field_name: str, action: str) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ReviewValidationError(action, f"Invalid {field_name}: {value!r}") from None


def _parse_record_date(value: str, action: str) -> date:
    try:
        return date.fromisoformat((value or "").strip())
    except ValueError:
        raise ReviewValidationError(action, f"Invalid date: {value!r}") from None


def _provenance(message: WhatsAppMessage) -> dict[str, Any]:
    return {"whatsapp_message_id": str(message.id), "instance": message.instance_name}


def _generate_sale_code() -> str:
    suffix = "".join(secrets.choice(SALE_CODE_ALPHABET) for _ in range(SALE_CODE_LENGTH))
    return f"{SALE_CODE_PREFIX}{suffix}"


def _existing_record(db: Session, message_id: uuid.UUID) -> Optional[tuple[str, str]]:
    """``(record_type, record_id)`` of a ledger record already made from *message_id*."""
    for model, record_type in ((Transaction, "transaction"), (Sale, "sale")):
        record_id = db.execute(select(model.id).where(model.source_message_id == message_id)).scalar()
        if record_id is not None:
            return record_type, str(record_id)
    return None


def _require_unrecorded(db: Session, message: WhatsAppMessage, action: str) -> None:
    existing = _existing_record(db, message.id)
    if existing is not None:
        record_type, record_id = existing
        raise ReviewConflictError(action, f"Message {message.id} already produced {record_type} {record_id}")


def _insert_record(db: Session, record, *, action: str, audit_action: str, new_value: dict[str, Any], actor_id):
    try:
        db.add(record)
        db.flush()
        create_audit_log(
            db,
            entity_type=record.__tablename__,
            entity_id=str(record.id),
            action=audit_action,
            old_value=None,
            new_value=new_value,
            actor_type=_actor_type(actor_id),
            actor_id=actor_id,
            metadata=record.ai_metadata,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        existing = _existing_record(db, record.source_message_id) if record.source_message_id else None
        if existing is not None:
            raise ReviewConflictError(action, f"Message already produced {existing[0]} {existing[1]}") from exc
        logger.warning("Record insert rejected during %s: %s", action, exc)
        alert_tracker.record("REVIEW_WRITE_FAILED", {"action": action})
        raise ReviewWriteError(action, "Could not save the record; the message stays pending") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Record insert failed during %s: %s", action, exc)
        alert_tracker.record("REVIEW_WRITE_FAILED", {"action": action})
        raise ReviewWriteError(action, "Could not save the record; the message stays pending") from exc
    return str(record.id)


def _finish_approval(
    db: Session,
    message_id: str,
    *,
    action: str,
    record_type: str,
    record_id: str,
    actor_id: Optional[str],
) -> CommitOutcome:
    """Second phase: re-lock the message, re-check it is still pending, mark it processed."""
    try:
        message = _load_message(db, message_id, action)
        _require_transition(message, MessageStatus.PROCESSED, action)
        _set_status(
            db,
            message,
            MessageStatus.PROCESSED,
            actor_id=actor_id,
            metadata={"record_type": record_type, "record_id": record_id},
        )
    except (SQLAlchemyError, ReviewError) as exc:
        db.rollback()
        logger.error(
            "%s record %s committed but message %s is still pending: %s",
            record_type,
            record_id,
            message_id,
            exc,
        )
        alert_tracker.record(
            "REVIEW_STATUS_UPDATE_FAILED",
            {"action": action, "message_id": message_id, "record_id": record_id},
        )
        raise ReviewInconsistencyError(
            action,
            f"{record_type} {record_id} was saved but message {message_id} could not be marked processed",
            record_id,
        ) from exc

    logger.info("Approved message %s as %s %s", message_id, record_type, record_id)
    return CommitOutcome(message_id, MessageStatus.PROCESSED, record_type, record_id)


def approve_transaction(
    db: Session,
    message_id: str,
    candidate: CandidateRecord,
    *,
    actor_id: Optional[str] = None,
) -> CommitOutcome:
    action = "approve"
    missing = [name for name in ("value", "category_id", "account_id") if not getattr(candidate, name)]
    if missing:
        raise ReviewValidationError(action, f"Missing required fields: {', '.join(missing)}")
    value = quantize_money(parse_currency(candidate.value))
    if value <= 0:
        raise ReviewValidationError(action, f"Invalid value: {candidate.value!r}")
    record_date = _parse_record_date(candidate.date, action)
    category_id = _parse_ref_id(candidate.category_id, "category_id", action)
    account_id = _parse_ref_id(candidate.account_id, "account_id", action)
    client_id = _parse_ref_id(candidate.client_id, "client_id", action)

    message = _load_message(db, message_id, action)
    _require_transition(message, MessageStatus.PROCESSED, action)
    _require_unrecorded(db, message, action)
    source_id = str(message.id)

    if client_id is None:
        settings = get_settings()
        sender = match_sender(
            message.remote_jid,
            load_references(db).clients,
            country_code=settings.review_country_code,
        )
        client_id = uuid.UUID(sender.id) if sender else None

    entry_type = EntryType(candidate.type)
    description = candidate.description.strip() or (
        INCOME_DESCRIPTION if entry_type == EntryType.INCOME else EXPENSE_DESCRIPTION
    )
    record = Transaction(
        description=description,
        value=value,
        type=entry_type.value,
        date=record_date,
        category_id=category_id,
        account_id=account_id,
        contact_id=client_id,
        status="confirmed",
        is_ai=True,
        ai_metadata=_provenance(message),
        source_message_id=message.id,
        recorded_by=actor_id,
    )
    record_id = _insert_record(
        db,
        record,
        action=action,
        audit_action="TRANSACTION_CREATED",
        new_value={"value": str(value), "type": entry_type.value, "date": record_date.isoformat()},
        actor_id=actor_id,
    )
    return _finish_approval(
        db, source_id, action=action, record_type="transaction", record_id=record_id, actor_id=actor_id
    )


def approve_sale(
    db: Session,
    message_id: str,
    candidate: CandidateRecord,
    *,
    actor_id: Optional[str] = None,
) -> CommitOutcome:
    action = "approve"
    if not candidate.client_id:
        raise ReviewValidationError(action, "Missing required fields: client_id")
    client_id = _parse_ref_id(candidate.client_id, "client_id", action)
    record_date = _parse_record_date(candidate.date, action)
    value = quantize_money(parse_currency(candidate.value))
    if value < 0:
        raise ReviewValidationError(action, f"Invalid value: {candidate.value!r}")
    weight = parse_weight(candidate.weight)
    shipping = quantize_money(parse_currency(candidate.shipping))
    if shipping < 0:
        raise ReviewValidationError(action, f"Invalid shipping: {candidate.shipping!r}")

    message = _load_message(db, message_id, action)
    _require_transition(message, MessageStatus.PROCESSED, action)
    _require_unrecorded(db, message, action)
    source_id = str(message.id)

    record = Sale(
        code=_generate_sale_code(),
        date=record_date,
        client_id=client_id,
        value=value,
        weight=quantize_money(weight) if weight is not None else None,
        shipping=shipping,
        seller=candidate.seller.strip() or DEFAULT_SELLER,
        ai_metadata=_provenance(message),
        source_message_id=message.id,
        recorded_by=actor_id,
    )
    record_id = _insert_record(
        db,
        record,
        action=action,
        audit_action="SALE_CREATED",
        new_value={"code": record.code, "value": str(value), "date": record_date.isoformat()},
        actor_id=actor_id,
    )
    return _finish_approval(db, source_id, action=action, record_type="sale", record_id=record_id, actor_id=actor_id)


def resolve_reject_reason(reason: Optional[str], custom_reason: Optional[str] = None) -> str:
    """Pick the stored reason: ``Outro`` takes the free text, blank falls back to the default."""
    reason = (reason or "").strip()
    if reason == OTHER_REASON:
        return (custom_reason or "").strip() or OTHER_REASON
    return reason or DEFAULT_REJECT_REASON


def _reject_status_only(db: Session, message_id: str, action: str, actor_id: Optional[str]) -> str:
    """Write ``status='error'`` touching no other column; for stores without ``ignore_reason``."""
    parsed = parse_message_id(message_id)
    if parsed is None:
        raise ReviewNotFoundError(action, f"Message {message_id} not found")
    try:
        stmt = _with_for_update_if_supported(select(WhatsAppMessage.status).where(WhatsAppMessage.id == parsed), db)
        current = db.execute(stmt).scalar_one_or_none()
        if current is None:
            raise ReviewNotFoundError(action, f"Message {message_id} not found")
        if MessageStatus.ERROR not in ALLOWED_TRANSITIONS.get(MessageStatus(current), []):
            raise ReviewConflictError(action, f"Cannot move message from {current} to {MessageStatus.ERROR}")

        db.execute(
            update(WhatsAppMessage)
            .where(WhatsAppMessage.id == parsed)
            .values(status=MessageStatus.ERROR.value)
            .execution_options(synchronize_session=False)
        )
        mark_changed(db, [str(parsed)])
        create_audit_log(
            db,
            entity_type="whatsapp_message",
            entity_id=str(parsed),
            action="STATUS_CHANGE",
            old_value={"status": current},
            new_value={"status": MessageStatus.ERROR.value},
            actor_type=_actor_type(actor_id),
            actor_id=actor_id,
            metadata={"reason_dropped": True},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        alert_tracker.record("REVIEW_WRITE_FAILED", {"action": action})
        raise ReviewWriteError(action, "Could not discard the message") from exc
    return str(parsed)


def reject_message(
    db: Session,
    message_id: str,
    reason: Optional[str] = None,
    *,
    actor_id: Optional[str] = None,
) -> CommitOutcome:
    """Move a pending message to ``error`` with *reason*.

    When the reason cannot be stored (or the store has no reason column at
    all) the status alone is written and ``REVIEW_REASON_FALLBACK`` alerted.
    """
    action = "reject"
    reason = (reason or "").strip() or DEFAULT_REJECT_REASON
    try:
        message = _load_message(db, message_id, action)
        _require_transition(message, MessageStatus.ERROR, action)
        _set_status(db, message, MessageStatus.ERROR, reason=reason, actor_id=actor_id)
        rejected_id = str(message.id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Storing reject reason failed for message %s, retrying status only: %s", message_id, exc)
        alert_tracker.record("REVIEW_REASON_FALLBACK", {"message_id": str(message_id)})
        rejected_id = _reject_status_only(db, message_id, action, actor_id)

    logger.info("Rejected message %s", message_id)
    return CommitOutcome(rejected_id, MessageStatus.ERROR)


def restore_message(db: Session, message_id: str, *, actor_id: Optional[str] = None) -> CommitOutcome:
    action = "restore"
    message = _load_message(db, message_id, action)
    _require_transition(message, MessageStatus.PENDING, action)
    try:
        _set_status(db, message, MessageStatus.PENDING, reason=None, actor_id=actor_id)
    except SQLAlchemyError as exc:
        db.rollback()
        alert_tracker.record("REVIEW_WRITE_FAILED", {"action": action})
        raise ReviewWriteError(action, "Could not restore the message") from exc

    logger.info("Restored message %s", message_id)
    return CommitOutcome(str(message.id), MessageStatus.PENDING)


def clear_discarded(db: Session, *, confirm: bool = False, actor_id: Optional[str] = None) -> int:
    """Delete every ``error`` message in one statement. Irreversible."""
    action = "clear_discarded"
    if not confirm:
        raise ReviewValidationError(action, "Explicit confirmation is required")

    error_ids = [
        str(row)
        for row in db.execute(
            select(WhatsAppMessage.id).where(WhatsAppMessage.status == MessageStatus.ERROR.value)
        ).scalars()
    ]
    if not error_ids:
        return 0

    try:
        db.execute(
            delete(WhatsAppMessage)
            .where(WhatsAppMessage.status == MessageStatus.ERROR.value)
            .execution_options(synchronize_session=False)
        )
        mark_changed(db, error_ids)
        create_audit_log(
            db,
            entity_type="whatsapp_message",
            entity_id=str(uuid.uuid4()),
            action="DISCARDED_MESSAGES_CLEARED",
            old_value={"message_ids": error_ids},
            new_value=None,
            actor_type=_actor_type(actor_id),
            actor_id=actor_id,
            metadata={"count": len(error_ids)},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        alert_tracker.record("REVIEW_WRITE_FAILED", {"action": action})
        raise ReviewWriteError(action, "Could not delete discarded messages") from exc

    logger.info("Cleared %d discarded messages", len(error_ids))
    return len(error_ids)

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from fintriage.core.config import get_settings
from fintriage.core.dependencies import get_db
from fintriage.schemas.review import (
    ApproveRequest,
    CandidateOut,
    ClearDiscardedOut,
    ClientBalanceOut,
    CommitOut,
    FinanceSummaryOut,
    QueueSummaryOut,
    RefineOut,
    RejectReasonsOut,
    RejectRequest,
    ReviewItemOut,
    ReviewPageOut,
    SenderOut,
)
from fintriage.services.ai.finance_refine.service import (
    merge_classification,
    merge_refinement,
    refine_candidate,
)
from fintriage.services.commit_service import (
    DEFAULT_REJECT_REASON,
    OTHER_REASON,
    REJECT_REASONS,
    InFlightGuard,
    ReviewBusyError,
    ReviewConflictError,
    ReviewError,
    ReviewInconsistencyError,
    ReviewNotFoundError,
    ReviewValidationError,
    ReviewWriteError,
    approve_sale,
    approve_transaction,
    clear_discarded,
    reject_message,
    resolve_reject_reason,
    restore_message,
)
from fintriage.services.ledger_summary import client_balances, summarize_ledger
from fintriage.services.message_store import (
    get_message,
    load_open_messages,
    load_references,
    snapshot,
)
from fintriage.services.review_queue import QUEUES, ReviewConfig, ReviewItem, derive_item
from fintriage.services.triage.contracts import CandidateRecord, Classification, MessageStatus

router = APIRouter()
logger = logging.getLogger(__name__)

commit_guard = InFlightGuard()


def _require_review_enabled():
    settings = get_settings()
    if not settings.enable_review_queue:
        raise HTTPException(404, "Não encontrado")


def _http_error(exc: ReviewError) -> HTTPException:
    if isinstance(exc, ReviewValidationError):
        status_code = 400
    elif isinstance(exc, ReviewNotFoundError):
        status_code = 404
    elif isinstance(exc, (ReviewConflictError, ReviewBusyError)):
        status_code = 409
    elif isinstance(exc, ReviewWriteError):
        status_code = 502
    elif isinstance(exc, ReviewInconsistencyError):
        status_code = 500
        return HTTPException(status_code, {"action": exc.action, "detail": exc.detail, "record_id": exc.record_id})
    else:
        status_code = 500
    return HTTPException(status_code, {"action": exc.action, "detail": exc.detail})


def _candidate_out(candidate: CandidateRecord) -> CandidateOut:
    return CandidateOut(**candidate.to_dict())


def _item_out(item: ReviewItem) -> ReviewItemOut:
    message = item.message
    sender = None
    if item.sender is not None:
        sender = SenderOut(id=item.sender.id, name=item.sender.name, photo_url=item.sender.photo_url)
    return ReviewItemOut(
        id=message.id,
        created_at=message.created_at,
        instance_name=message.instance_name,
        remote_jid=message.remote_jid,
        content=message.content,
        status=message.status,
        ignore_reason=message.ignore_reason,
        classification=item.classification,
        sender=sender,
        candidate=_candidate_out(item.candidate),
    )


def _derive_all(db: Session, config: ReviewConfig) -> list[ReviewItem]:
    refs = load_references(db)
    return [derive_item(message, refs, config) for message in load_open_messages(db)]


@router.get("/admin/review/summary", response_model=QueueSummaryOut)
def review_summary(db: Session = Depends(get_db)):
    _require_review_enabled()
    items = _derive_all(db, ReviewConfig.from_settings())
    counts = {queue.value: 0 for queue in QUEUES}
    for item in items:
        counts[item.classification.value] += 1
    return QueueSummaryOut(**counts, total=len(items))


@router.get("/admin/review/messages", response_model=ReviewPageOut)
def list_review_messages(
    queue: Classification = Query(Classification.TRANSACTION),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
):
    _require_review_enabled()
    config = ReviewConfig.from_settings()
    items = [item for item in _derive_all(db, config) if item.classification == queue]

    total_pages = max(1, -(-len(items) // config.page_size))
    page = min(page, total_pages)
    start = (page - 1) * config.page_size
    return ReviewPageOut(
        queue=queue,
        page=page,
        page_size=config.page_size,
        total_pages=total_pages,
        total_items=len(items),
        items=[_item_out(item) for item in items[start : start + config.page_size]],
    )


@router.get("/admin/review/reject-reasons", response_model=RejectReasonsOut)
def list_reject_reasons():
    _require_review_enabled()
    return RejectReasonsOut(reasons=list(REJECT_REASONS), other=OTHER_REASON, default=DEFAULT_REJECT_REASON)


@router.post("/admin/review/messages/{message_id}/approve", response_model=CommitOut)
def approve_review_message(message_id: str, payload: ApproveRequest, db: Session = Depends(get_db)):
    _require_review_enabled()
    if payload.queue == Classification.DISCARD:
        raise HTTPException(400, {"action": "approve", "detail": "Discarded messages must be restored first"})

    candidate = CandidateRecord(**payload.candidate.model_dump())
    commit = approve_sale if payload.queue == Classification.SALE else approve_transaction
    try:
        with commit_guard.hold(message_id, "approve"):
            outcome = commit(db, message_id, candidate)
    except ReviewError as exc:
        raise _http_error(exc) from exc
    return CommitOut(**outcome.__dict__)


@router.post("/admin/review/messages/{message_id}/reject", response_model=CommitOut)
def reject_review_message(message_id: str, payload: RejectRequest, db: Session = Depends(get_db)):
    _require_review_enabled()
    reason = resolve_reject_reason(payload.reason, payload.custom_reason)
    try:
        with commit_guard.hold(message_id, "reject"):
            outcome = reject_message(db, message_id, reason)
    except ReviewError as exc:
        raise _http_error(exc) from exc
    return CommitOut(**outcome.__dict__)


@router.post("/admin/review/messages/{message_id}/restore", response_model=CommitOut)
def restore_review_message(message_id: str, db: Session = Depends(get_db)):
    _require_review_enabled()
    try:
        with commit_guard.hold(message_id, "restore"):
            outcome = restore_message(db, message_id)
    except ReviewError as exc:
        raise _http_error(exc) from exc
    return CommitOut(**outcome.__dict__)


@router.post("/admin/review/messages/{message_id}/refine", response_model=RefineOut)
async def refine_review_message(message_id: str, db: Session = Depends(get_db)):
    _require_review_enabled()
    message = get_message(db, message_id)
    if message is None:
        raise HTTPException(404, {"action": "refine", "detail": f"Message {message_id} not found"})
    if message.status != MessageStatus.PENDING.value:
        raise HTTPException(409, {"action": "refine", "detail": "Only pending messages can be refined"})

    config = ReviewConfig.from_settings()
    refs = load_references(db)
    item = derive_item(snapshot(message), refs, config)

    refined = None
    if config.ai_enabled:
        refined = await refine_candidate(
            item.message.content,
            refs.categories,
            refs.accounts,
            refs.clients,
            provider=config.ai_provider,
            api_key=config.api_key,
            model=config.ai_model,
            timeout_seconds=config.ai_timeout_seconds,
            db=db,
            message_id=item.id,
        )

    return RefineOut(
        message_id=item.id,
        refined=refined is not None,
        classification=merge_classification(item.classification, refined),
        candidate=_candidate_out(merge_refinement(item.candidate, refined)),
    )


@router.delete("/admin/review/discarded", response_model=ClearDiscardedOut)
def clear_discarded_messages(confirm: bool = Query(False), db: Session = Depends(get_db)):
    _require_review_enabled()
    try:
        deleted = clear_discarded(db, confirm=confirm)
    except ReviewError as exc:
        raise _http_error(exc) from exc
    return ClearDiscardedOut(deleted=deleted)


@router.get("/admin/finance/summary", response_model=FinanceSummaryOut)
def finance_summary(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: Session = Depends(get_db),
):
    _require_review_enabled()
    if start and end and start > end:
        raise HTTPException(400, "start must not be after end")

    summary = summarize_ledger(db, start, end)
    return FinanceSummaryOut(
        start=start,
        end=end,
        income=float(summary.income),
        expenses=float(summary.expenses),
        balance=float(summary.balance),
        sales_total=float(summary.sales_total),
        sales_count=summary.sales_count,
        transactions_count=summary.transactions_count,
        clients=[
            ClientBalanceOut(
                client_id=balance.client_id,
                name=balance.name,
                sales_total=float(balance.sales_total),
                received=float(balance.received),
                receivable=float(balance.receivable),
            )
            for balance in client_balances(db)
        ],
    )

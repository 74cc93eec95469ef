"""Review queue controller: derives the three work queues and drives commits.

The controller owns one reviewer session: the derived items, per-queue page
state, reviewer drafts and the set of messages already sent to the AI. It
listens to the message change feed and recomputes everything lazily on the
next read after any committed change.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Optional

from sqlalchemy.orm import Session

from fintriage.core.config import Settings, get_settings
from fintriage.services.ai.finance_refine.service import (
    merge_classification,
    merge_refinement,
    refine_candidate,
)
from fintriage.services.commit_service import (
    InFlightGuard,
    ReviewError,
    ReviewNotFoundError,
    approve_sale,
    approve_transaction,
    clear_discarded,
    reject_message,
    resolve_reject_reason,
    restore_message,
)
from fintriage.services.message_events import MessageChangeFeed, message_feed
from fintriage.services.message_store import (
    MessageSnapshot,
    ReferenceData,
    load_open_messages,
    load_references,
)
from fintriage.services.triage.classifier import classify
from fintriage.services.triage.contracts import (
    CandidateRecord,
    Classification,
    ClientRef,
    EntryType,
    MessageStatus,
)
from fintriage.services.triage.extractor import extract, extract_date
from fintriage.services.triage.matching import match_sender

logger = logging.getLogger(__name__)

QUEUES = (Classification.TRANSACTION, Classification.SALE, Classification.DISCARD)
KEYED_PROVIDERS = ("groq", "claude", "openai")


def _first_keyed_provider(settings: Settings) -> str:
    """First provider with an API key, honouring the allowlist; "groq" when none has one."""
    allowed = settings.ai_allowed_providers
    for name in KEYED_PROVIDERS:
        if (not allowed or name in allowed) and settings.ai_api_key_for(name):
            return name
    return "groq"


@dataclass(frozen=True)
class ReviewConfig:
    api_key: Optional[str] = None
    ai_provider: str = "groq"
    ai_model: str = ""
    ai_timeout_seconds: float = 8.0
    page_size: int = 10
    country_code: str = "55"
    timezone: str = "America/Sao_Paulo"
    sale_wins_ties: bool = True
    default_entry_type: EntryType = EntryType.EXPENSE

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReviewConfig":
        settings = settings or get_settings()
        provider = settings.ai_review_provider or _first_keyed_provider(settings)
        return cls(
            api_key=settings.ai_api_key_for(provider) or None,
            ai_provider=provider,
            ai_model=settings.ai_review_model,
            ai_timeout_seconds=settings.ai_timeout_seconds,
            page_size=settings.review_page_size,
            country_code=settings.review_country_code,
            timezone=settings.review_timezone,
            sale_wins_ties=settings.triage_sale_wins_ties,
            default_entry_type=EntryType(settings.triage_default_entry_type),
        )

    @property
    def ai_enabled(self) -> bool:
        return bool(self.api_key) or self.ai_provider == "mock"


@dataclass(frozen=True)
class ReviewNotice:
    action: str
    ok: bool
    message: str
    record_id: Optional[str] = None


@dataclass(frozen=True)
class ReviewItem:
    message: MessageSnapshot
    classification: Classification
    candidate: CandidateRecord
    sender: Optional[ClientRef] = None
    refined: bool = False

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def is_pending(self) -> bool:
        return self.message.status == MessageStatus.PENDING


@dataclass(frozen=True)
class ReviewPage:
    queue: Classification
    page: int
    total_pages: int
    total_items: int
    items: tuple[ReviewItem, ...]


def build_candidate(
    message: MessageSnapshot,
    refs: ReferenceData,
    *,
    timezone: str = "America/Sao_Paulo",
    default_entry_type: EntryType = EntryType.EXPENSE,
) -> CandidateRecord:
    fields = extract(
        message.content,
        refs.categories,
        refs.accounts,
        refs.clients,
        default_type=default_entry_type,
    )
    return CandidateRecord(
        value=fields.value,
        date=extract_date(message.content, message.created_at, timezone),
        type=fields.type,
        description=fields.description,
        category_id=fields.category_id,
        account_id=fields.account_id or refs.default_account_id,
        client_id=fields.client_id,
        weight=fields.weight,
        shipping=fields.shipping,
    )


def derive_item(message: MessageSnapshot, refs: ReferenceData, config: ReviewConfig) -> ReviewItem:
    if message.status == MessageStatus.ERROR:
        classification = Classification.DISCARD
    else:
        classification = classify(message.content, sale_before_transaction=config.sale_wins_ties)
    return ReviewItem(
        message=message,
        classification=classification,
        candidate=build_candidate(
            message,
            refs,
            timezone=config.timezone,
            default_entry_type=config.default_entry_type,
        ),
        sender=match_sender(message.remote_jid, refs.clients, country_code=config.country_code),
    )


class ReviewQueueController:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: ReviewConfig,
        *,
        feed: MessageChangeFeed = message_feed,
        guard: Optional[InFlightGuard] = None,
    ) -> None:
        self._session_factory = session_factory
        self.config = config
        self._guard = guard or InFlightGuard()
        self._items: list[ReviewItem] = []
        self._refs = ReferenceData()
        self._stale = True
        self._active_queue = Classification.TRANSACTION
        self._pages = {queue: 1 for queue in QUEUES}
        self._counts = {queue: 0 for queue in QUEUES}
        self._attempted: set[str] = set()
        self._drafts: set[str] = set()
        self._refining: Optional[str] = None
        self._unsubscribe = feed.subscribe(self._on_change)

    # -- change feed -------------------------------------------------------

    def _on_change(self, message_ids: frozenset[str]) -> None:
        self._stale = True

    @property
    def is_stale(self) -> bool:
        return self._stale

    def close(self) -> None:
        self._unsubscribe()

    # -- derivation --------------------------------------------------------

    def refresh(self) -> None:
        """Reload open messages and reference data and rebuild every queue."""
        with self._session_factory() as db:
            messages = load_open_messages(db)
            refs = load_references(db)

        previous = {item.id: item for item in self._items}
        items = []
        kept_drafts = set()
        for message in messages:
            item = derive_item(message, refs, self.config)
            prior = previous.get(message.id)
            if message.id in self._drafts and prior is not None and prior.is_pending and item.is_pending:
                # Keep an edited or refined draft while the message stays pending.
                kept_drafts.add(message.id)
                item = replace(
                    item,
                    classification=prior.classification,
                    candidate=prior.candidate,
                    refined=prior.refined,
                )
            items.append(item)

        self._items = items
        self._drafts = kept_drafts
        self._refs = refs
        self._stale = False

        for queue in QUEUES:
            count = sum(1 for item in items if item.classification == queue)
            if count != self._counts[queue]:
                self._pages[queue] = 1
            self._counts[queue] = count
        logger.debug("Review queues refreshed: %s", self._counts)

    def _ensure_fresh(self) -> None:
        if self._stale:
            self.refresh()

    @property
    def references(self) -> ReferenceData:
        self._ensure_fresh()
        return self._refs

    def sellers(self) -> tuple[ClientRef, ...]:
        return self.references.sellers

    def items(self) -> list[ReviewItem]:
        self._ensure_fresh()
        return list(self._items)

    def get(self, message_id: str) -> ReviewItem:
        self._ensure_fresh()
        for item in self._items:
            if item.id == str(message_id):
                return item
        raise ReviewNotFoundError("review", f"Message {message_id} is not in the review queue")

    def queue(self, name: Classification | str) -> list[ReviewItem]:
        name = Classification(name)
        return [item for item in self.items() if item.classification == name]

    def counts(self) -> dict[str, int]:
        self._ensure_fresh()
        return {queue.value: self._counts[queue] for queue in QUEUES}

    # -- pagination --------------------------------------------------------

    @property
    def active_queue(self) -> Classification:
        return self._active_queue

    def set_active_queue(self, name: Classification | str) -> None:
        name = Classification(name)
        if name != self._active_queue:
            self._active_queue = name
            self._pages[name] = 1

    def _total_pages(self, queue: Classification) -> int:
        return max(1, math.ceil(self._counts[queue] / self.config.page_size))

    def page(self, name: Classification | str | None = None) -> ReviewPage:
        self._ensure_fresh()
        queue = Classification(name) if name is not None else self._active_queue
        total_pages = self._total_pages(queue)
        current = min(max(self._pages[queue], 1), total_pages)
        self._pages[queue] = current
        start = (current - 1) * self.config.page_size
        items = [item for item in self._items if item.classification == queue]
        return ReviewPage(
            queue=queue,
            page=current,
            total_pages=total_pages,
            total_items=len(items),
            items=tuple(items[start : start + self.config.page_size]),
        )

    def go_to_page(self, number: int) -> ReviewPage:
        self._ensure_fresh()
        queue = self._active_queue
        self._pages[queue] = min(max(int(number), 1), self._total_pages(queue))
        return self.page()

    def next_page(self) -> ReviewPage:
        return self.go_to_page(self._pages[self._active_queue] + 1)

    def previous_page(self) -> ReviewPage:
        return self.go_to_page(self._pages[self._active_queue] - 1)

    # -- drafts ------------------------------------------------------------

    def _replace_item(self, updated: ReviewItem) -> None:
        self._items = [updated if item.id == updated.id else item for item in self._items]

    def update_field(self, message_id: str, field_name: str, value: Any) -> CandidateRecord:
        """Edit one candidate field; unknown field names raise ``ValueError``."""
        item = self.get(message_id)
        updated = replace(item, candidate=item.candidate.with_field(field_name, value))
        self._replace_item(updated)
        self._drafts.add(updated.id)
        return updated.candidate

    # -- commits -----------------------------------------------------------

    def _failure(self, exc: ReviewError) -> ReviewNotice:
        logger.warning("Review action %s failed: %s", exc.action, exc.detail)
        return ReviewNotice(exc.action, False, f"Falha ao executar '{exc.action}': {exc.detail}")

    def approve(self, message_id: str) -> ReviewNotice:
        try:
            item = self.get(message_id)
            if item.classification == Classification.DISCARD:
                return ReviewNotice("approve", False, "Mensagens descartadas precisam ser restauradas antes")
            commit = approve_sale if item.classification == Classification.SALE else approve_transaction
            with self._guard.hold(item.id, "approve"), self._session_factory() as db:
                outcome = commit(db, item.id, item.candidate)
        except ReviewError as exc:
            return self._failure(exc)
        self._stale = True
        label = "Venda" if outcome.record_type == "sale" else "Transação"
        return ReviewNotice("approve", True, f"{label} aprovada", outcome.record_id)

    def reject(self, message_id: str, reason: Optional[str] = None, custom_reason: Optional[str] = None) -> ReviewNotice:
        try:
            item = self.get(message_id)
            with self._guard.hold(item.id, "reject"), self._session_factory() as db:
                reject_message(db, item.id, resolve_reject_reason(reason, custom_reason))
        except ReviewError as exc:
            return self._failure(exc)
        self._stale = True
        return ReviewNotice("reject", True, "Mensagem descartada")

    def restore(self, message_id: str) -> ReviewNotice:
        try:
            item = self.get(message_id)
            with self._guard.hold(item.id, "restore"), self._session_factory() as db:
                restore_message(db, item.id)
        except ReviewError as exc:
            return self._failure(exc)
        self.refresh()
        return ReviewNotice("restore", True, "Mensagem restaurada para revisão")

    def clear_discarded(self, confirm: bool = False) -> ReviewNotice:
        try:
            with self._session_factory() as db:
                removed = clear_discarded(db, confirm=confirm)
        except ReviewError as exc:
            return self._failure(exc)
        self._stale = True
        return ReviewNotice("clear_discarded", True, f"{removed} mensagens excluídas")

    # -- AI refinement -----------------------------------------------------

    @property
    def refining(self) -> Optional[str]:
        return self._refining

    def was_refine_attempted(self, message_id: str) -> bool:
        return str(message_id) in self._attempted

    async def refine(self, message_id: str) -> ReviewNotice:
        if not self.config.ai_enabled:
            return ReviewNotice("refine", False, "Nenhuma chave de IA configurada")
        if self._refining is not None:
            return ReviewNotice("refine", False, "Outro refinamento já está em andamento")
        try:
            item = self.get(message_id)
        except ReviewError as exc:
            return self._failure(exc)

        refs = self._refs
        self._refining = item.id
        self._attempted.add(item.id)
        try:
            with self._session_factory() as db:
                refined = await refine_candidate(
                    item.message.content,
                    refs.categories,
                    refs.accounts,
                    refs.clients,
                    provider=self.config.ai_provider,
                    api_key=self.config.api_key,
                    model=self.config.ai_model,
                    timeout_seconds=self.config.ai_timeout_seconds,
                    db=db,
                    message_id=item.id,
                )
        finally:
            self._refining = None

        if refined is None:
            return ReviewNotice("refine", False, "A IA não retornou sugestões")

        # The queue may have been rebuilt while the call was out.
        current = next((entry for entry in self._items if entry.id == item.id), None)
        if current is None or not current.is_pending:
            return ReviewNotice("refine", False, "Mensagem não está mais pendente")
        self._replace_item(
            replace(
                current,
                classification=merge_classification(current.classification, refined),
                candidate=merge_refinement(current.candidate, refined),
                refined=True,
            )
        )
        self._drafts.add(current.id)
        return ReviewNotice("refine", True, "Sugestões da IA aplicadas")

    def _next_auto_refine(self) -> Optional[ReviewItem]:
        for item in self.items():
            if item.is_pending and item.classification != Classification.DISCARD and item.id not in self._attempted:
                return item
        return None

    async def run_auto_refinement(self) -> int:
        """Refine every eligible pending message once, one call at a time."""
        if not self.config.ai_enabled or self._refining is not None:
            return 0
        attempted = 0
        while True:
            item = self._next_auto_refine()
            if item is None:
                return attempted
            self._attempted.add(item.id)
            await self.refine(item.id)
            attempted += 1

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from fintriage.services.triage.contracts import Classification, EntryType, MessageStatus


class CandidateIn(BaseModel):
    value: str = ""
    date: str = ""
    type: EntryType = EntryType.EXPENSE
    description: str = ""
    category_id: str = ""
    account_id: str = ""
    client_id: str = ""
    weight: str = ""
    shipping: str = ""
    seller: str = ""


class CandidateOut(CandidateIn):
    pass


class SenderOut(BaseModel):
    id: str
    name: str
    photo_url: Optional[str] = None


class ReviewItemOut(BaseModel):
    id: str
    created_at: Optional[datetime] = None
    instance_name: Optional[str] = None
    remote_jid: str
    content: str
    status: MessageStatus
    ignore_reason: Optional[str] = None
    classification: Classification
    sender: Optional[SenderOut] = None
    candidate: CandidateOut


class ReviewPageOut(BaseModel):
    queue: Classification
    page: int
    page_size: int
    total_pages: int
    total_items: int
    items: list[ReviewItemOut]


class QueueSummaryOut(BaseModel):
    transaction: int = 0
    sale: int = 0
    discard: int = 0
    total: int = 0


class ApproveRequest(BaseModel):
    queue: Classification
    candidate: CandidateIn


class RejectRequest(BaseModel):
    reason: Optional[str] = None
    custom_reason: Optional[str] = Field(default=None, max_length=500)


class CommitOut(BaseModel):
    message_id: str
    status: MessageStatus
    record_type: Optional[str] = None
    record_id: Optional[str] = None


class ClearDiscardedOut(BaseModel):
    deleted: int


class RejectReasonsOut(BaseModel):
    reasons: list[str]
    other: str
    default: str


class RefineOut(BaseModel):
    message_id: str
    refined: bool
    classification: Classification
    candidate: CandidateOut


class ClientBalanceOut(BaseModel):
    client_id: str
    name: str
    sales_total: float
    received: float
    receivable: float


class FinanceSummaryOut(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None
    income: float
    expenses: float
    balance: float
    sales_total: float
    sales_count: int
    transactions_count: int
    clients: list[ClientBalanceOut] = []

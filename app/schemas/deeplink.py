"""Deep-link gateway schemas — what an email click renders."""

from enum import StrEnum

from pydantic import BaseModel

from app.schemas.approval import ApprovalStatus, OutcomeKind


class DeepLinkState(StrEnum):
    VALIDATING = "validating"  # initial UI state, before the server answers
    SUCCESS = "success"
    EXPIRED = "expired"
    ALREADY_PROCESSED = "already-processed"
    ERROR = "error"


class ExecuteRequest(BaseModel):
    token: str = ""
    action: str = "approve"
    reason: str | None = None


class ItemSummary(BaseModel):
    item_id: str
    submitter_name: str
    project_name: str
    period_label: str
    hours: float
    status: ApprovalStatus


class DeepLinkResult(BaseModel):
    state: DeepLinkState
    message: str
    code: str | None = None  # secondary/debug text
    outcome: OutcomeKind | None = None
    summary: ItemSummary | None = None

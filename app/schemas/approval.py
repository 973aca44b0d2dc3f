"""Approval request/response schemas."""

from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    VIEW = "view"


class OutcomeKind(StrEnum):
    """Result of driving the approval state machine once."""

    ADVANCED = "advanced"  # approved step k < N, now pending with k + 1
    APPROVED = "approved"  # final step approved
    REJECTED = "rejected"
    EXPIRED = "expired"
    INVALID_TOKEN = "invalid_token"
    ALREADY_USED = "already_used"
    ALREADY_PROCESSED = "already_processed"
    ERROR = "error"

    @property
    def is_transition(self) -> bool:
        return self in (OutcomeKind.ADVANCED, OutcomeKind.APPROVED, OutcomeKind.REJECTED)


class Person(BaseModel):
    id: str = Field(..., max_length=128)
    name: str = Field(..., max_length=256)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", max_length=320)


class ApprovalChainEntry(Person):
    role: str = ""  # label shown in emails, e.g. "Manager", "Client"


# ── Submission ───────────────────────────────────────────────────────


class ApprovalSubmit(BaseModel):
    period_id: str = Field(..., max_length=128)
    project_id: str = ""
    project_name: str = ""
    period_start: date
    period_end: date
    hours_total: float = Field(0.0, ge=0)
    amount: float | None = Field(None, ge=0)
    submitter: Person
    approval_chain: list[ApprovalChainEntry] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_period(self) -> ApprovalSubmit:
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class ApprovalResponse(BaseModel):
    id: str
    period_id: str
    project_id: str
    project_name: str
    period_start: date
    period_end: date
    hours_total: float
    amount: float | None
    submitter_id: str
    submitter_name: str
    submitter_email: str
    approval_chain: list[ApprovalChainEntry]
    current_step_index: int
    current_approver_id: str | None
    status: ApprovalStatus
    rejection_reason: str | None
    rejected_by: str | None
    approved_at: datetime | None
    rejected_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ApprovalEventResponse(BaseModel):
    event: str
    step_index: int
    actor_id: str | None
    channel: str
    reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── In-app decisions ─────────────────────────────────────────────────


class ApprovalDecision(BaseModel):
    approver_id: str
    reason: str = ""


class BulkDecision(BaseModel):
    item_ids: list[str] = Field(..., min_length=1)
    approver_id: str
    reason: str = ""


class BulkDecisionResult(BaseModel):
    item_id: str
    outcome: OutcomeKind
    code: str | None = None
    status: ApprovalStatus | None = None

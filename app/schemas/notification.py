"""Notification schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class NotificationKind(StrEnum):
    APPROVAL_REQUESTED = "approval_requested"
    FIRST_APPROVAL_GRANTED = "first_approval_granted"
    FINAL_APPROVAL_GRANTED = "final_approval_granted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PlannedNotification:
    """One email the dispatcher owes after a transition."""

    kind: NotificationKind
    item_id: str
    recipient_id: str
    recipient_name: str
    recipient_email: str
    context: dict[str, Any] = field(default_factory=dict)
    step_index: int | None = None  # set for approval requests


class NotificationLogResponse(BaseModel):
    id: int
    approval_item_id: str
    kind: str
    recipient: str
    subject: str
    status: str
    attempts: int
    provider_id: str | None
    last_error: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RetryResult(BaseModel):
    retried: int
    sent: int
    failed: int

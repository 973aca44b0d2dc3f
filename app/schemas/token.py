"""Action token payload schemas."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from app.schemas.approval import ApprovalAction


class TokenError(StrEnum):
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"


class TokenPayload(BaseModel):
    """Signed body of an action token. Wire names are camelCase."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    approval_item_id: str = Field(..., alias="approvalItemId", min_length=1)
    approver_id: str = Field(..., alias="approverId", min_length=1)
    action: ApprovalAction
    issued_at: AwareDatetime = Field(..., alias="issuedAt")
    expires_at: AwareDatetime = Field(..., alias="expiresAt")


@dataclass(frozen=True)
class IssuedToken:
    token: str  # url-safe encoded bundle
    payload: TokenPayload


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    payload: TokenPayload | None = None
    reason: TokenError | None = None

"""Token service — mint and validate signed, expiring action tokens.

Wire format: ``base64url(payload_json) + "." + base64url(hmac_sha256)``,
unpadded, so the token survives a URL query string without escaping. The
payload is canonical JSON (sorted keys, no whitespace) and the signature is
computed over exactly those bytes, so validation is a pure recomputation.

Single-use bookkeeping is NOT done here: ``used_at`` lives in the token
registry (``approval_store``) and is consulted by the approval engine.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from pydantic import ValidationError

from app.config import settings
from app.schemas.approval import ApprovalAction
from app.schemas.token import IssuedToken, TokenError, TokenPayload, TokenValidation
from app.utils.clock import utcnow
from app.utils.crypto import b64url_decode, b64url_encode, random_token_id, sign, verify

logger = logging.getLogger(__name__)


def default_ttl_hours(action: ApprovalAction) -> int:
    if action == ApprovalAction.VIEW:
        return settings.view_token_ttl_hours
    return settings.approve_token_ttl_hours


def canonical_bytes(payload: TokenPayload) -> bytes:
    data = payload.model_dump(mode="json", by_alias=True)
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


def encode(payload: TokenPayload, *, key: str | None = None) -> str:
    body = canonical_bytes(payload)
    return f"{b64url_encode(body)}.{b64url_encode(sign(body, key))}"


def issue(
    approval_item_id: str,
    approver_id: str,
    action: ApprovalAction | str,
    ttl_hours: float | None = None,
    *,
    now: datetime | None = None,
    key: str | None = None,
) -> IssuedToken:
    action = ApprovalAction(action)
    if ttl_hours is None:
        ttl_hours = default_ttl_hours(action)
    issued_at = (now or utcnow()).replace(microsecond=0)
    payload = TokenPayload(
        id=random_token_id(),
        approval_item_id=approval_item_id,
        approver_id=approver_id,
        action=action,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(hours=ttl_hours),
    )
    return IssuedToken(token=encode(payload, key=key), payload=payload)


def validate(
    token: str | None, *, now: datetime | None = None, key: str | None = None
) -> TokenValidation:
    """Decode and verify ``token``. Fails closed on anything unexpected."""
    if not token or token.count(".") != 1:
        return TokenValidation(valid=False, reason=TokenError.MALFORMED)

    body_part, sig_part = token.split(".")
    try:
        body = b64url_decode(body_part)
        signature = b64url_decode(sig_part)
    except ValueError:
        return TokenValidation(valid=False, reason=TokenError.MALFORMED)

    if not verify(body, signature, key):
        logger.warning("Rejected action token with bad signature")
        return TokenValidation(valid=False, reason=TokenError.BAD_SIGNATURE)

    try:
        payload = TokenPayload.model_validate(json.loads(body))
    except (ValueError, ValidationError):
        return TokenValidation(valid=False, reason=TokenError.MALFORMED)

    if payload.expires_at < (now or utcnow()):
        return TokenValidation(valid=False, payload=payload, reason=TokenError.EXPIRED)

    return TokenValidation(valid=True, payload=payload)

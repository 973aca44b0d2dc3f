"""Approval engine — the state machine behind every approve/reject.

States: ``pending(step=k)`` for k in 1..N, ``approved``, ``rejected``.

* pending(k) + approve -> pending(k + 1), or approved when k == N
* pending(k) + reject  -> rejected (any k; remaining approvers are skipped)
* approved / rejected  -> no transition, ALREADY_PROCESSED

Two entry points: :func:`execute` for email deep links (token-authorized)
and :func:`decide` for the in-app inbox (caller supplies the already
resolved approver identity).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.approval import ApprovalItem
from app.schemas.approval import ApprovalAction, ApprovalStatus, OutcomeKind
from app.schemas.token import TokenError
from app.services import approval_store, token_service
from app.services.approval_store import StoreConflict

logger = logging.getLogger(__name__)

_TRANSITION_KIND = {
    "step_approved": OutcomeKind.ADVANCED,
    "approved": OutcomeKind.APPROVED,
    "rejected": OutcomeKind.REJECTED,
}


@dataclass
class Outcome:
    kind: OutcomeKind
    item: ApprovalItem | None = None
    # Item state before the transition; the dispatcher needs the approver who acted
    prior_step: int | None = None
    code: str | None = None  # secondary/debug detail
    channel: str = "email"

    @property
    def ok(self) -> bool:
        return self.kind.is_transition


def current_approver(item: ApprovalItem) -> dict | None:
    if item.status != ApprovalStatus.PENDING:
        return None
    return item.approval_chain[item.current_step_index - 1]


def _check_action(action: ApprovalAction | str) -> ApprovalAction | None:
    try:
        action = ApprovalAction(action)
    except ValueError:
        return None
    return action if action != ApprovalAction.VIEW else None


async def execute(
    db: AsyncSession,
    token: str | None,
    action: ApprovalAction | str = ApprovalAction.APPROVE,
    reason: str | None = None,
) -> Outcome:
    """Run one token-authorized action. Never raises for expected conditions."""
    # 1. cryptographic validation
    validation = token_service.validate(token)
    if not validation.valid:
        if validation.reason == TokenError.EXPIRED:
            return Outcome(OutcomeKind.EXPIRED, code=TokenError.EXPIRED.value)
        return Outcome(OutcomeKind.INVALID_TOKEN, code=validation.reason.value)
    payload = validation.payload

    # 2. single-use registry
    record = await approval_store.get_token(db, payload.id)
    if record is None or record.approval_item_id != payload.approval_item_id:
        return Outcome(OutcomeKind.INVALID_TOKEN, code="UNKNOWN_TOKEN")
    if record.used_at is not None:
        return Outcome(OutcomeKind.ALREADY_USED, code="ALREADY_USED")

    # 3. item state
    item = await approval_store.get_item(db, payload.approval_item_id)
    if item is None:
        return Outcome(OutcomeKind.INVALID_TOKEN, code="UNKNOWN_ITEM")
    if item.status != ApprovalStatus.PENDING:
        return Outcome(OutcomeKind.ALREADY_PROCESSED, item=item, code=item.status)

    # 4. authorization: the token grants this action, for the *current* step
    requested = _check_action(action)
    if requested is None or payload.action != requested:
        logger.warning(
            "Token %s (%s) refused for action %r", payload.id, payload.action.value, action
        )
        return Outcome(OutcomeKind.INVALID_TOKEN, code="ACTION_MISMATCH")
    approver = current_approver(item)
    if approver is None or approver["id"] != payload.approver_id:
        logger.warning(
            "Token %s for approver %s is not valid at step %d of item %s",
            payload.id, payload.approver_id, item.current_step_index, item.id,
        )
        return Outcome(OutcomeKind.INVALID_TOKEN, code="NOT_CURRENT_APPROVER")
    if record.step_index != item.current_step_index:
        # same approver reappearing later in the chain; old round links stay dead
        logger.warning(
            "Token %s was issued for step %d, item %s is at step %d",
            payload.id, record.step_index, item.id, item.current_step_index,
        )
        return Outcome(OutcomeKind.INVALID_TOKEN, code="STALE_STEP")
    step, item_id = item.current_step_index, item.id

    # 5. consume the token; the loser of a race stops here
    if not await approval_store.mark_token_used(db, payload.id):
        return Outcome(OutcomeKind.ALREADY_USED, code="ALREADY_USED")

    # 6. transition
    try:
        transition = await approval_store.advance_or_resolve(
            db,
            item_id,
            requested,
            reason,
            actor_id=payload.approver_id,
            channel="email",
            expected_step=step,
        )
    except Exception as exc:
        await db.rollback()
        _report_inconsistency(item_id, payload.id, exc)
        return Outcome(OutcomeKind.ERROR, prior_step=step, code="CONSISTENCY_FAILURE")

    if not transition.applied:
        # Someone else moved the chain between our check and our write
        return Outcome(OutcomeKind.ALREADY_PROCESSED, item=transition.item, code="CHAIN_MOVED")

    # 7.
    return Outcome(_TRANSITION_KIND[transition.event], item=transition.item, prior_step=step)


async def decide(
    db: AsyncSession,
    item_id: str,
    approver_id: str,
    action: ApprovalAction | str,
    reason: str | None = None,
) -> Outcome:
    """In-app approve/reject by an approver identity resolved by the caller."""
    requested = _check_action(action)
    if requested is None:
        return Outcome(OutcomeKind.ERROR, code="UNSUPPORTED_ACTION", channel="app")

    item = await approval_store.get_item(db, item_id)
    if item is None:
        return Outcome(OutcomeKind.ERROR, code="NOT_FOUND", channel="app")
    if item.status != ApprovalStatus.PENDING:
        return Outcome(OutcomeKind.ALREADY_PROCESSED, item=item, code=item.status, channel="app")

    approver = current_approver(item)
    if approver is None or approver["id"] != approver_id:
        return Outcome(OutcomeKind.ERROR, item=item, code="NOT_CURRENT_APPROVER", channel="app")
    step = item.current_step_index

    try:
        transition = await approval_store.advance_or_resolve(
            db, item_id, requested, reason,
            actor_id=approver_id, channel="app", expected_step=step,
        )
    except StoreConflict:
        logger.warning("Gave up on contended approval item %s", item_id)
        return Outcome(OutcomeKind.ERROR, code="CONFLICT", channel="app")

    if not transition.applied:
        return Outcome(
            OutcomeKind.ALREADY_PROCESSED, item=transition.item, code="CHAIN_MOVED", channel="app"
        )
    return Outcome(
        _TRANSITION_KIND[transition.event], item=transition.item, prior_step=step, channel="app"
    )


def _report_inconsistency(item_id: str, token_id: str, exc: BaseException) -> None:
    logger.critical(
        "CONSISTENCY FAILURE: token %s consumed but approval item %s was not transitioned: %s",
        token_id, item_id, exc,
        exc_info=exc,
    )

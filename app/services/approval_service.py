"""Approval service — submission, inbox queries and in-app decisions."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.approval import ApprovalEvent, ApprovalItem
from app.schemas.approval import (
    ApprovalAction,
    ApprovalResponse,
    ApprovalStatus,
    ApprovalSubmit,
    BulkDecisionResult,
)
from app.services import approval_engine, approval_store, notification_service
from app.services.approval_engine import Outcome

logger = logging.getLogger(__name__)


async def submit(db: AsyncSession, data: ApprovalSubmit) -> ApprovalItem:
    """Create the item and email its first approver."""
    item = await approval_store.create_item(db, data)
    item_id = item.id
    await notification_service.notify_submission(db, item)
    return await approval_store.get_item(db, item_id)


async def list_approvals(
    db: AsyncSession,
    status: str | None = None,
    project_id: str | None = None,
    approver_id: str | None = None,
) -> list[ApprovalItem]:
    """Newest first. ``approver_id`` matches the *current* approver only."""
    stmt = select(ApprovalItem).order_by(ApprovalItem.created_at.desc(), ApprovalItem.id)
    if status:
        stmt = stmt.where(ApprovalItem.status == status)
    if project_id:
        stmt = stmt.where(ApprovalItem.project_id == project_id)
    if approver_id:
        stmt = stmt.where(ApprovalItem.current_approver_id == approver_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def pending_count(db: AsyncSession, approver_id: str) -> int:
    stmt = select(func.count(ApprovalItem.id)).where(
        ApprovalItem.status == ApprovalStatus.PENDING.value,
        ApprovalItem.current_approver_id == approver_id,
    )
    return (await db.execute(stmt)).scalar_one()


async def get_approval(db: AsyncSession, item_id: str) -> ApprovalItem | None:
    return await approval_store.get_item(db, item_id)


def present(item: ApprovalItem, viewer_role: str | None = None) -> ApprovalResponse:
    """Response model with the amount masked for roles that must not see rates."""
    response = ApprovalResponse.model_validate(item)
    if viewer_role and viewer_role in settings.hidden_amount_roles:
        response.amount = None
    return response


async def history(db: AsyncSession, item_id: str) -> list[ApprovalEvent]:
    return await approval_store.list_events(db, item_id)


async def decide(
    db: AsyncSession,
    item_id: str,
    approver_id: str,
    action: ApprovalAction,
    reason: str | None = None,
) -> Outcome:
    outcome = await approval_engine.decide(db, item_id, approver_id, action, reason)
    if outcome.ok:
        await notification_service.dispatch(db, outcome)
        # dispatch may have rolled back the session after a mail failure
        outcome.item = await approval_store.get_item(db, item_id)
    return outcome


async def bulk_decide(
    db: AsyncSession,
    item_ids: list[str],
    approver_id: str,
    action: ApprovalAction,
    reason: str | None = None,
) -> list[BulkDecisionResult]:
    """Decide each item independently; one failure does not stop the rest."""
    results = []
    for item_id in dict.fromkeys(item_ids):  # dedupe, keep order
        outcome = await decide(db, item_id, approver_id, action, reason)
        results.append(
            BulkDecisionResult(
                item_id=item_id,
                outcome=outcome.kind,
                code=outcome.code,
                status=ApprovalStatus(outcome.item.status) if outcome.item is not None else None,
            )
        )
    logger.info(
        "Bulk %s by %s: %d items, %d applied",
        action.value, approver_id, len(results), sum(r.outcome.is_transition for r in results),
    )
    return results

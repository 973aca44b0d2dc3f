"""Approval store — the read-modify-write boundary for items and tokens.

Every mutation of ``approval_items`` / ``approval_tokens`` goes through a
single conditional ``UPDATE`` (``conditional_update``). A caller that loses
a race sees a conflict instead of overwriting another writer's state.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.approval import ApprovalEvent, ApprovalItem, ApprovalToken
from app.schemas.approval import ApprovalAction, ApprovalStatus, ApprovalSubmit
from app.schemas.token import TokenPayload
from app.utils.clock import to_db, utcnow

logger = logging.getLogger(__name__)


class ItemNotFound(LookupError):
    pass


class StoreConflict(RuntimeError):
    """Optimistic update kept losing to concurrent writers."""


@dataclass(frozen=True)
class Transition:
    item: ApprovalItem
    applied: bool  # False: item was terminal or had moved past expected_step
    event: str | None = None


# ── Generic store interface ──────────────────────────────────────────


async def get(db: AsyncSession, model: type, pk: Any):
    return await db.get(model, pk, populate_existing=True)


async def conditional_update(
    db: AsyncSession,
    model: type,
    pk: Any,
    expected: dict[str, Any],
    values: dict[str, Any],
) -> bool:
    """``UPDATE model SET values WHERE id = pk AND <expected>`` then commit.

    ``None`` in ``expected`` means ``IS NULL``. Returns ``True`` when exactly
    one row matched, ``False`` on conflict.
    """
    stmt = update(model).where(model.id == pk)
    for column, value in expected.items():
        attr = getattr(model, column)
        stmt = stmt.where(attr.is_(None) if value is None else attr == value)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = await db.execute(stmt)
    if result.rowcount != 1:
        await db.rollback()
        return False
    await db.commit()
    return True


# ── Items ────────────────────────────────────────────────────────────


async def get_item(db: AsyncSession, item_id: str) -> ApprovalItem | None:
    return await get(db, ApprovalItem, item_id)


async def create_item(db: AsyncSession, data: ApprovalSubmit) -> ApprovalItem:
    chain = [entry.model_dump() for entry in data.approval_chain]
    now = to_db(utcnow())
    item = ApprovalItem(
        id=uuid.uuid4().hex,
        period_id=data.period_id,
        project_id=data.project_id,
        project_name=data.project_name,
        period_start=data.period_start,
        period_end=data.period_end,
        hours_total=data.hours_total,
        amount=data.amount,
        submitter_id=data.submitter.id,
        submitter_name=data.submitter.name,
        submitter_email=data.submitter.email,
        approval_chain=chain,
        current_step_index=1,
        current_approver_id=chain[0]["id"],
        status=ApprovalStatus.PENDING.value,
        version=1,
    )
    db.add(item)
    db.add(
        ApprovalEvent(
            approval_item_id=item.id,
            event="submitted",
            step_index=1,
            actor_id=data.submitter.id,
            channel="app",
            created_at=now,
        )
    )
    await db.commit()
    await db.refresh(item)
    logger.info(
        "Created approval item %s for period %s (%d approvers)",
        item.id, item.period_id, len(chain),
    )
    return item


def next_state(
    item: ApprovalItem, action: ApprovalAction, reason: str | None, actor_id: str | None
) -> tuple[dict[str, Any], str]:
    """Column values for the transition ``action`` applied to ``item``.

    Returns ``(values, event_name)``. Pure; the caller writes it atomically.
    """
    now = to_db(utcnow())
    step = item.current_step_index
    values: dict[str, Any] = {"version": item.version + 1, "updated_at": now}

    if action == ApprovalAction.REJECT:
        values.update(
            status=ApprovalStatus.REJECTED.value,
            current_approver_id=None,
            rejection_reason=reason or "No reason provided",
            rejected_by=actor_id,
            rejected_at=now,
        )
        return values, "rejected"

    if action != ApprovalAction.APPROVE:
        raise ValueError(f"{action!r} does not change an approval item")

    chain = item.approval_chain
    if step < len(chain):
        values.update(
            current_step_index=step + 1,
            current_approver_id=chain[step]["id"],  # 1-based: chain[step] is step + 1
        )
        return values, "step_approved"

    values.update(
        status=ApprovalStatus.APPROVED.value,
        current_approver_id=None,
        approved_at=now,
    )
    return values, "approved"


async def advance_or_resolve(
    db: AsyncSession,
    item_id: str,
    action: ApprovalAction,
    reason: str | None = None,
    *,
    actor_id: str | None = None,
    channel: str = "app",
    expected_step: int | None = None,
) -> Transition:
    """Apply one approve/reject transition atomically.

    Terminal items are returned unchanged. ``expected_step`` pins the write
    to the step the caller authorized against; if the chain moved on the
    current state is returned unchanged.
    """
    for attempt in range(settings.store_max_retries):
        item = await get_item(db, item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if item.status != ApprovalStatus.PENDING:
            return Transition(item, applied=False)
        if expected_step is not None and item.current_step_index != expected_step:
            return Transition(item, applied=False)

        step = item.current_step_index
        values, event = next_state(item, action, reason, actor_id)
        stmt = (
            update(ApprovalItem)
            .where(
                ApprovalItem.id == item_id,
                ApprovalItem.status == ApprovalStatus.PENDING.value,
                ApprovalItem.version == item.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 1:
            db.add(
                ApprovalEvent(
                    approval_item_id=item_id,
                    event=event,
                    step_index=step,
                    actor_id=actor_id,
                    channel=channel,
                    reason=values.get("rejection_reason"),
                    created_at=values["updated_at"],
                )
            )
            await db.commit()
            logger.info("Approval item %s: %s at step %d (%s)", item_id, event, step, channel)
            return Transition(await get_item(db, item_id), applied=True, event=event)

        await db.rollback()
        logger.debug(
            "Version conflict on approval item %s (attempt %d/%d)",
            item_id, attempt + 1, settings.store_max_retries,
        )

    raise StoreConflict(f"approval item {item_id} kept changing under us")


async def list_events(db: AsyncSession, item_id: str) -> list[ApprovalEvent]:
    stmt = (
        select(ApprovalEvent)
        .where(ApprovalEvent.approval_item_id == item_id)
        .order_by(ApprovalEvent.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ── Tokens ───────────────────────────────────────────────────────────


async def get_token(db: AsyncSession, token_id: str) -> ApprovalToken | None:
    return await get(db, ApprovalToken, token_id)


async def register_tokens(
    db: AsyncSession, payloads: list[TokenPayload], step_index: int
) -> list[ApprovalToken]:
    """Record issued tokens, bound to the chain step they were issued for."""
    records = [
        ApprovalToken(
            id=payload.id,
            approval_item_id=payload.approval_item_id,
            approver_id=payload.approver_id,
            action=payload.action.value,
            step_index=step_index,
            issued_at=to_db(payload.issued_at),
            expires_at=to_db(payload.expires_at),
        )
        for payload in payloads
    ]
    db.add_all(records)
    await db.commit()
    return records


async def mark_token_used(db: AsyncSession, token_id: str) -> bool:
    """Consume a token. Of any number of concurrent callers exactly one wins."""
    return await conditional_update(
        db, ApprovalToken, token_id, {"used_at": None}, {"used_at": to_db(utcnow())}
    )

"""Deep-link gateway — adapt an emailed ``{token, action}`` into an engine call.

Stateless: every call validates, drives the engine, fires notifications on
a transition and maps the outcome onto one of the fixed terminal states.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.approval import ApprovalItem
from app.schemas.approval import ApprovalAction, ApprovalStatus, OutcomeKind
from app.schemas.deeplink import DeepLinkResult, DeepLinkState, ItemSummary
from app.services import approval_engine, approval_store, notification_service, token_service
from app.services.approval_engine import Outcome

logger = logging.getLogger(__name__)

_INVALID_LINK = "This approval link is invalid. Please open the approvals inbox in the app."


def summarize(item: ApprovalItem) -> ItemSummary:
    return ItemSummary(
        item_id=item.id,
        submitter_name=item.submitter_name,
        project_name=item.project_name or "Unknown Project",
        period_label=notification_service.period_label(item),
        hours=item.hours_total,
        status=ApprovalStatus(item.status),
    )


def to_result(outcome: Outcome) -> DeepLinkResult:
    """Map an engine outcome onto a terminal UI state."""
    kind = outcome.kind
    summary = summarize(outcome.item) if outcome.item is not None and kind != OutcomeKind.ERROR else None

    if kind in (OutcomeKind.ADVANCED, OutcomeKind.APPROVED):
        return DeepLinkResult(
            state=DeepLinkState.SUCCESS, message="Timesheet approved successfully!",
            outcome=kind, summary=summary,
        )
    if kind == OutcomeKind.REJECTED:
        return DeepLinkResult(
            state=DeepLinkState.SUCCESS, message="Timesheet rejected.",
            outcome=kind, summary=summary,
        )
    if kind == OutcomeKind.EXPIRED:
        return DeepLinkResult(
            state=DeepLinkState.EXPIRED,
            message="This approval link has expired. Please use the approvals inbox in the app instead.",
            code=outcome.code, outcome=kind,
        )
    if kind == OutcomeKind.ALREADY_USED:
        return DeepLinkResult(
            state=DeepLinkState.ALREADY_PROCESSED,
            message="This approval link has already been used. No further action is needed.",
            code=outcome.code, outcome=kind,
        )
    if kind == OutcomeKind.ALREADY_PROCESSED:
        status = summary.status.value if summary else "processed"
        return DeepLinkResult(
            state=DeepLinkState.ALREADY_PROCESSED,
            message=f"Someone already acted on this timesheet (it is now {status}).",
            code=outcome.code, outcome=kind, summary=summary,
        )
    if kind == OutcomeKind.INVALID_TOKEN:
        return DeepLinkResult(
            state=DeepLinkState.ERROR, message=_INVALID_LINK, code="INVALID_TOKEN", outcome=kind,
        )
    return DeepLinkResult(
        state=DeepLinkState.ERROR,
        message="Something went wrong while processing this approval. Our team has been notified.",
        code=outcome.code, outcome=kind,
    )


async def handle(
    db: AsyncSession,
    token: str | None,
    action: str | None = None,
    reason: str | None = None,
) -> DeepLinkResult:
    if not token:
        return DeepLinkResult(state=DeepLinkState.ERROR, message=_INVALID_LINK, code="MISSING_TOKEN")

    outcome = await approval_engine.execute(db, token, action or ApprovalAction.APPROVE, reason)
    logger.info("Deep link %s -> %s (%s)", action or "approve", outcome.kind.value, outcome.code)

    result = to_result(outcome)
    if outcome.ok:
        await notification_service.dispatch(db, outcome)
    return result


async def view(db: AsyncSession, token: str | None) -> DeepLinkResult:
    """Read-only: show the item behind a ``view`` token. Never consumes it."""
    validation = token_service.validate(token)
    if not validation.valid:
        if validation.payload is not None:  # EXPIRED
            return to_result(Outcome(OutcomeKind.EXPIRED, code=validation.reason.value))
        return to_result(Outcome(OutcomeKind.INVALID_TOKEN, code=validation.reason.value))

    payload = validation.payload
    if payload.action != ApprovalAction.VIEW:
        return to_result(Outcome(OutcomeKind.INVALID_TOKEN, code="ACTION_MISMATCH"))
    record = await approval_store.get_token(db, payload.id)
    item = await approval_store.get_item(db, payload.approval_item_id)
    if record is None or item is None:
        return to_result(Outcome(OutcomeKind.INVALID_TOKEN, code="UNKNOWN_TOKEN"))

    return DeepLinkResult(
        state=DeepLinkState.SUCCESS,
        message=f"Timesheet is {item.status}.",
        code="VIEW",
        summary=summarize(item),
    )

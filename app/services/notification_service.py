"""Notification dispatcher — turn engine outcomes into approval emails.

``plan`` is a pure mapping from an :class:`Outcome` to the emails owed:

* advanced  -> submitter ("approved by step k"), new current approver (request)
* approved  -> submitter only ("fully approved")
* rejected  -> submitter only, with the reason
* anything else -> nothing

Approval requests always carry three freshly issued tokens (approve, reject,
view), so a link from an earlier round can never act on a later step.
Delivery is best-effort: failures are retried with backoff, logged and
recorded in ``notification_log``, never raised into the approval path.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import urlencode

import jinja2
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters import email as email_adapter
from app.adapters.base import EmailDeliveryError, EmailTransport
from app.config import settings
from app.models.approval import ApprovalItem
from app.models.notification import NotificationLog
from app.schemas.approval import ApprovalAction, OutcomeKind
from app.schemas.notification import NotificationKind, PlannedNotification, RetryResult
from app.services import approval_store, token_service
from app.services.approval_engine import Outcome

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "emails"

_TEMPLATES = {
    NotificationKind.APPROVAL_REQUESTED: "approval_request.html.j2",
    NotificationKind.FIRST_APPROVAL_GRANTED: "first_approval.html.j2",
    NotificationKind.FINAL_APPROVAL_GRANTED: "final_approval.html.j2",
    NotificationKind.REJECTED: "rejection.html.j2",
}

_SUBJECTS = {
    NotificationKind.APPROVAL_REQUESTED: "Approval Request: {submitter_name} - {period_label}",
    NotificationKind.FIRST_APPROVAL_GRANTED: "Approved by {approver_name} - {period_label}",
    NotificationKind.FINAL_APPROVAL_GRANTED: "Timesheet Fully Approved - Ready to Invoice",
    NotificationKind.REJECTED: "Action Needed: Timesheet Rejected by {rejector_name}",
}


def _money(value: float | None) -> str:
    return "" if value is None else f"${value:,.2f}"


_env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(TEMPLATES_DIR),
    autoescape=True,
    undefined=jinja2.StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.filters["money"] = _money


def period_label(item: ApprovalItem) -> str:
    return f"{item.period_start:%b %d, %Y} - {item.period_end:%b %d, %Y}"


def item_context(item: ApprovalItem) -> dict:
    return {
        "item_id": item.id,
        "submitter_name": item.submitter_name,
        "project_name": item.project_name or "Unknown Project",
        "period_label": period_label(item),
        "hours": item.hours_total,
        "amount": item.amount,
    }


# ── Planning (pure) ──────────────────────────────────────────────────


def _to_submitter(kind: NotificationKind, item: ApprovalItem, **extra) -> PlannedNotification:
    return PlannedNotification(
        kind=kind,
        item_id=item.id,
        recipient_id=item.submitter_id,
        recipient_name=item.submitter_name,
        recipient_email=item.submitter_email,
        context={**item_context(item), "recipient_name": item.submitter_name, **extra},
    )


def _request_to(approver: dict, item: ApprovalItem) -> PlannedNotification:
    return PlannedNotification(
        kind=NotificationKind.APPROVAL_REQUESTED,
        item_id=item.id,
        recipient_id=approver["id"],
        recipient_name=approver["name"],
        recipient_email=approver["email"],
        context={
            **item_context(item),
            "recipient_name": approver["name"],
            "approver_role": approver.get("role", ""),
        },
        step_index=item.current_step_index,
    )


def plan_submission(item: ApprovalItem) -> list[PlannedNotification]:
    return [_request_to(item.approval_chain[0], item)]


def plan(outcome: Outcome) -> list[PlannedNotification]:
    if not outcome.ok or outcome.item is None or outcome.prior_step is None:
        return []

    item = outcome.item
    chain = item.approval_chain
    actor = chain[outcome.prior_step - 1]

    if outcome.kind == OutcomeKind.ADVANCED:
        next_approver = chain[item.current_step_index - 1]
        return [
            _to_submitter(
                NotificationKind.FIRST_APPROVAL_GRANTED,
                item,
                approver_name=actor["name"],
                approver_role=actor.get("role", ""),
                next_approver_name=next_approver["name"],
            ),
            _request_to(next_approver, item),
        ]
    if outcome.kind == OutcomeKind.APPROVED:
        return [_to_submitter(NotificationKind.FINAL_APPROVAL_GRANTED, item)]
    if outcome.kind == OutcomeKind.REJECTED:
        return [
            _to_submitter(
                NotificationKind.REJECTED,
                item,
                rejector_name=actor["name"],
                reason=item.rejection_reason or "",
            )
        ]
    return []


def render(kind: NotificationKind, context: dict) -> tuple[str, str]:
    """Return ``(subject, html)`` for one notification."""
    subject = _SUBJECTS[kind].format(**context)
    html = _env.get_template(_TEMPLATES[kind]).render(**context)
    return subject, html


# ── Tokens / links ───────────────────────────────────────────────────


async def request_links(
    db: AsyncSession, item_id: str, approver_id: str, step_index: int
) -> dict[str, str]:
    """Issue and register a fresh approve/reject/view token set."""
    issued = {
        action: token_service.issue(item_id, approver_id, action)
        for action in (ApprovalAction.APPROVE, ApprovalAction.REJECT, ApprovalAction.VIEW)
    }
    await approval_store.register_tokens(db, [t.payload for t in issued.values()], step_index)

    base = settings.deep_link_base

    def link(path: str, action: ApprovalAction) -> str:
        return f"{base}{path}?" + urlencode({"token": issued[action].token, "action": action.value})

    return {
        "approve_url": link("/approve", ApprovalAction.APPROVE),
        "reject_url": link("/approve", ApprovalAction.REJECT),
        "view_url": link("/approval-view", ApprovalAction.VIEW),
    }


# ── Delivery ─────────────────────────────────────────────────────────


async def send_with_retry(
    transport: EmailTransport, to: str, subject: str, html: str
) -> tuple[str | None, int, str | None]:
    """Returns ``(provider_id, attempts, last_error)``."""
    max_attempts = max(1, settings.notification_max_attempts)
    delay = settings.notification_backoff_seconds
    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await transport.send(to, subject, html), attempt, None
        except EmailDeliveryError as exc:
            last_error = str(exc)
            logger.warning(
                "Email to %s failed (attempt %d/%d): %s", to, attempt, max_attempts, exc
            )
            if attempt < max_attempts:
                await asyncio.sleep(delay)
                delay *= 2
    return None, max_attempts, last_error


async def deliver(
    db: AsyncSession, note: PlannedNotification, transport: EmailTransport | None = None
) -> NotificationLog:
    transport = transport or email_adapter.email_transport
    context = dict(note.context)
    if note.kind == NotificationKind.APPROVAL_REQUESTED:
        context.update(
            await request_links(db, note.item_id, note.recipient_id, note.step_index)
        )

    subject, html = render(note.kind, context)
    provider_id, attempts, error = await send_with_retry(
        transport, note.recipient_email, subject, html
    )

    entry = NotificationLog(
        approval_item_id=note.item_id,
        kind=note.kind.value,
        recipient=note.recipient_email,
        subject=subject,
        html=html,
        status="sent" if error is None else "failed",
        attempts=attempts,
        provider_id=provider_id,
        last_error=error,
    )
    db.add(entry)
    await db.commit()

    if error is None:
        logger.info("Sent %s email for item %s to %s", note.kind.value, note.item_id, note.recipient_email)
    else:
        logger.error(
            "Giving up on %s email for item %s to %s: %s",
            note.kind.value, note.item_id, note.recipient_email, error,
        )
    return entry


async def _deliver_all(
    db: AsyncSession, notes: list[PlannedNotification], transport: EmailTransport | None
) -> list[NotificationLog]:
    sent = []
    for note in notes:
        try:
            sent.append(await deliver(db, note, transport))
        except Exception:
            # The approval itself is already committed; never let mail undo it.
            await db.rollback()
            logger.exception("Could not dispatch %s email for item %s", note.kind.value, note.item_id)
    return sent


async def dispatch(
    db: AsyncSession, outcome: Outcome, transport: EmailTransport | None = None
) -> list[NotificationLog]:
    return await _deliver_all(db, plan(outcome), transport)


async def notify_submission(
    db: AsyncSession, item: ApprovalItem, transport: EmailTransport | None = None
) -> list[NotificationLog]:
    return await _deliver_all(db, plan_submission(item), transport)


# ── Operator tools ───────────────────────────────────────────────────


async def list_notifications(
    db: AsyncSession, item_id: str | None = None, status: str | None = None
) -> list[NotificationLog]:
    stmt = select(NotificationLog).order_by(NotificationLog.id)
    if item_id:
        stmt = stmt.where(NotificationLog.approval_item_id == item_id)
    if status:
        stmt = stmt.where(NotificationLog.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def retry_failed(db: AsyncSession, transport: EmailTransport | None = None) -> RetryResult:
    """Re-send every ``failed`` notification with its original content."""
    transport = transport or email_adapter.email_transport
    failed = await list_notifications(db, status="failed")
    sent = 0
    for entry in failed:
        provider_id, attempts, error = await send_with_retry(
            transport, entry.recipient, entry.subject, entry.html
        )
        entry.attempts += attempts
        entry.last_error = error
        if error is None:
            entry.status = "sent"
            entry.provider_id = provider_id
            sent += 1
        await db.commit()
    if failed:
        logger.info("Retried %d failed notifications, %d sent", len(failed), sent)
    return RetryResult(retried=len(failed), sent=sent, failed=len(failed) - sent)

"""Notification dispatcher tests — planning rules, fresh links, best-effort delivery."""

import httpx
import pytest

from conftest import ALICE, CLIENT, MANAGER, submit_data

from app.adapters import email as email_adapter
from app.adapters.base import EmailDeliveryError
from app.config import settings
from app.schemas.approval import ApprovalStatus, OutcomeKind
from app.schemas.notification import NotificationKind
from app.services import (
    approval_engine,
    approval_service,
    approval_store,
    deeplink_service,
    notification_service,
    token_service,
)
from app.services.approval_engine import Outcome


async def _submit(db, chain=None, **overrides):
    return await approval_service.submit(db, submit_data(chain, **overrides))


# ── Planning ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_submission_requests_first_approver(db, mailer):
    item = await _submit(db)

    assert [m.to for m in mailer.sent] == [MANAGER["email"]]
    mail = mailer.sent[0]
    assert mail.subject.startswith("Approval Request: Alice")
    assert set(mail.links()) == {"approve", "reject", "view"}
    assert "Apollo" in mail.html
    assert "$4,000.00" in mail.html

    logged = await notification_service.list_notifications(db, item_id=item.id)
    assert [(n.kind, n.status) for n in logged] == [("approval_requested", "sent")]


@pytest.mark.asyncio
async def test_plan_advanced(db):
    item = await _submit(db)
    outcome = await approval_engine.decide(db, item.id, MANAGER["id"], "approve")

    notes = notification_service.plan(outcome)

    assert [(n.kind, n.recipient_email) for n in notes] == [
        (NotificationKind.FIRST_APPROVAL_GRANTED, ALICE["email"]),
        (NotificationKind.APPROVAL_REQUESTED, CLIENT["email"]),
    ]
    assert notes[0].context["approver_name"] == MANAGER["name"]
    assert notes[0].context["next_approver_name"] == CLIENT["name"]
    assert notes[1].context["approver_role"] == "Client"


@pytest.mark.asyncio
async def test_plan_final_approval(db):
    item = await _submit(db, chain=[MANAGER])
    outcome = await approval_engine.decide(db, item.id, MANAGER["id"], "approve")

    notes = notification_service.plan(outcome)
    assert [(n.kind, n.recipient_email) for n in notes] == [
        (NotificationKind.FINAL_APPROVAL_GRANTED, ALICE["email"]),
    ]


@pytest.mark.asyncio
async def test_plan_rejection(db):
    item = await _submit(db)
    outcome = await approval_engine.decide(db, item.id, MANAGER["id"], "reject", "wrong week")

    notes = notification_service.plan(outcome)
    assert len(notes) == 1
    assert notes[0].kind == NotificationKind.REJECTED
    assert notes[0].recipient_email == ALICE["email"]
    assert notes[0].context["rejector_name"] == MANAGER["name"]
    assert notes[0].context["reason"] == "wrong week"


def test_plan_nothing_for_non_transitions():
    for kind in (
        OutcomeKind.EXPIRED,
        OutcomeKind.INVALID_TOKEN,
        OutcomeKind.ALREADY_USED,
        OutcomeKind.ALREADY_PROCESSED,
        OutcomeKind.ERROR,
    ):
        assert notification_service.plan(Outcome(kind)) == []


@pytest.mark.asyncio
async def test_rendered_html_is_escaped(db, mailer):
    await _submit(db, project_name="<script>alert(1)</script>")
    html = mailer.last_to(MANAGER["email"]).html
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


# ── Dispatch through the gateway ─────────────────────────────────────


@pytest.mark.asyncio
async def test_each_round_gets_fresh_tokens(db, mailer):
    await _submit(db)
    manager_links = mailer.last_to(MANAGER["email"]).links()

    result = await deeplink_service.handle(db, manager_links["approve"], "approve")
    assert result.outcome == OutcomeKind.ADVANCED

    client_links = mailer.last_to(CLIENT["email"]).links()
    assert set(client_links.values()).isdisjoint(manager_links.values())
    for action, token in client_links.items():
        payload = token_service.validate(token).payload
        assert payload.approver_id == CLIENT["id"]
        assert payload.action == action

    submitter_mail = mailer.last_to(ALICE["email"])
    assert submitter_mail.subject.startswith(f"Approved by {MANAGER['name']}")
    assert submitter_mail.links() == {}


@pytest.mark.asyncio
async def test_final_approval_notifies_submitter_only(db, mailer):
    await _submit(db, chain=[MANAGER])
    approve = mailer.last_to(MANAGER["email"]).links()["approve"]
    mailer.sent.clear()

    result = await deeplink_service.handle(db, approve, "approve")

    assert result.outcome == OutcomeKind.APPROVED
    assert [m.to for m in mailer.sent] == [ALICE["email"]]
    assert mailer.sent[0].subject == "Timesheet Fully Approved - Ready to Invoice"


@pytest.mark.asyncio
async def test_rejection_email_carries_reason(db, mailer):
    await _submit(db)
    reject = mailer.last_to(MANAGER["email"]).links()["reject"]

    await deeplink_service.handle(db, reject, "reject", "Tuesday is double-counted")

    mail = mailer.last_to(ALICE["email"])
    assert mail.subject == f"Action Needed: Timesheet Rejected by {MANAGER['name']}"
    assert "Tuesday is double-counted" in mail.html
    assert mailer.to(CLIENT["email"]) == []


@pytest.mark.asyncio
async def test_no_email_for_failed_actions(db, mailer):
    await _submit(db)
    approve = mailer.last_to(MANAGER["email"]).links()["approve"]
    await deeplink_service.handle(db, approve, "approve")
    count = len(mailer.sent)

    again = await deeplink_service.handle(db, approve, "approve")
    assert again.outcome == OutcomeKind.ALREADY_USED
    assert len(mailer.sent) == count


# ── Best-effort delivery ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_send_retries_then_succeeds(mailer):
    mailer.fail_next = 2
    provider_id, attempts, error = await notification_service.send_with_retry(
        mailer, "x@example.com", "hi", "<p>hi</p>"
    )
    assert error is None
    assert attempts == 3
    assert provider_id == "msg-1"


@pytest.mark.asyncio
async def test_send_gives_up_after_max_attempts(mailer):
    mailer.fail_next = 10
    provider_id, attempts, error = await notification_service.send_with_retry(
        mailer, "x@example.com", "hi", "<p>hi</p>"
    )
    assert provider_id is None
    assert attempts == settings.notification_max_attempts
    assert error == "provider unavailable"
    assert mailer.fail_next == 10 - settings.notification_max_attempts


@pytest.mark.asyncio
async def test_mail_failure_does_not_undo_transition(db, mailer):
    item = await _submit(db)
    approve = mailer.last_to(MANAGER["email"]).links()["approve"]
    mailer.fail_next = 100

    result = await deeplink_service.handle(db, approve, "approve")

    assert result.outcome == OutcomeKind.ADVANCED
    fresh = await approval_store.get_item(db, item.id)
    assert fresh.status == ApprovalStatus.PENDING
    assert fresh.current_step_index == 2
    failed = await notification_service.list_notifications(db, item_id=item.id, status="failed")
    assert {n.kind for n in failed} == {"first_approval_granted", "approval_requested"}
    assert all(n.last_error == "provider unavailable" for n in failed)


@pytest.mark.asyncio
async def test_retry_failed_resends_original_content(db, mailer):
    item = await _submit(db)
    approve = mailer.last_to(MANAGER["email"]).links()["approve"]
    mailer.fail_next = 100
    await deeplink_service.handle(db, approve, "approve")

    mailer.fail_next = 0
    result = await notification_service.retry_failed(db)

    assert (result.retried, result.sent, result.failed) == (2, 2, 0)
    client_mail = mailer.last_to(CLIENT["email"])
    client_approve = client_mail.links()["approve"]
    outcome = await approval_engine.execute(db, client_approve, "approve")
    assert outcome.kind == OutcomeKind.APPROVED

    assert await notification_service.list_notifications(db, item_id=item.id, status="failed") == []


@pytest.mark.asyncio
async def test_unexpected_dispatch_error_is_contained(db, mailer, monkeypatch):
    item = await _submit(db)

    def boom(kind, context):
        raise RuntimeError("template exploded")

    monkeypatch.setattr(notification_service, "render", boom)
    outcome = await approval_service.decide(db, item.id, MANAGER["id"], "approve")

    assert outcome.kind == OutcomeKind.ADVANCED
    assert outcome.item.current_step_index == 2


# ── Transports ───────────────────────────────────────────────────────


def test_redirect_rewrites_recipient(monkeypatch):
    monkeypatch.setattr(settings, "email_redirect_to", "qa@example.com")
    assert email_adapter.redirect("client@example.com", "Hello") == (
        "qa@example.com",
        "[TEST - intended for client@example.com] Hello",
    )
    assert email_adapter.redirect("qa@example.com", "Hello") == ("qa@example.com", "Hello")


def test_redirect_disabled_by_default():
    assert email_adapter.redirect("client@example.com", "Hello") == ("client@example.com", "Hello")


@pytest.mark.asyncio
async def test_resend_transport_posts_message():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.read()
        return httpx.Response(200, json={"id": "re_123"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = email_adapter.ResendTransport(
        "key-1", api_url="https://resend.test/emails", sender="bot@example.com", client=client
    )

    assert await transport.send("a@example.com", "Subject", "<p>x</p>") == "re_123"
    assert seen["auth"] == "Bearer key-1"
    assert b'"to":["a@example.com"]' in seen["body"].replace(b" ", b"")
    await transport.aclose()


@pytest.mark.asyncio
async def test_resend_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "invalid from address"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = email_adapter.ResendTransport("key-1", api_url="https://resend.test/emails", client=client)

    with pytest.raises(EmailDeliveryError, match="invalid from address"):
        await transport.send("a@example.com", "Subject", "<p>x</p>")

    unconfigured = email_adapter.ResendTransport("", client=client)
    with pytest.raises(EmailDeliveryError, match="not configured"):
        await unconfigured.send("a@example.com", "Subject", "<p>x</p>")
    await client.aclose()


@pytest.mark.asyncio
async def test_log_transport_returns_id():
    message_id = await email_adapter.LogTransport().send("a@example.com", "s", "<p/>")
    assert message_id.startswith("log-")


@pytest.mark.asyncio
async def test_resend_unreadable_success_body_is_a_delivery_error(db, mailer):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway ok</html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = email_adapter.ResendTransport("key-1", api_url="https://resend.test/emails", client=client)

    with pytest.raises(EmailDeliveryError, match="Unreadable"):
        await transport.send("a@example.com", "Subject", "<p>x</p>")

    item = await _submit(db)
    outcome = await approval_engine.decide(db, item.id, MANAGER["id"], "approve")
    logged = await notification_service.dispatch(db, outcome, transport)

    assert [n.status for n in logged] == ["failed", "failed"]
    assert all(n.attempts == settings.notification_max_attempts for n in logged)
    await client.aclose()

"""Email transports: Resend HTTP API and a logging transport for development."""

from __future__ import annotations

import logging
import uuid

import httpx

from app.adapters.base import EmailDeliveryError, EmailTransport
from app.config import settings

logger = logging.getLogger(__name__)


def redirect(to: str, subject: str) -> tuple[str, str]:
    """Apply provider testing mode: route all mail to one verified inbox."""
    target = settings.email_redirect_to
    if not target or target == to:
        return to, subject
    return target, f"[TEST - intended for {to}] {subject}"


class ResendTransport(EmailTransport):
    """Sends via ``POST /emails`` on the Resend API."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str | None = None,
        sender: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url or settings.resend_api_url
        self._sender = sender or settings.email_from
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.email_timeout_seconds
        )

    async def send(self, to: str, subject: str, html: str) -> str:
        if not self._api_key:
            raise EmailDeliveryError("Email service not configured (missing Resend API key)")

        to, subject = redirect(to, subject)
        try:
            resp = await self._client.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"from": self._sender, "to": [to], "subject": subject, "html": html},
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Network error sending email: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message", resp.text)
            except ValueError:
                detail = resp.text
            raise EmailDeliveryError(f"Resend API error {resp.status_code}: {detail}")

        try:
            message_id = resp.json().get("id", "")
        except ValueError as exc:
            raise EmailDeliveryError(f"Unreadable Resend API response: {resp.text[:200]}") from exc
        logger.info("Email sent via Resend (id=%s) to %s: %s", message_id, to, subject)
        return message_id

    async def aclose(self) -> None:
        await self._client.aclose()


class LogTransport(EmailTransport):
    """Development transport — logs instead of sending."""

    async def send(self, to: str, subject: str, html: str) -> str:
        to, subject = redirect(to, subject)
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info("Email (not sent, log backend) id=%s to=%s subject=%s", message_id, to, subject)
        logger.debug("Email body for %s:\n%s", message_id, html)
        return message_id


def build_transport() -> EmailTransport:
    if settings.email_backend == "resend":
        return ResendTransport(settings.resend_api_key)
    if settings.email_backend != "log":
        logger.warning("Unknown email backend %r — falling back to log", settings.email_backend)
    return LogTransport()


email_transport: EmailTransport = build_transport()

"""Shared fixtures: fresh SQLite database per test, recording mail transport."""

import os
import re
import tempfile
from dataclasses import dataclass
from datetime import date
from html import unescape
from urllib.parse import parse_qs, urlparse

_TMP = tempfile.mkdtemp(prefix="workgraph-tests-")
os.environ["WORKGRAPH_DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/test.db"
os.environ["WORKGRAPH_TOKEN_SECRET"] = "test-secret"
os.environ["WORKGRAPH_EMAIL_BACKEND"] = "log"
os.environ["WORKGRAPH_EMAIL_REDIRECT_TO"] = ""
os.environ["WORKGRAPH_NOTIFICATION_BACKOFF_SECONDS"] = "0"
os.environ["WORKGRAPH_PUBLIC_URL"] = "http://test"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app import models  # noqa: E402,F401
from app.adapters import email as email_adapter  # noqa: E402
from app.adapters.base import EmailDeliveryError, EmailTransport  # noqa: E402
from app.database import Base, async_session, engine  # noqa: E402
from app.main import app as fastapi_app  # noqa: E402
from app.schemas.approval import ApprovalSubmit  # noqa: E402


@dataclass
class SentEmail:
    to: str
    subject: str
    html: str

    def links(self) -> dict[str, str]:
        """``{action: token}`` for every deep link in the message."""
        found = {}
        for href in re.findall(r'href="([^"]+)"', self.html):
            query = parse_qs(urlparse(unescape(href)).query)
            if "token" in query:
                found[query.get("action", ["approve"])[0]] = query["token"][0]
        return found


class RecordingTransport(EmailTransport):
    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self.fail_next = 0  # number of upcoming sends that raise

    async def send(self, to: str, subject: str, html: str) -> str:
        if self.fail_next:
            self.fail_next -= 1
            raise EmailDeliveryError("provider unavailable")
        self.sent.append(SentEmail(to, subject, html))
        return f"msg-{len(self.sent)}"

    def to(self, address: str) -> list[SentEmail]:
        return [m for m in self.sent if m.to == address]

    def last_to(self, address: str) -> SentEmail:
        return self.to(address)[-1]


@pytest_asyncio.fixture(autouse=True)
async def _fresh_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest.fixture(autouse=True)
def mailer(monkeypatch) -> RecordingTransport:
    transport = RecordingTransport()
    monkeypatch.setattr(email_adapter, "email_transport", transport)
    return transport


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as ac:
        yield ac


ALICE = {"id": "u-alice", "name": "Alice", "email": "alice@example.com"}
MANAGER = {"id": "u-manager", "name": "Morgan Manager", "email": "manager@example.com", "role": "Manager"}
CLIENT = {"id": "u-client", "name": "Casey Client", "email": "client@example.com", "role": "Client"}


def submission(chain=None, **overrides) -> dict:
    body = {
        "period_id": "period-2026-w41",
        "project_id": "proj-1",
        "project_name": "Apollo",
        "period_start": date(2026, 10, 5).isoformat(),
        "period_end": date(2026, 10, 11).isoformat(),
        "hours_total": 40,
        "amount": 4000.0,
        "submitter": ALICE,
        "approval_chain": chain if chain is not None else [MANAGER, CLIENT],
    }
    body.update(overrides)
    return body


def submit_data(chain=None, **overrides) -> ApprovalSubmit:
    return ApprovalSubmit.model_validate(submission(chain, **overrides))

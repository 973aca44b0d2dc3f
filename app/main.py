"""FastAPI application entrypoint."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.adapters import email as email_adapter
from app.config import settings
from app.database import init_db
from app.routers import approvals, deeplinks, notifications

# ── Logging setup ────────────────────────────────────────────────────
_log_level = os.environ.get("WORKGRAPH_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Transition + consistency messages should always reach the operator
logging.getLogger("app.services.approval_engine").setLevel(logging.INFO)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()
    logger.info(
        "WorkGraph approvals ready (env=%s, email backend=%s)",
        settings.env, settings.email_backend,
    )
    if settings.env != "development" and settings.token_secret == "change-me":
        logger.warning("WORKGRAPH_TOKEN_SECRET is the default — email approval links are forgeable")

    yield

    # Shutdown
    await email_adapter.email_transport.aclose()


app = FastAPI(
    title="WorkGraph Approvals",
    description="Multi-party timesheet approval chains with one-click email actions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.public_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(approvals.router, prefix="/api/approvals", tags=["approvals"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(deeplinks.router, tags=["deep-links"])


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "workgraph-approvals",
        "email_backend": settings.email_backend,
    }

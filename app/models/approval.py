"""Approval ORM models — approval chain items, action tokens and their history."""

from datetime import date, datetime

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ApprovalItem(Base):
    """One submitted timesheet period moving through its approver chain."""

    __tablename__ = "approval_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Subject: the timesheet period being approved
    period_id: Mapped[str] = mapped_column(String(128))
    project_id: Mapped[str] = mapped_column(String(128), default="")
    project_name: Mapped[str] = mapped_column(String(256), default="")
    period_start: Mapped[date] = mapped_column(Date)
    period_end: Mapped[date] = mapped_column(Date)
    hours_total: Mapped[float] = mapped_column(Float, default=0.0)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)

    submitter_id: Mapped[str] = mapped_column(String(128))
    submitter_name: Mapped[str] = mapped_column(String(256))
    submitter_email: Mapped[str] = mapped_column(String(320))

    # [{id, name, email, role}, ...] — fixed at creation
    approval_chain: Mapped[list] = mapped_column(JSON)
    current_step_index: Mapped[int] = mapped_column(Integer, default=1)  # 1-based
    current_approver_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)  # pending|approved|rejected
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class ApprovalToken(Base):
    """Server-side registry entry for an issued action token."""

    __tablename__ = "approval_tokens"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    approval_item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("approval_items.id", ondelete="CASCADE"), index=True
    )
    approver_id: Mapped[str] = mapped_column(String(128))
    action: Mapped[str] = mapped_column(String(16))  # approve|reject|view
    step_index: Mapped[int] = mapped_column(Integer)  # chain step the token was issued for
    issued_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ApprovalEvent(Base):
    """Append-only transition history of an approval item."""

    __tablename__ = "approval_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    approval_item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("approval_items.id", ondelete="CASCADE"), index=True
    )
    event: Mapped[str] = mapped_column(String(32))  # submitted|step_approved|approved|rejected
    step_index: Mapped[int] = mapped_column(Integer)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), default="app")  # app|email
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)

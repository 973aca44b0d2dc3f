"""Notification log endpoints (operator use)."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.notification import NotificationLogResponse, RetryResult
from app.services import notification_service

router = APIRouter()


@router.get("/", response_model=list[NotificationLogResponse])
async def list_notifications(
    item_id: str | None = None, status: str | None = None, db: AsyncSession = Depends(get_db)
):
    return await notification_service.list_notifications(db, item_id=item_id, status=status)


@router.post("/retry", response_model=RetryResult)
async def retry_failed(db: AsyncSession = Depends(get_db)):
    return await notification_service.retry_failed(db)

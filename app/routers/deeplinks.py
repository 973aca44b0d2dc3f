"""One-click email link endpoints. No session: the token is the credential."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.deeplink import DeepLinkResult
from app.services import deeplink_service

router = APIRouter()


@router.get("/approve", response_model=DeepLinkResult)
async def approve_link(
    token: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await deeplink_service.handle(db, token, action, reason)


@router.get("/approval-view", response_model=DeepLinkResult)
async def view_link(token: str | None = None, db: AsyncSession = Depends(get_db)):
    return await deeplink_service.view(db, token)

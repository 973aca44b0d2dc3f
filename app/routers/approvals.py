"""Approval inbox endpoints — submit, list, in-app decisions, token execute."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.approval import (
    ApprovalAction,
    ApprovalDecision,
    ApprovalEventResponse,
    ApprovalResponse,
    ApprovalSubmit,
    BulkDecision,
    BulkDecisionResult,
    OutcomeKind,
)
from app.schemas.deeplink import DeepLinkResult, DeepLinkState, ExecuteRequest
from app.services import approval_service, deeplink_service

router = APIRouter()

_EXECUTE_STATUS = {
    DeepLinkState.SUCCESS: 200,
    DeepLinkState.EXPIRED: 410,
    DeepLinkState.ALREADY_PROCESSED: 409,
}

_DECISION_ERRORS = {
    "NOT_FOUND": (404, "Approval not found"),
    "NOT_CURRENT_APPROVER": (403, "Not the current approver for this item"),
    "CONFLICT": (409, "Approval is being modified concurrently, try again"),
    "UNSUPPORTED_ACTION": (422, "Unsupported action"),
}


@router.get("/", response_model=list[ApprovalResponse])
async def list_approvals(
    status: str | None = None,
    project_id: str | None = None,
    approver_id: str | None = None,
    viewer_role: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    items = await approval_service.list_approvals(
        db, status=status, project_id=project_id, approver_id=approver_id
    )
    return [approval_service.present(item, viewer_role) for item in items]


@router.post("/", response_model=ApprovalResponse, status_code=201)
async def submit_approval(data: ApprovalSubmit, db: AsyncSession = Depends(get_db)):
    return await approval_service.submit(db, data)


@router.get("/pending-count")
async def pending_count(approver_id: str, db: AsyncSession = Depends(get_db)):
    count = await approval_service.pending_count(db, approver_id)
    return {"approver_id": approver_id, "count": count}


@router.post("/execute", response_model=DeepLinkResult)
async def execute_approval(body: ExecuteRequest, db: AsyncSession = Depends(get_db)):
    result = await deeplink_service.handle(db, body.token, body.action, body.reason)
    if result.state == DeepLinkState.ERROR:
        status_code = 500 if result.outcome == OutcomeKind.ERROR else 400
    else:
        status_code = _EXECUTE_STATUS[result.state]
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


async def _bulk(body: BulkDecision, action: ApprovalAction, db: AsyncSession):
    return await approval_service.bulk_decide(
        db, body.item_ids, body.approver_id, action, body.reason or None
    )


@router.post("/bulk-approve", response_model=list[BulkDecisionResult])
async def bulk_approve(body: BulkDecision, db: AsyncSession = Depends(get_db)):
    return await _bulk(body, ApprovalAction.APPROVE, db)


@router.post("/bulk-reject", response_model=list[BulkDecisionResult])
async def bulk_reject(body: BulkDecision, db: AsyncSession = Depends(get_db)):
    return await _bulk(body, ApprovalAction.REJECT, db)


@router.get("/{item_id}", response_model=ApprovalResponse)
async def get_approval(
    item_id: str, viewer_role: str | None = None, db: AsyncSession = Depends(get_db)
):
    item = await approval_service.get_approval(db, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Approval not found")
    return approval_service.present(item, viewer_role)


@router.get("/{item_id}/history", response_model=list[ApprovalEventResponse])
async def get_history(item_id: str, db: AsyncSession = Depends(get_db)):
    item = await approval_service.get_approval(db, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Approval not found")
    return await approval_service.history(db, item_id)


async def _decide(
    item_id: str, body: ApprovalDecision, action: ApprovalAction, db: AsyncSession
):
    outcome = await approval_service.decide(
        db, item_id, body.approver_id, action, body.reason or None
    )
    if outcome.kind == OutcomeKind.ALREADY_PROCESSED:
        raise HTTPException(status_code=409, detail="Approval already processed")
    if not outcome.ok:
        status_code, detail = _DECISION_ERRORS.get(outcome.code, (400, "Could not process approval"))
        raise HTTPException(status_code=status_code, detail=detail)
    return outcome.item


@router.post("/{item_id}/approve", response_model=ApprovalResponse)
async def approve(item_id: str, body: ApprovalDecision, db: AsyncSession = Depends(get_db)):
    return await _decide(item_id, body, ApprovalAction.APPROVE, db)


@router.post("/{item_id}/reject", response_model=ApprovalResponse)
async def reject(item_id: str, body: ApprovalDecision, db: AsyncSession = Depends(get_db)):
    return await _decide(item_id, body, ApprovalAction.REJECT, db)

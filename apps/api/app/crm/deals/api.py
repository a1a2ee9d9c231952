from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.deals.schemas import (
    DealCreate,
    DealLostRequest,
    DealPage,
    DealRead,
    DealSortField,
    DealStageRequest,
    DealStats,
    DealStatus,
    DealUpdate,
)
from app.crm.deals.service import deal_service
from app.crm.dependencies import get_crm_auth_context
from app.platform.security.context import AuthContext


router = APIRouter(prefix="/api/crm", tags=["crm.deals"])


@router.get("/deals", response_model=DealPage)
def list_deals(
    contact_id: uuid.UUID | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    funnel_stage: str | None = Query(default=None),
    origin: str | None = Query(default=None),
    status_filter: DealStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None),
    sort_by: DealSortField = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealPage:
    return deal_service.list_deals(
        db,
        ctx,
        contact_id=contact_id,
        owner_id=owner_id,
        funnel_stage=funnel_stage,
        origin=origin,
        status=status_filter,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    payload: DealCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.create_deal(db, ctx, payload)


@router.get("/deals/stats", response_model=DealStats)
def deal_stats(
    owner_id: str | None = Query(default=None),
    funnel_stage: str | None = Query(default=None),
    origin: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealStats:
    return deal_service.get_stats(db, ctx, owner_id=owner_id, funnel_stage=funnel_stage, origin=origin)


@router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.get_deal(db, ctx, deal_id)


@router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    deal_id: uuid.UUID,
    payload: DealUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.update_deal(db, ctx, deal_id, payload)


@router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> Response:
    deal_service.soft_delete_deal(db, ctx, deal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/deals/{deal_id}/stage", response_model=DealRead)
def update_deal_stage(
    deal_id: uuid.UUID,
    payload: DealStageRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.update_stage(db, ctx, deal_id, payload.funnel_stage)


@router.post("/deals/{deal_id}/won", response_model=DealRead)
def mark_deal_won(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.mark_as_won(db, ctx, deal_id)


@router.post("/deals/{deal_id}/lost", response_model=DealRead)
def mark_deal_lost(
    deal_id: uuid.UUID,
    payload: DealLostRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.mark_as_lost(db, ctx, deal_id, payload.reason if payload is not None else None)


@router.post("/deals/{deal_id}/reopen", response_model=DealRead)
def reopen_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> DealRead:
    return deal_service.reopen(db, ctx, deal_id)

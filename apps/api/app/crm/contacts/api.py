from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.contacts.schemas import (
    ContactCreate,
    ContactGetOrCreate,
    ContactLookup,
    ContactPage,
    ContactRead,
    ContactResolution,
    ContactSearchResult,
    ContactSortField,
    ContactStats,
    ContactStatus,
    ContactType,
    ContactUpdate,
    KanbanLanePage,
    KanbanLaneSummary,
    KanbanMoveRequest,
    Temperature,
)
from app.crm.contacts.service import contact_service
from app.crm.deals.schemas import DealRead
from app.crm.deals.service import deal_service
from app.crm.dependencies import get_crm_auth_context
from app.platform.security.context import AuthContext


router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])


@router.get("/contacts", response_model=ContactPage)
def list_contacts(
    type: ContactType | None = Query(default=None),
    status_filter: ContactStatus | None = Query(default=None, alias="status"),
    origin: str | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    temperature: Temperature | None = Query(default=None),
    search: str | None = Query(default=None),
    tag: str | None = Query(default=None),
    sort_by: ContactSortField = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactPage:
    return contact_service.list_contacts(
        db,
        ctx,
        type=type,
        status=status_filter,
        origin=origin,
        owner_id=owner_id,
        temperature=temperature,
        search=search,
        tag=tag,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    payload: ContactCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactRead:
    return contact_service.create_contact(db, ctx, payload)


@router.get("/contacts/stats", response_model=ContactStats)
def contact_stats(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactStats:
    return contact_service.get_stats(db, ctx)


@router.get("/contacts/search", response_model=ContactSearchResult)
def search_contact(
    phone: str | None = Query(default=None),
    email: str | None = Query(default=None),
    document_number: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactSearchResult:
    lookup = ContactLookup(phone=phone, email=email, document_number=document_number)
    return contact_service.search_by_identifier(db, ctx, lookup)


@router.post("/contacts/get-or-create", response_model=ContactResolution)
def get_or_create_contact(
    payload: ContactGetOrCreate,
    response: Response,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactResolution:
    resolution = contact_service.get_or_create(db, ctx, payload)
    response.status_code = status.HTTP_201_CREATED if resolution.created else status.HTTP_200_OK
    return resolution


@router.get("/contacts/kanban", response_model=list[KanbanLaneSummary])
def kanban_summary(
    limit_per_lane: int | None = Query(default=None, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> list[KanbanLaneSummary]:
    return contact_service.get_kanban_summary(db, ctx, limit_per_lane=limit_per_lane)


@router.get("/contacts/kanban/{lane_status}", response_model=KanbanLanePage)
def kanban_lane(
    lane_status: ContactStatus,
    limit: int | None = Query(default=None, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> KanbanLanePage:
    return contact_service.get_kanban_lane(db, ctx, lane_status, limit=limit, offset=offset)


@router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactRead:
    return contact_service.get_contact(db, ctx, contact_id)


@router.patch("/contacts/{contact_id}", response_model=ContactRead)
def update_contact(
    contact_id: uuid.UUID,
    payload: ContactUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactRead:
    return contact_service.update_contact(db, ctx, contact_id, payload)


@router.delete("/contacts/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> Response:
    contact_service.soft_delete_contact(db, ctx, contact_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/contacts/{contact_id}/convert", response_model=ContactRead)
def convert_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactRead:
    return contact_service.convert_to_client(db, ctx, contact_id)


@router.post("/contacts/{contact_id}/kanban-position", response_model=ContactRead)
def move_contact(
    contact_id: uuid.UUID,
    payload: KanbanMoveRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactRead:
    return contact_service.update_kanban_position(db, ctx, contact_id, payload)


@router.get("/contacts/{contact_id}/deals", response_model=list[DealRead])
def list_contact_deals(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> list[DealRead]:
    return deal_service.list_deals_by_contact(db, ctx, contact_id)

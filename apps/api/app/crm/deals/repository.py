from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session

from app.crm.contacts.models import CRMContact
from app.crm.contacts.repository import LIKE_ESCAPE, contains_pattern
from app.crm.deals.models import LOST_STAGE, WON_STAGE, CRMDeal
from app.platform.security.context import AuthContext
from app.platform.security.repository import BaseRepository


class DealRepository(BaseRepository):
    resource = "crm.deal"

    def scoped(self, ctx: AuthContext) -> Select[tuple[CRMDeal]]:
        return self.apply_scope_query(select(CRMDeal), ctx)

    def scoped_with_contact(self, ctx: AuthContext) -> Select[Any]:
        return self.scoped(ctx).join(CRMContact, CRMContact.id == CRMDeal.contact_id).add_columns(CRMContact.name)

    def get(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID) -> CRMDeal | None:
        return session.scalar(self.scoped(ctx).where(CRMDeal.id == deal_id))

    def contact_name(self, session: Session, contact_id: uuid.UUID) -> str | None:
        return session.scalar(select(CRMContact.name).where(CRMContact.id == contact_id))


def status_condition(status: str) -> Any:
    if status == "open":
        return CRMDeal.closed_at.is_(None)
    if status == WON_STAGE:
        return CRMDeal.closed_reason == WON_STAGE
    if status == LOST_STAGE:
        return CRMDeal.closed_reason == LOST_STAGE
    raise ValueError(f"unknown deal status '{status}'")


def search_condition(term: str) -> Any:
    pattern = contains_pattern(term)
    return or_(
        CRMDeal.title.ilike(pattern, escape=LIKE_ESCAPE),
        CRMContact.name.ilike(pattern, escape=LIKE_ESCAPE),
    )

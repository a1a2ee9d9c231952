from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, case, delete, func, or_, select
from sqlalchemy.orm import Session

from app.crm.contacts.models import CRMContact, CRMContactTag
from app.crm.identity import normalize_document, normalize_email, phone_variants
from app.platform.security.context import AuthContext
from app.platform.security.repository import BaseRepository


class ContactRepository(BaseRepository):
    resource = "crm.contact"

    def scoped(self, ctx: AuthContext, *, include_deleted: bool = False) -> Select[tuple[CRMContact]]:
        return self.apply_scope_query(select(CRMContact), ctx, include_deleted=include_deleted)

    def get(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> CRMContact | None:
        return session.scalar(self.scoped(ctx).where(CRMContact.id == contact_id))

    def find_by_phone(
        self,
        session: Session,
        ctx: AuthContext,
        phone: str | None,
        *,
        country_code: str,
        include_deleted: bool = False,
    ) -> CRMContact | None:
        variants = phone_variants(phone, country_code)
        if not variants:
            return None
        return self._first_match(session, ctx, CRMContact.phone.in_(variants), include_deleted)

    def find_by_email(
        self, session: Session, ctx: AuthContext, email: str | None, *, include_deleted: bool = False
    ) -> CRMContact | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        return self._first_match(session, ctx, func.lower(CRMContact.email) == normalized, include_deleted)

    def find_by_document(
        self, session: Session, ctx: AuthContext, document: str | None, *, include_deleted: bool = False
    ) -> CRMContact | None:
        normalized = normalize_document(document)
        if normalized is None:
            return None
        return self._first_match(session, ctx, CRMContact.document_number == normalized, include_deleted)

    def find_by_identifiers(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        phone: str | None,
        email: str | None,
        document: str | None,
        country_code: str,
        include_deleted: bool = False,
    ) -> CRMContact | None:
        """Phone first, then email, then document. The first identifier that matches wins."""

        match = self.find_by_phone(session, ctx, phone, country_code=country_code, include_deleted=include_deleted)
        if match is None:
            match = self.find_by_email(session, ctx, email, include_deleted=include_deleted)
        if match is None:
            match = self.find_by_document(session, ctx, document, include_deleted=include_deleted)
        return match

    def find_identifier_owner(
        self,
        session: Session,
        ctx: AuthContext,
        column: str,
        value: str,
        *,
        country_code: str = "",
        exclude_id: uuid.UUID | None = None,
    ) -> CRMContact | None:
        """Any contact, deleted or not, already holding the identifier. Phones match by variant."""

        if column == "phone":
            condition = CRMContact.phone.in_(phone_variants(value, country_code))
        else:
            condition = getattr(CRMContact, column) == value
        stmt = self.scoped(ctx, include_deleted=True).where(condition)
        if exclude_id is not None:
            stmt = stmt.where(CRMContact.id != exclude_id)
        return session.scalar(stmt.limit(1))

    def tags_for(self, session: Session, contact_ids: list[uuid.UUID]) -> dict[uuid.UUID, list[str]]:
        tags: dict[uuid.UUID, list[str]] = {contact_id: [] for contact_id in contact_ids}
        if not contact_ids:
            return tags
        rows = session.execute(
            select(CRMContactTag.contact_id, CRMContactTag.tag)
            .where(CRMContactTag.contact_id.in_(contact_ids))
            .order_by(CRMContactTag.tag.asc())
        ).all()
        for contact_id, tag in rows:
            tags[contact_id].append(tag)
        return tags

    def replace_tags(self, session: Session, contact_id: uuid.UUID, tags: list[str]) -> None:
        session.execute(delete(CRMContactTag).where(CRMContactTag.contact_id == contact_id))
        for tag in tags:
            session.add(CRMContactTag(contact_id=contact_id, tag=tag))

    def add_tags(self, session: Session, contact_id: uuid.UUID, tags: list[str]) -> None:
        existing = set(self.tags_for(session, [contact_id])[contact_id])
        for tag in tags:
            if tag not in existing:
                session.add(CRMContactTag(contact_id=contact_id, tag=tag))
                existing.add(tag)

    def neighbour_positions(
        self,
        session: Session,
        ctx: AuthContext,
        status: str,
        *,
        anchor_position: int | None,
        placement: str,
        exclude_id: uuid.UUID | None = None,
    ) -> tuple[int | None, int | None]:
        """Keys on either side of the insertion point, ignoring the contact being moved."""

        position = CRMContact.kanban_position
        base = self.lane_query(ctx, status).where(position.is_not(None))
        if exclude_id is not None:
            base = base.where(CRMContact.id != exclude_id)

        def _edge(aggregate: Any, *conditions: Any) -> int | None:
            value = session.scalar(base.with_only_columns(aggregate(position)).where(*conditions))
            return int(value) if value is not None else None

        if anchor_position is None:
            if placement == "before":
                return None, _edge(func.min)
            return _edge(func.max), None
        if placement == "before":
            return _edge(func.max, position < anchor_position), anchor_position
        return anchor_position, _edge(func.min, position > anchor_position)

    def lane_query(self, ctx: AuthContext, status: str) -> Select[tuple[CRMContact]]:
        return self.scoped(ctx).where(CRMContact.type == "lead", CRMContact.status == status)

    def lane_members(
        self,
        session: Session,
        ctx: AuthContext,
        status: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> list[CRMContact]:
        stmt = self.lane_query(ctx, status)
        if exclude_id is not None:
            stmt = stmt.where(CRMContact.id != exclude_id)
        return list(session.scalars(stmt.order_by(*self.lane_order())).all())

    @staticmethod
    def lane_order() -> tuple[Any, ...]:
        return (
            case((CRMContact.kanban_position.is_(None), 1), else_=0),
            CRMContact.kanban_position.asc(),
            CRMContact.created_at.asc(),
        )

    def _first_match(self, session: Session, ctx: AuthContext, condition: Any, include_deleted: bool) -> CRMContact | None:
        stmt = (
            self.scoped(ctx, include_deleted=include_deleted)
            .where(condition)
            .order_by(
                case((CRMContact.deleted_at.is_(None), 0), else_=1),
                CRMContact.created_at.desc(),
            )
            .limit(1)
        )
        return session.scalar(stmt)


LIKE_ESCAPE = "\\"


def contains_pattern(term: str) -> str:
    """Wrap a user search term for LIKE, matching %, _ and the escape character literally."""

    escaped = term.strip().replace(LIKE_ESCAPE, LIKE_ESCAPE * 2).replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_condition(term: str) -> Any:
    pattern = contains_pattern(term)
    conditions = [
        CRMContact.name.ilike(pattern, escape=LIKE_ESCAPE),
        CRMContact.email.ilike(pattern, escape=LIKE_ESCAPE),
        CRMContact.phone.ilike(pattern, escape=LIKE_ESCAPE),
    ]
    digits = "".join(char for char in term if char.isdigit())
    if digits:
        conditions.append(CRMContact.phone.like(f"%{digits}%"))
        conditions.append(CRMContact.document_number.like(f"%{digits}%"))
    return or_(*conditions)

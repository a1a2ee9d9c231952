from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Select, case, exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.contacts.models import CONTACT_STATUSES, LOSS_STATUSES, CRMContact, CRMContactTag
from app.crm.contacts.repository import ContactRepository, search_condition
from app.crm.contacts.schemas import (
    ContactAddress,
    ContactCreate,
    ContactGetOrCreate,
    ContactLookup,
    ContactPage,
    ContactRead,
    ContactResolution,
    ContactSearchResult,
    ContactStats,
    ContactUpdate,
    KanbanCard,
    KanbanLanePage,
    KanbanLaneSummary,
    KanbanMoveRequest,
)
from app.crm.deals.models import CRMDeal
from app.crm.errors import ConflictError, NotFoundError, ValidationError
from app.crm.identity import normalize_document, normalize_email, normalize_phone
from app.crm.kanban import position_between, rebalanced_positions
from app.metrics import observe_contact_reconciliation, observe_kanban_rebalance, observe_unique_conflict
from app.otel import get_tracer
from app.platform.security.context import AuthContext
from app.platform.security.rls import is_admin_bypass


logger = logging.getLogger("app.crm.contacts")
tracer = get_tracer(__name__)

_IDENTIFIER_FIELDS = ("phone", "email", "document_number")
_ADDRESS_FIELDS = ("street", "number", "complement", "district", "city", "state", "zip_code", "country")
_SORTABLE = {
    "created_at": CRMContact.created_at,
    "updated_at": CRMContact.updated_at,
    "name": CRMContact.name,
    "lifetime_value_cents": CRMContact.lifetime_value_cents,
    "kanban_position": CRMContact.kanban_position,
}
_RESOLUTION_MESSAGES = {
    "created": "contact.created",
    "found": "contact.found_existing",
    "restored": "contact.restored",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_tags(tags: list[str] | None) -> list[str]:
    normalized: list[str] = []
    for tag in tags or []:
        value = " ".join(tag.split()).lower()[:64]
        if value and value not in normalized:
            normalized.append(value)
    return normalized


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(slots=True)
class ContactService:
    repository: ContactRepository = ContactRepository()
    entity_type: str = "crm.contact"

    def get_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> ContactRead:
        return self._to_read_model(session, self._get_visible(session, ctx, contact_id))

    def list_contacts(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        type: str | None = None,
        status: str | None = None,
        origin: str | None = None,
        owner_id: str | None = None,
        temperature: str | None = None,
        search: str | None = None,
        tag: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> ContactPage:
        settings = get_settings()
        limit = min(max(limit or settings.default_page_size, 1), settings.max_page_size)
        offset = max(offset, 0)

        stmt: Select[tuple[CRMContact]] = self.repository.scoped(ctx)
        if type is not None:
            stmt = stmt.where(CRMContact.type == type)
        if status is not None:
            stmt = stmt.where(CRMContact.status == status)
        if origin is not None:
            stmt = stmt.where(CRMContact.origin == origin)
        if owner_id is not None:
            stmt = stmt.where(CRMContact.owner_id == owner_id)
        if temperature is not None:
            stmt = stmt.where(CRMContact.temperature == temperature)
        if search and search.strip():
            stmt = stmt.where(search_condition(search))
        if tag:
            tag_value = normalize_tags([tag])
            if tag_value:
                stmt = stmt.where(
                    exists(
                        select(CRMContactTag.contact_id).where(
                            CRMContactTag.contact_id == CRMContact.id,
                            CRMContactTag.tag == tag_value[0],
                        )
                    )
                )

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        column = _SORTABLE.get(sort_by, CRMContact.created_at)
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()
        rows = session.scalars(stmt.order_by(ordering, CRMContact.id.asc()).offset(offset).limit(limit)).all()

        tags = self.repository.tags_for(session, [row.id for row in rows])
        return ContactPage(
            items=[self._to_read(row, tags.get(row.id, [])) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    def create_contact(self, session: Session, ctx: AuthContext, dto: ContactCreate) -> ContactRead:
        tenant_id = self.repository.tenant_for_write(ctx)
        identifiers = self._normalized_identifiers(dto.phone, dto.email, dto.document_number)
        self._require_identifier(identifiers)
        loss_reason = self._resolve_loss_reason(dto.status, dto.loss_reason)
        name = self._validated_name(dto.name, present=dto.name is not None)

        for field_name, value in identifiers.items():
            if value is not None:
                self._ensure_identifier_free(session, ctx, field_name, value)

        contact = CRMContact(
            company_id=tenant_id,
            owner_id=dto.owner_id or ctx.user_id,
            type=dto.type,
            status=dto.status,
            loss_reason=loss_reason,
            name=name,
            origin=_clean_text(dto.origin),
            temperature=dto.temperature,
            interests=sorted(set(dto.interests)),
            extra_metadata=dict(dto.metadata),
            **identifiers,
        )
        self._apply_address(contact, dto.address.model_dump() if dto.address else {})
        if contact.type == "lead":
            contact.kanban_position = self._append_position(session, ctx, contact.status, None)

        session.add(contact)
        try:
            session.flush()
            self.repository.replace_tags(session, contact.id, normalize_tags(dto.tags))
            session.commit()
        except IntegrityError:
            session.rollback()
            observe_unique_conflict(self.entity_type, "rejected")
            raise ConflictError("contact.duplicate_identifier")
        session.refresh(contact)

        created = self._to_read_model(session, contact)
        self._record(ctx, created.id, "create", audit.diff(None, created.model_dump(mode="json")))
        self._publish(ctx, "crm.contact.created", created)
        return created

    def update_contact(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_visible(session, ctx, contact_id)
        before = self._to_read_model(session, contact).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)

        try:
            self._apply_changes(session, ctx, contact, dto, changes)
            session.add(contact)
            if changes.get("tags") is not None:
                self.repository.replace_tags(session, contact.id, normalize_tags(changes["tags"]))
            session.commit()
        except IntegrityError:
            session.rollback()
            observe_unique_conflict(self.entity_type, "rejected")
            raise ConflictError("contact.duplicate_identifier")
        except Exception:
            session.rollback()
            raise
        session.refresh(contact)

        updated = self._to_read_model(session, contact)
        self._record(ctx, updated.id, "update", audit.diff(before, updated.model_dump(mode="json")))
        self._publish(ctx, "crm.contact.updated", updated)
        return updated

    def _apply_changes(
        self,
        session: Session,
        ctx: AuthContext,
        contact: CRMContact,
        dto: ContactUpdate,
        changes: dict[str, Any],
    ) -> None:
        if "name" in changes:
            contact.name = self._validated_name(changes["name"], present=changes["name"] is not None)

        raw_identifiers = {
            "phone": normalize_phone(changes.get("phone")),
            "email": normalize_email(changes.get("email")),
            "document_number": normalize_document(changes.get("document_number")),
        }
        for field_name in _IDENTIFIER_FIELDS:
            if field_name not in changes:
                continue
            value = raw_identifiers[field_name]
            if value is not None and value != getattr(contact, field_name):
                self._ensure_identifier_free(session, ctx, field_name, value, exclude_id=contact.id)
            setattr(contact, field_name, value)
        self._require_identifier({name: getattr(contact, name) for name in _IDENTIFIER_FIELDS})

        if "type" in changes and changes["type"] is not None:
            self._apply_type_change(ctx, contact, changes["type"])

        previous_status = contact.status
        resulting_status = changes.get("status") or contact.status
        resulting_reason = changes["loss_reason"] if "loss_reason" in changes else contact.loss_reason
        contact.loss_reason = self._resolve_loss_reason(resulting_status, resulting_reason)
        contact.status = resulting_status
        if contact.type == "lead" and (resulting_status != previous_status or contact.kanban_position is None):
            contact.kanban_position = self._append_position(session, ctx, resulting_status, contact.id)

        for field_name in ("origin", "owner_id"):
            if field_name in changes:
                setattr(contact, field_name, _clean_text(changes[field_name]))
        if "temperature" in changes:
            contact.temperature = changes["temperature"]
        if changes.get("interests") is not None:
            contact.interests = sorted(set(changes["interests"]))
        if changes.get("metadata") is not None:
            contact.extra_metadata = dict(changes["metadata"])
        if changes.get("address") is not None:
            self._apply_address(contact, dto.address.model_dump(exclude_unset=True) if dto.address else {})

    def soft_delete_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> None:
        contact = self._get_visible(session, ctx, contact_id)
        contact.deleted_at = utcnow()
        session.add(contact)
        session.commit()

        self._record(ctx, contact.id, "delete", {"deleted_at": {"from": None, "to": contact.deleted_at.isoformat()}})
        events.publish(
            events.build_envelope(
                "crm.contact.deleted",
                actor_user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
                payload={"contact_id": str(contact.id)},
            )
        )

    def convert_to_client(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> ContactRead:
        contact = self._get_visible(session, ctx, contact_id)
        if contact.type == "client":
            raise ValidationError("contact.already_client", fields={"type": "already_client"})

        contact.type = "client"
        if contact.last_purchase_at is None:
            contact.last_purchase_at = utcnow()
        session.add(contact)
        session.commit()
        session.refresh(contact)

        converted = self._to_read_model(session, contact)
        self._record(ctx, converted.id, "convert", {"type": {"from": "lead", "to": "client"}})
        self._publish(ctx, "crm.contact.converted", converted)
        return converted

    def get_or_create(self, session: Session, ctx: AuthContext, dto: ContactGetOrCreate) -> ContactResolution:
        with tracer.start_as_current_span("crm.contact.get_or_create") as span:
            span.set_attribute("tenant_id", ctx.tenant_id or "")
            try:
                contact, action = self.resolve_or_create(session, ctx, dto)
                session.commit()
            except Exception:
                session.rollback()
                raise
            session.refresh(contact)
            span.set_attribute("contact_action", action)

        resolution = self.build_resolution(session, contact, action)
        self.emit_resolution(ctx, resolution)
        return resolution

    def resolve_or_create(
        self,
        session: Session,
        ctx: AuthContext,
        dto: ContactGetOrCreate,
    ) -> tuple[CRMContact, str]:
        """Find, restore or insert a contact without committing.

        Callers own the transaction. The insert runs inside a SAVEPOINT so a
        unique violation from a concurrent request can be rolled back and
        resolved against the row that won the race.
        """

        tenant_id = self.repository.tenant_for_write(ctx)
        identifiers = self._normalized_identifiers(dto.phone, dto.email, dto.document_number)
        self._require_identifier(identifiers)
        name = _clean_text(dto.name)
        country_code = get_settings().phone_default_country_code

        existing = self.repository.find_by_identifiers(
            session,
            ctx,
            phone=identifiers["phone"],
            email=identifiers["email"],
            document=identifiers["document_number"],
            country_code=country_code,
            include_deleted=True,
        )
        if existing is not None:
            return self._reuse(session, existing, name=name, owner_id=dto.owner_id)

        contact = CRMContact(
            company_id=tenant_id,
            owner_id=dto.owner_id or ctx.user_id,
            type=dto.type,
            status="new",
            name=name,
            origin=_clean_text(dto.origin),
            temperature=dto.temperature,
            interests=[],
            extra_metadata=dict(dto.metadata),
            **identifiers,
        )
        if contact.type == "lead":
            contact.kanban_position = self._append_position(session, ctx, "new", None)

        try:
            with session.begin_nested():
                session.add(contact)
                session.flush()
                self.repository.replace_tags(session, contact.id, normalize_tags(dto.tags))
                session.flush()
        except IntegrityError:
            logger.info("contact.get_or_create.race", extra={"tenant_id": tenant_id, "action": "retry"})
            existing = self.repository.find_by_identifiers(
                session,
                ctx,
                phone=identifiers["phone"],
                email=identifiers["email"],
                document=identifiers["document_number"],
                country_code=country_code,
                include_deleted=True,
            )
            if existing is None:
                observe_unique_conflict(self.entity_type, "rejected")
                raise ConflictError("contact.duplicate_identifier")
            observe_unique_conflict(self.entity_type, "resolved")
            return self._reuse(session, existing, name=name, owner_id=dto.owner_id)

        return contact, "created"

    def build_resolution(self, session: Session, contact: CRMContact, action: str) -> ContactResolution:
        return ContactResolution(
            contact=self._to_read_model(session, contact),
            action=action,
            created=action == "created",
            restored=action == "restored",
            message_key=_RESOLUTION_MESSAGES[action],
        )

    def emit_resolution(self, ctx: AuthContext, resolution: ContactResolution) -> None:
        observe_contact_reconciliation(resolution.action)
        logger.info(
            "contact.resolved",
            extra={"tenant_id": ctx.tenant_id, "contact_id": str(resolution.contact.id), "action": resolution.action},
        )
        if resolution.action == "found":
            return
        self._record(
            ctx,
            resolution.contact.id,
            resolution.action,
            audit.diff(None, resolution.contact.model_dump(mode="json")) if resolution.created else {"deleted_at": {"to": None}},
        )
        self._publish(ctx, f"crm.contact.{resolution.action}", resolution.contact)

    def search_by_identifier(self, session: Session, ctx: AuthContext, lookup: ContactLookup) -> ContactSearchResult:
        identifiers = self._normalized_identifiers(lookup.phone, lookup.email, lookup.document_number)
        self._require_identifier(identifiers)
        contact = self.repository.find_by_identifiers(
            session,
            ctx,
            phone=identifiers["phone"],
            email=identifiers["email"],
            document=identifiers["document_number"],
            country_code=get_settings().phone_default_country_code,
        )
        if contact is None:
            return ContactSearchResult(found=False)
        return ContactSearchResult(found=True, contact=self._to_read_model(session, contact))

    def update_kanban_position(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        dto: KanbanMoveRequest,
    ) -> ContactRead:
        contact = self._get_visible(session, ctx, contact_id)
        if contact.type != "lead":
            raise NotFoundError("contact.kanban_lead_not_found", {"contact_id": str(contact_id)})

        target = dto.status
        loss_reason: str | None = None
        if target in LOSS_STATUSES:
            loss_reason = _clean_text(dto.loss_reason) or _clean_text(contact.loss_reason)
            self._resolve_loss_reason(target, loss_reason)

        anchor: CRMContact | None = None
        placement = dto.placement
        if dto.anchor_contact_id is not None:
            if dto.anchor_contact_id == contact.id:
                raise ValidationError("contact.kanban_self_anchor", fields={"anchor_contact_id": "self_reference"})
            anchor = self.repository.get(session, ctx, dto.anchor_contact_id)
            if anchor is None or anchor.type != "lead":
                raise NotFoundError("contact.kanban_anchor_not_found", {"anchor_contact_id": str(dto.anchor_contact_id)})
            if anchor.status != target:
                anchor = None
                placement = "after"

        before = {"status": contact.status, "kanban_position": contact.kanban_position}
        try:
            if anchor is not None and anchor.kanban_position is None:
                self._rebalance_lane(session, ctx, target, contact.id)
            position = self._position_for(session, ctx, target, contact.id, anchor, placement)
            contact.status = target
            contact.loss_reason = loss_reason
            contact.kanban_position = position
            session.add(contact)
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(contact)

        moved = self._to_read_model(session, contact)
        after = {"status": moved.status, "kanban_position": moved.kanban_position}
        self._record(ctx, moved.id, "move", audit.diff(before, after))
        self._publish(ctx, "crm.contact.moved", moved)
        return moved

    def get_kanban_summary(self, session: Session, ctx: AuthContext, *, limit_per_lane: int | None = None) -> list[KanbanLaneSummary]:
        limit = limit_per_lane or get_settings().kanban_lane_preview_size
        lanes: list[KanbanLaneSummary] = []
        for status_value in CONTACT_STATUSES:
            lane = self.repository.lane_query(ctx, status_value)
            count = session.scalar(select(func.count()).select_from(lane.subquery())) or 0
            lanes.append(
                KanbanLaneSummary(
                    status=status_value,
                    count=count,
                    cards=self._cards(session, lane, limit=limit, offset=0),
                )
            )
        return lanes

    def get_kanban_lane(
        self,
        session: Session,
        ctx: AuthContext,
        status_value: str,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> KanbanLanePage:
        if status_value not in CONTACT_STATUSES:
            raise ValidationError("contact.invalid_status", fields={"status": "invalid"})
        settings = get_settings()
        limit = min(max(limit or settings.kanban_lane_preview_size, 1), settings.max_page_size)
        offset = max(offset, 0)

        lane = self.repository.lane_query(ctx, status_value)
        total = session.scalar(select(func.count()).select_from(lane.subquery())) or 0
        cards = self._cards(session, lane, limit=limit, offset=offset)
        has_more = offset + len(cards) < total
        return KanbanLanePage(
            status=status_value,
            total=total,
            cards=cards,
            has_more=has_more,
            next_offset=offset + len(cards) if has_more else None,
        )

    def get_stats(self, session: Session, ctx: AuthContext) -> ContactStats:
        now = utcnow()
        stmt = self.repository.scoped(ctx).with_only_columns(
            func.count(CRMContact.id),
            func.coalesce(func.sum(case((CRMContact.type == "lead", 1), else_=0)), 0),
            func.coalesce(func.sum(case((CRMContact.type == "client", 1), else_=0)), 0),
            func.coalesce(func.sum(CRMContact.lifetime_value_cents), 0),
            func.coalesce(func.sum(case((CRMContact.created_at >= now - timedelta(days=30), 1), else_=0)), 0),
            func.coalesce(func.sum(case((CRMContact.created_at >= now - timedelta(days=7), 1), else_=0)), 0),
        )
        total, leads, clients, lifetime_value, last_30, last_7 = session.execute(stmt).one()
        return ContactStats(
            total=int(total or 0),
            total_leads=int(leads),
            total_clients=int(clients),
            lifetime_value_total_cents=int(lifetime_value),
            new_last_30_days=int(last_30),
            new_last_7_days=int(last_7),
        )

    def get_visible(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> CRMContact:
        return self._get_visible(session, ctx, contact_id)

    def to_read_model(self, session: Session, contact: CRMContact) -> ContactRead:
        return self._to_read_model(session, contact)

    def _reuse(self, session: Session, contact: CRMContact, *, name: str | None, owner_id: str | None) -> tuple[CRMContact, str]:
        if contact.deleted_at is None:
            return contact, "found"

        contact.deleted_at = None
        if name:
            contact.name = name
        if owner_id:
            contact.owner_id = owner_id
        session.add(contact)
        session.flush()
        return contact, "restored"

    def _position_for(
        self,
        session: Session,
        ctx: AuthContext,
        status_value: str,
        contact_id: uuid.UUID,
        anchor: CRMContact | None,
        placement: str,
    ) -> int:
        settings = get_settings()
        previous, following = self.repository.neighbour_positions(
            session,
            ctx,
            status_value,
            anchor_position=anchor.kanban_position if anchor is not None else None,
            placement=placement,
            exclude_id=contact_id,
        )
        position = position_between(previous, following, gap=settings.kanban_position_gap, min_gap=settings.kanban_min_gap)
        if position is not None:
            return position

        self._rebalance_lane(session, ctx, status_value, contact_id)
        previous, following = self.repository.neighbour_positions(
            session,
            ctx,
            status_value,
            anchor_position=anchor.kanban_position if anchor is not None else None,
            placement=placement,
            exclude_id=contact_id,
        )
        position = position_between(previous, following, gap=settings.kanban_position_gap, min_gap=settings.kanban_min_gap)
        if position is None:
            raise RuntimeError(f"kanban lane '{status_value}' has no room after rebalancing")
        return position

    def _append_position(self, session: Session, ctx: AuthContext, status_value: str, contact_id: uuid.UUID | None) -> int:
        settings = get_settings()
        previous, _ = self.repository.neighbour_positions(
            session,
            ctx,
            status_value,
            anchor_position=None,
            placement="after",
            exclude_id=contact_id,
        )
        return previous + settings.kanban_position_gap if previous is not None else settings.kanban_position_gap

    def _rebalance_lane(self, session: Session, ctx: AuthContext, status_value: str, contact_id: uuid.UUID) -> None:
        members = self.repository.lane_members(session, ctx, status_value, exclude_id=contact_id)
        positions = rebalanced_positions(len(members), gap=get_settings().kanban_position_gap)
        for member, position in zip(members, positions):
            member.kanban_position = position
            session.add(member)
        session.flush()
        observe_kanban_rebalance(status_value)
        logger.info(
            "contact.kanban.rebalanced",
            extra={"tenant_id": ctx.tenant_id, "status": status_value, "action": f"rebalanced:{len(members)}"},
        )

    def _cards(self, session: Session, lane: Select[tuple[CRMContact]], *, limit: int, offset: int) -> list[KanbanCard]:
        open_deals = (
            select(func.count(CRMDeal.id))
            .where(
                CRMDeal.contact_id == CRMContact.id,
                CRMDeal.closed_at.is_(None),
                CRMDeal.deleted_at.is_(None),
            )
            .correlate(CRMContact)
            .scalar_subquery()
        )
        stmt = lane.add_columns(open_deals.label("open_deals_count"))
        rows = session.execute(stmt.order_by(*self.repository.lane_order()).offset(offset).limit(limit)).all()
        return [
            KanbanCard(
                id=contact.id,
                name=contact.name,
                phone=contact.phone,
                email=contact.email,
                temperature=contact.temperature,
                owner_id=contact.owner_id,
                kanban_position=contact.kanban_position,
                open_deals_count=int(open_count or 0),
                created_at=contact.created_at,
            )
            for contact, open_count in rows
        ]

    def _apply_type_change(self, ctx: AuthContext, contact: CRMContact, new_type: str) -> None:
        if new_type == contact.type:
            return
        if contact.type == "client" and new_type == "lead" and not is_admin_bypass(ctx):
            raise ValidationError("contact.type_downgrade_forbidden", fields={"type": "client_to_lead"})
        contact.type = new_type
        if new_type == "client" and contact.last_purchase_at is None:
            contact.last_purchase_at = utcnow()

    def _ensure_identifier_free(
        self,
        session: Session,
        ctx: AuthContext,
        field_name: str,
        value: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        owner = self.repository.find_identifier_owner(
            session,
            ctx,
            field_name,
            value,
            country_code=get_settings().phone_default_country_code,
            exclude_id=exclude_id,
        )
        if owner is None:
            return
        key = "document" if field_name == "document_number" else field_name
        raise ConflictError(
            f"contact.duplicate_{key}",
            {"field": field_name, "contact_id": str(owner.id), "deleted": owner.deleted_at is not None},
        )

    @staticmethod
    def _normalized_identifiers(phone: str | None, email: str | None, document: str | None) -> dict[str, str | None]:
        return {
            "phone": normalize_phone(phone),
            "email": normalize_email(email),
            "document_number": normalize_document(document),
        }

    @staticmethod
    def _require_identifier(identifiers: dict[str, str | None]) -> None:
        if any(value is not None for value in identifiers.values()):
            return
        raise ValidationError(
            "contact.identifier_required",
            fields={field_name: "one_of_required" for field_name in _IDENTIFIER_FIELDS},
        )

    @staticmethod
    def _resolve_loss_reason(status_value: str, loss_reason: str | None) -> str | None:
        if status_value in LOSS_STATUSES:
            cleaned = _clean_text(loss_reason)
            if cleaned is None:
                raise ValidationError("contact.loss_reason_required", fields={"loss_reason": "required"})
            return cleaned
        return None

    @staticmethod
    def _validated_name(name: str | None, *, present: bool) -> str | None:
        cleaned = _clean_text(name)
        if present and cleaned is None:
            raise ValidationError("contact.name_blank", fields={"name": "blank"})
        return cleaned

    @staticmethod
    def _apply_address(contact: CRMContact, address: dict[str, Any]) -> None:
        for key in _ADDRESS_FIELDS:
            if key in address:
                setattr(contact, f"address_{key}", _clean_text(address[key]))

    def _get_visible(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> CRMContact:
        contact = self.repository.get(session, ctx, contact_id)
        if contact is None:
            raise NotFoundError("contact.not_found", {"contact_id": str(contact_id)})
        return contact

    def _to_read_model(self, session: Session, contact: CRMContact) -> ContactRead:
        tags = self.repository.tags_for(session, [contact.id])[contact.id]
        return self._to_read(contact, tags)

    def _to_read(self, contact: CRMContact, tags: list[str]) -> ContactRead:
        return ContactRead.model_validate(
            {
                "id": contact.id,
                "company_id": contact.company_id,
                "owner_id": contact.owner_id,
                "type": contact.type,
                "status": contact.status,
                "loss_reason": contact.loss_reason,
                "name": contact.name,
                "email": contact.email,
                "phone": contact.phone,
                "document_number": contact.document_number,
                "origin": contact.origin,
                "temperature": contact.temperature,
                "tags": tags,
                "interests": list(contact.interests or []),
                "kanban_position": contact.kanban_position,
                "lifetime_value_cents": contact.lifetime_value_cents,
                "last_purchase_at": contact.last_purchase_at,
                "address": ContactAddress(
                    **{key: getattr(contact, f"address_{key}") for key in _ADDRESS_FIELDS}
                ),
                "metadata": dict(contact.extra_metadata or {}),
                "created_at": contact.created_at,
                "updated_at": contact.updated_at,
            }
        )

    def _record(self, ctx: AuthContext, contact_id: uuid.UUID, action: str, changes: dict[str, Any]) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type=self.entity_type,
            entity_id=str(contact_id),
            action=action,
            changes=changes,
            correlation_id=ctx.correlation_id,
        )

    def _publish(self, ctx: AuthContext, event_type: str, contact: ContactRead) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                actor_user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
                payload={
                    "contact_id": str(contact.id),
                    "type": contact.type,
                    "status": contact.status,
                    "owner_id": contact.owner_id,
                },
            )
        )


contact_service = ContactService()

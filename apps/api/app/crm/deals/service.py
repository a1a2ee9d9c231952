from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.contacts.models import CRMContact
from app.crm.contacts.repository import ContactRepository
from app.crm.deals.models import (
    INITIAL_STAGE,
    LOST_STAGE,
    RESERVED_STAGES,
    UNSPECIFIED_LOSS_REASON,
    WON_STAGE,
    CRMDeal,
)
from app.crm.deals.repository import DealRepository, search_condition, status_condition
from app.crm.deals.schemas import DealCreate, DealPage, DealRead, DealStats, DealUpdate
from app.crm.errors import NotFoundError, ValidationError
from app.metrics import observe_deal_closure
from app.otel import get_tracer
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.crm.deals")
tracer = get_tracer(__name__)

_SORTABLE = {
    "created_at": CRMDeal.created_at,
    "updated_at": CRMDeal.updated_at,
    "title": CRMDeal.title,
    "total_value_cents": CRMDeal.total_value_cents,
    "expected_close_date": CRMDeal.expected_close_date,
    "probability": CRMDeal.probability,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def deal_status(deal: CRMDeal) -> str:
    if deal.closed_at is None:
        return "open"
    return deal.closed_reason or LOST_STAGE


@dataclass(slots=True)
class DealService:
    repository: DealRepository = DealRepository()
    contact_repository: ContactRepository = ContactRepository()
    entity_type: str = "crm.deal"

    def get_deal(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID) -> DealRead:
        return self._to_read_model(session, self._get_visible(session, ctx, deal_id))

    def list_deals(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        contact_id: uuid.UUID | None = None,
        owner_id: str | None = None,
        funnel_stage: str | None = None,
        origin: str | None = None,
        status: str | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> DealPage:
        settings = get_settings()
        limit = min(max(limit or settings.default_page_size, 1), settings.max_page_size)
        offset = max(offset, 0)

        stmt = self.repository.scoped_with_contact(ctx)
        if contact_id is not None:
            stmt = stmt.where(CRMDeal.contact_id == contact_id)
        if owner_id is not None:
            stmt = stmt.where(CRMDeal.owner_id == owner_id)
        if funnel_stage is not None:
            stmt = stmt.where(CRMDeal.funnel_stage == funnel_stage)
        if origin is not None:
            stmt = stmt.where(CRMDeal.origin == origin)
        if status is not None:
            stmt = stmt.where(status_condition(status))
        if search and search.strip():
            stmt = stmt.where(search_condition(search))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        column = _SORTABLE.get(sort_by, CRMDeal.created_at)
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()
        rows = session.execute(stmt.order_by(ordering, CRMDeal.id.asc()).offset(offset).limit(limit)).all()
        return DealPage(
            items=[self._to_read(deal, contact_name) for deal, contact_name in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    def list_deals_by_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> list[DealRead]:
        if self.contact_repository.get(session, ctx, contact_id) is None:
            raise NotFoundError("contact.not_found", {"contact_id": str(contact_id)})
        stmt = self.repository.scoped_with_contact(ctx).where(CRMDeal.contact_id == contact_id)
        rows = session.execute(stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id.asc())).all()
        return [self._to_read(deal, contact_name) for deal, contact_name in rows]

    def create_deal(self, session: Session, ctx: AuthContext, dto: DealCreate) -> DealRead:
        try:
            deal = self.add_deal(session, ctx, dto)
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(deal)

        created = self._to_read_model(session, deal)
        self.emit_created(ctx, created)
        return created

    def add_deal(self, session: Session, ctx: AuthContext, dto: DealCreate) -> CRMDeal:
        """Validate and flush a new deal inside the caller's transaction."""

        tenant_id = self.repository.tenant_for_write(ctx)
        title = self._validated_title(dto.title)
        self._validate_value(dto.total_value_cents)
        self._validate_probability(dto.probability)
        stage = self._validated_stage(dto.funnel_stage) if dto.funnel_stage is not None else INITIAL_STAGE

        contact = self.contact_repository.get(session, ctx, dto.contact_id)
        if contact is None:
            raise NotFoundError("deal.contact_not_found", {"contact_id": str(dto.contact_id)})

        deal = CRMDeal(
            company_id=tenant_id,
            contact_id=contact.id,
            owner_id=dto.owner_id or ctx.user_id,
            title=title,
            description=dto.description,
            funnel_stage=stage,
            total_value_cents=dto.total_value_cents,
            probability=dto.probability,
            origin=dto.origin,
            expected_close_date=dto.expected_close_date,
            extra_metadata=dict(dto.metadata),
        )
        session.add(deal)
        session.flush()
        return deal

    def emit_created(self, ctx: AuthContext, deal: DealRead) -> None:
        self._record(ctx, deal.id, "create", audit.diff(None, deal.model_dump(mode="json")))
        self._publish(ctx, "crm.deal.created", deal)

    def update_deal(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self._get_visible(session, ctx, deal_id)
        before = self._to_read_model(session, deal).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)

        if "title" in changes:
            changes["title"] = self._validated_title(changes["title"])
        if "total_value_cents" in changes:
            self._validate_value(changes["total_value_cents"])
            if changes["total_value_cents"] != deal.total_value_cents:
                self._ensure_open(deal)
        if "probability" in changes:
            self._validate_probability(changes["probability"])
        if "funnel_stage" in changes and changes["funnel_stage"] != deal.funnel_stage:
            self._ensure_open(deal)
            changes["funnel_stage"] = self._validated_stage(changes["funnel_stage"])

        for field_name in (
            "title",
            "total_value_cents",
            "probability",
            "funnel_stage",
            "description",
            "origin",
            "expected_close_date",
            "owner_id",
        ):
            if field_name in changes:
                setattr(deal, field_name, changes[field_name])
        if changes.get("metadata") is not None:
            deal.extra_metadata = dict(changes["metadata"])

        session.add(deal)
        session.commit()
        session.refresh(deal)

        updated = self._to_read_model(session, deal)
        self._record(ctx, updated.id, "update", audit.diff(before, updated.model_dump(mode="json")))
        self._publish(ctx, "crm.deal.updated", updated)
        return updated

    def update_stage(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID, funnel_stage: str) -> DealRead:
        deal = self._get_visible(session, ctx, deal_id)
        self._ensure_open(deal)
        stage = self._validated_stage(funnel_stage)

        previous = deal.funnel_stage
        deal.funnel_stage = stage
        session.add(deal)
        session.commit()
        session.refresh(deal)

        updated = self._to_read_model(session, deal)
        self._record(ctx, updated.id, "stage_change", {"funnel_stage": {"from": previous, "to": stage}})
        self._publish(ctx, "crm.deal.stage_changed", updated, extra={"from_stage": previous})
        return updated

    def mark_as_won(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID) -> DealRead:
        """Close the deal as won and credit its contact in the same transaction."""

        with tracer.start_as_current_span("crm.deal.mark_as_won") as span:
            span.set_attribute("deal_id", str(deal_id))
            deal = self._get_visible(session, ctx, deal_id)
            self._ensure_open(deal)
            now = utcnow()

            try:
                result = session.execute(
                    update(CRMDeal)
                    .where(
                        CRMDeal.id == deal.id,
                        CRMDeal.company_id == deal.company_id,
                        CRMDeal.closed_at.is_(None),
                        CRMDeal.deleted_at.is_(None),
                    )
                    .values(
                        closed_at=now,
                        closed_reason=WON_STAGE,
                        funnel_stage=WON_STAGE,
                        probability=100,
                        loss_reason=None,
                        updated_at=now,
                    )
                )
                if result.rowcount == 0:
                    raise ValidationError("deal.already_closed", fields={"status": "closed"})
                self._credit_contact(session, deal, now)
                session.commit()
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                raise
            session.refresh(deal)

        won = self._to_read_model(session, deal)
        observe_deal_closure("won")
        logger.info(
            "deal.won",
            extra={"tenant_id": ctx.tenant_id, "deal_id": str(won.id), "contact_id": str(won.contact_id)},
        )
        self._record(ctx, won.id, "won", {"closed_reason": {"from": None, "to": WON_STAGE}})
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="crm.contact",
            entity_id=str(won.contact_id),
            action="credit",
            changes={"type": {"to": "client"}, "lifetime_value_cents": {"delta": won.total_value_cents}},
            correlation_id=ctx.correlation_id,
        )
        self._publish(ctx, "crm.deal.won", won, extra={"value_cents": won.total_value_cents})
        return won

    def mark_as_lost(
        self,
        session: Session,
        ctx: AuthContext,
        deal_id: uuid.UUID,
        reason: str | None = None,
    ) -> DealRead:
        deal = self._get_visible(session, ctx, deal_id)
        self._ensure_open(deal)

        cleaned = reason.strip() if reason else ""
        deal.closed_at = utcnow()
        deal.closed_reason = LOST_STAGE
        deal.funnel_stage = LOST_STAGE
        deal.probability = 0
        deal.loss_reason = cleaned or UNSPECIFIED_LOSS_REASON
        session.add(deal)
        session.commit()
        session.refresh(deal)

        lost = self._to_read_model(session, deal)
        observe_deal_closure("lost")
        self._record(ctx, lost.id, "lost", {"closed_reason": {"from": None, "to": LOST_STAGE}, "loss_reason": {"to": lost.loss_reason}})
        self._publish(ctx, "crm.deal.lost", lost, extra={"loss_reason": lost.loss_reason})
        return lost

    def reopen(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID) -> DealRead:
        deal = self._get_visible(session, ctx, deal_id)
        if deal.closed_at is None:
            raise ValidationError("deal.not_closed", fields={"status": "open"})

        previous = deal.closed_reason
        try:
            if previous == WON_STAGE:
                self._debit_contact(session, deal, utcnow())
            deal.closed_at = None
            deal.closed_reason = None
            deal.loss_reason = None
            deal.funnel_stage = INITIAL_STAGE
            session.add(deal)
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(deal)

        reopened = self._to_read_model(session, deal)
        self._record(ctx, reopened.id, "reopen", {"closed_reason": {"from": previous, "to": None}})
        if previous == WON_STAGE:
            audit.record(
                actor_user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
                entity_type="crm.contact",
                entity_id=str(reopened.contact_id),
                action="debit",
                changes={"lifetime_value_cents": {"delta": -reopened.total_value_cents}},
                correlation_id=ctx.correlation_id,
            )
        self._publish(ctx, "crm.deal.reopened", reopened)
        return reopened

    def soft_delete_deal(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID) -> None:
        deal = self._get_visible(session, ctx, deal_id)
        deal.deleted_at = utcnow()
        session.add(deal)
        session.commit()

        self._record(ctx, deal.id, "delete", {"deleted_at": {"from": None, "to": deal.deleted_at.isoformat()}})
        events.publish(
            events.build_envelope(
                "crm.deal.deleted",
                actor_user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
                payload={"deal_id": str(deal.id), "contact_id": str(deal.contact_id)},
            )
        )

    def get_stats(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        owner_id: str | None = None,
        funnel_stage: str | None = None,
        origin: str | None = None,
    ) -> DealStats:
        base = self.repository.scoped(ctx)
        if owner_id is not None:
            base = base.where(CRMDeal.owner_id == owner_id)
        if funnel_stage is not None:
            base = base.where(CRMDeal.funnel_stage == funnel_stage)
        if origin is not None:
            base = base.where(CRMDeal.origin == origin)

        is_open = CRMDeal.closed_at.is_(None)
        is_won = CRMDeal.closed_reason == WON_STAGE
        is_lost = CRMDeal.closed_reason == LOST_STAGE
        totals = session.execute(
            base.with_only_columns(
                func.count(CRMDeal.id),
                func.coalesce(func.sum(case((is_open, 1), else_=0)), 0),
                func.coalesce(func.sum(case((is_won, 1), else_=0)), 0),
                func.coalesce(func.sum(case((is_lost, 1), else_=0)), 0),
                func.coalesce(func.sum(case((is_open, CRMDeal.total_value_cents), else_=0)), 0),
                func.coalesce(func.sum(case((is_won, CRMDeal.total_value_cents), else_=0)), 0),
                func.avg(CRMDeal.total_value_cents),
            )
        ).one()
        total, open_count, won, lost, open_value, won_value, avg_value = totals

        closed_rows = session.execute(
            base.with_only_columns(CRMDeal.created_at, CRMDeal.closed_at).where(CRMDeal.closed_at.is_not(None))
        ).all()
        durations = [(closed_at - created_at).total_seconds() / 86400 for created_at, closed_at in closed_rows]
        avg_days = round(sum(durations) / len(durations), 2) if durations else 0.0

        closed = int(won) + int(lost)
        conversion_rate = round(int(won) / closed * 100, 2) if closed else 0.0
        return DealStats(
            total=int(total or 0),
            open=int(open_count),
            won=int(won),
            lost=int(lost),
            open_value_cents=int(open_value),
            won_value_cents=int(won_value),
            avg_value_cents=round(float(avg_value or 0), 2),
            avg_days_to_close=avg_days,
            conversion_rate=conversion_rate,
        )

    def _credit_contact(self, session: Session, deal: CRMDeal, closed_at: datetime) -> None:
        result = session.execute(
            update(CRMContact)
            .where(
                CRMContact.id == deal.contact_id,
                CRMContact.company_id == deal.company_id,
                CRMContact.deleted_at.is_(None),
            )
            .values(
                type="client",
                lifetime_value_cents=CRMContact.lifetime_value_cents + deal.total_value_cents,
                last_purchase_at=closed_at,
                updated_at=closed_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("deal.contact_not_found", {"contact_id": str(deal.contact_id)})

    def _debit_contact(self, session: Session, deal: CRMDeal, reopened_at: datetime) -> None:
        # Reverses the credit from mark_as_won; soft-deleted contacts are debited too.
        remaining = CRMContact.lifetime_value_cents - deal.total_value_cents
        session.execute(
            update(CRMContact)
            .where(CRMContact.id == deal.contact_id, CRMContact.company_id == deal.company_id)
            .values(
                lifetime_value_cents=case((remaining > 0, remaining), else_=0),
                updated_at=reopened_at,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _ensure_open(deal: CRMDeal) -> None:
        if deal.closed_at is not None:
            raise ValidationError("deal.closed", fields={"status": deal_status(deal)})

    @staticmethod
    def _validated_title(title: str | None) -> str:
        cleaned = title.strip() if title else ""
        if not cleaned:
            raise ValidationError("deal.title_required", fields={"title": "required"})
        return cleaned

    @staticmethod
    def _validate_value(value: int | None) -> None:
        if value is None or value < 0:
            raise ValidationError("deal.negative_value", fields={"total_value_cents": "must_be_non_negative"})

    @staticmethod
    def _validate_probability(value: int | None) -> None:
        if value is None or not 0 <= value <= 100:
            raise ValidationError("deal.probability_out_of_range", fields={"probability": "between_0_and_100"})

    @staticmethod
    def _validated_stage(stage: str | None) -> str:
        cleaned = stage.strip() if stage else ""
        if not cleaned:
            raise ValidationError("deal.stage_required", fields={"funnel_stage": "required"})
        if cleaned.lower() in RESERVED_STAGES:
            raise ValidationError("deal.stage_reserved", fields={"funnel_stage": "reserved"})
        return cleaned

    def to_read_model(self, session: Session, deal: CRMDeal) -> DealRead:
        return self._to_read_model(session, deal)

    def _get_visible(self, session: Session, ctx: AuthContext, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.repository.get(session, ctx, deal_id)
        if deal is None:
            raise NotFoundError("deal.not_found", {"deal_id": str(deal_id)})
        return deal

    def _to_read_model(self, session: Session, deal: CRMDeal) -> DealRead:
        return self._to_read(deal, self.repository.contact_name(session, deal.contact_id))

    def _to_read(self, deal: CRMDeal, contact_name: str | None) -> DealRead:
        return DealRead.model_validate(
            {
                "id": deal.id,
                "company_id": deal.company_id,
                "contact_id": deal.contact_id,
                "contact_name": contact_name,
                "owner_id": deal.owner_id,
                "title": deal.title,
                "description": deal.description,
                "funnel_stage": deal.funnel_stage,
                "status": deal_status(deal),
                "total_value_cents": deal.total_value_cents,
                "probability": deal.probability,
                "origin": deal.origin,
                "expected_close_date": deal.expected_close_date,
                "closed_at": deal.closed_at,
                "closed_reason": deal.closed_reason,
                "loss_reason": deal.loss_reason,
                "metadata": dict(deal.extra_metadata or {}),
                "created_at": deal.created_at,
                "updated_at": deal.updated_at,
            }
        )

    def _record(self, ctx: AuthContext, deal_id: uuid.UUID, action: str, changes: dict[str, Any]) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action=action,
            changes=changes,
            correlation_id=ctx.correlation_id,
        )

    def _publish(self, ctx: AuthContext, event_type: str, deal: DealRead, extra: dict[str, Any] | None = None) -> None:
        payload = {
            "deal_id": str(deal.id),
            "contact_id": str(deal.contact_id),
            "funnel_stage": deal.funnel_stage,
            "status": deal.status,
        }
        payload.update(extra or {})
        events.publish(
            events.build_envelope(event_type, actor_user_id=ctx.user_id, tenant_id=ctx.tenant_id, payload=payload)
        )


deal_service = DealService()

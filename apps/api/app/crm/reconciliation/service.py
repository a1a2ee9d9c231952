from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.contacts.schemas import ContactGetOrCreate
from app.crm.contacts.service import ContactService
from app.crm.deals.schemas import DealCreate
from app.crm.deals.service import DealService
from app.crm.errors import ValidationError
from app.crm.reconciliation.schemas import ContactDealCapture, ContactDealCaptureResult
from app.metrics import observe_capture
from app.otel import get_tracer
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.crm.reconciliation")
tracer = get_tracer(__name__)

DEFAULT_SOURCE = "api"


def default_deal_title(name: str, source: str | None) -> str:
    return f"Negotiation with {name} ({source or 'new'})"[:255]


@dataclass(slots=True)
class ReconciliationService:
    contact_service: ContactService = field(default_factory=ContactService)
    deal_service: DealService = field(default_factory=DealService)

    def capture(self, session: Session, ctx: AuthContext, dto: ContactDealCapture) -> ContactDealCaptureResult:
        """Resolve the contact behind an inbound lead and open a new deal for it.

        The contact is reused when any identifier matches (restoring it if it
        was soft-deleted), but a deal is always created. Both writes share one
        transaction: a failed deal insert also discards a freshly created contact.
        """

        name = dto.name.strip()
        if not name:
            raise ValidationError("capture.name_required", fields={"name": "required"})
        source = dto.source.strip() if dto.source and dto.source.strip() else None

        with tracer.start_as_current_span("crm.reconciliation.capture") as span:
            span.set_attribute("tenant_id", ctx.tenant_id or "")
            try:
                contact, action = self.contact_service.resolve_or_create(
                    session,
                    ctx,
                    ContactGetOrCreate(
                        phone=dto.phone,
                        email=dto.email,
                        document_number=dto.document_number,
                        name=name,
                        type="lead",
                        origin=source or DEFAULT_SOURCE,
                        owner_id=ctx.user_id,
                        temperature=dto.temperature,
                        tags=dto.tags,
                        metadata=dto.metadata,
                    ),
                )
                deal = self.deal_service.add_deal(
                    session,
                    ctx,
                    DealCreate(
                        contact_id=contact.id,
                        title=(dto.deal_title or "").strip() or default_deal_title(name, source),
                        funnel_stage=dto.deal_stage,
                        total_value_cents=dto.estimated_value_cents,
                        probability=(
                            dto.deal_probability
                            if dto.deal_probability is not None
                            else get_settings().capture_default_probability
                        ),
                        origin=source or DEFAULT_SOURCE,
                        owner_id=ctx.user_id,
                    ),
                )
                session.commit()
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                logger.warning(
                    "capture.rolled_back",
                    extra={"tenant_id": ctx.tenant_id, "error": str(exc)[:500]},
                )
                raise
            session.refresh(contact)
            session.refresh(deal)
            span.set_attribute("contact_action", action)

        resolution = self.contact_service.build_resolution(session, contact, action)
        deal_read = self.deal_service.to_read_model(session, deal)
        self.contact_service.emit_resolution(ctx, resolution)
        self.deal_service.emit_created(ctx, deal_read)
        observe_capture(action)
        logger.info(
            "capture.completed",
            extra={
                "tenant_id": ctx.tenant_id,
                "contact_id": str(resolution.contact.id),
                "deal_id": str(deal_read.id),
                "action": action,
            },
        )
        return ContactDealCaptureResult(
            contact=resolution.contact,
            contact_action=resolution.action,
            deal=deal_read,
            message_key="capture.deal_created",
            contact_message_key=resolution.message_key,
        )


reconciliation_service = ReconciliationService()

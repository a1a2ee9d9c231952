from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Date, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


INITIAL_STAGE = "new"
WON_STAGE = "won"
LOST_STAGE = "lost"
RESERVED_STAGES = frozenset({WON_STAGE, LOST_STAGE})
UNSPECIFIED_LOSS_REASON = "unspecified"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMDeal(Base):
    __tablename__ = "crm_deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="RESTRICT"),
        nullable=False,
    )
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    funnel_stage: Mapped[str] = mapped_column(String(64), nullable=False, default=INITIAL_STAGE, server_default=INITIAL_STAGE)
    total_value_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    origin: Mapped[str | None] = mapped_column(String(64), nullable=True)
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    expected_close_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_reason: Mapped[str | None] = mapped_column(String(16), nullable=True)
    loss_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_crm_deal_company_contact", "company_id", "contact_id"),
        Index("ix_crm_deal_company_stage", "company_id", "funnel_stage"),
        Index("ix_crm_deal_company_closed", "company_id", "closed_reason", "closed_at"),
    )

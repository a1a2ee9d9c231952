from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, JSON, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


CONTACT_TYPES = ("lead", "client")
CONTACT_STATUSES = ("new", "contacted", "qualified", "lost", "discarded")
LOSS_STATUSES = ("lost", "discarded")
TEMPERATURES = ("cold", "warm", "hot")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMContact(Base):
    __tablename__ = "crm_contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[str] = mapped_column(String(128), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="lead", server_default="lead")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="new", server_default="new")
    loss_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    document_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    origin: Mapped[str | None] = mapped_column(String(64), nullable=True)
    temperature: Mapped[str | None] = mapped_column(String(16), nullable=True)
    interests: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    kanban_position: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    lifetime_value_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    last_purchase_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    address_street: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address_complement: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_district: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    address_state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address_zip_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    address_country: Mapped[str | None] = mapped_column(String(64), nullable=True)
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
        UniqueConstraint("company_id", "phone", name="uq_crm_contact_company_phone"),
        UniqueConstraint("company_id", "email", name="uq_crm_contact_company_email"),
        UniqueConstraint("company_id", "document_number", name="uq_crm_contact_company_document"),
        Index("ix_crm_contact_company_type", "company_id", "type", "deleted_at"),
        Index("ix_crm_contact_kanban", "company_id", "status", "kanban_position"),
    )


class CRMContactTag(Base):
    __tablename__ = "crm_contact_tag"

    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag: Mapped[str] = mapped_column(String(64), primary_key=True)

    __table_args__ = (Index("ix_crm_contact_tag_tag", "tag"),)

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, EmailStr, Field

from app.crm.contacts.schemas import ContactAction, ContactRead, Temperature
from app.crm.deals.schemas import DealRead


class ContactDealCapture(BaseModel):
    """Inbound lead signal from a capture integration (landing page, messaging extension)."""

    phone: str | None = Field(default=None, max_length=32)
    email: EmailStr | None = None
    document_number: str | None = Field(default=None, max_length=32)
    name: str = Field(max_length=255)
    source: str | None = Field(default=None, max_length=64)
    temperature: Temperature | None = None
    tags: list[str] = Field(default_factory=list)
    deal_title: str | None = Field(default=None, max_length=255)
    deal_stage: str | None = Field(default=None, max_length=64)
    estimated_value_cents: int = 0
    deal_probability: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContactDealCaptureResult(BaseModel):
    contact: ContactRead
    contact_action: ContactAction
    deal: DealRead
    message_key: str
    contact_message_key: str

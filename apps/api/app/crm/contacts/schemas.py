from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


ContactType = Literal["lead", "client"]
ContactStatus = Literal["new", "contacted", "qualified", "lost", "discarded"]
Temperature = Literal["cold", "warm", "hot"]
ContactAction = Literal["created", "found", "restored"]
KanbanPlacement = Literal["before", "after"]
ContactSortField = Literal["created_at", "updated_at", "name", "lifetime_value_cents", "kanban_position"]


class ContactAddress(BaseModel):
    street: str | None = None
    number: str | None = None
    complement: str | None = None
    district: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


class ContactCreate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    document_number: str | None = Field(default=None, max_length=32)
    type: ContactType = "lead"
    status: ContactStatus = "new"
    loss_reason: str | None = None
    origin: str | None = Field(default=None, max_length=64)
    temperature: Temperature | None = None
    owner_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    interests: list[int] = Field(default_factory=list)
    address: ContactAddress | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContactUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    document_number: str | None = Field(default=None, max_length=32)
    type: ContactType | None = None
    status: ContactStatus | None = None
    loss_reason: str | None = None
    origin: str | None = Field(default=None, max_length=64)
    temperature: Temperature | None = None
    owner_id: str | None = None
    tags: list[str] | None = None
    interests: list[int] | None = None
    address: ContactAddress | None = None
    metadata: dict[str, Any] | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: str
    owner_id: str | None
    type: ContactType
    status: ContactStatus
    loss_reason: str | None
    name: str | None
    email: str | None
    phone: str | None
    document_number: str | None
    origin: str | None
    temperature: Temperature | None
    tags: list[str]
    interests: list[int]
    kanban_position: int | None
    lifetime_value_cents: int
    last_purchase_at: datetime | None
    address: ContactAddress
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ContactPage(BaseModel):
    items: list[ContactRead]
    total: int
    limit: int
    offset: int


class ContactLookup(BaseModel):
    phone: str | None = None
    email: str | None = None
    document_number: str | None = None


class ContactGetOrCreate(BaseModel):
    phone: str | None = Field(default=None, max_length=32)
    email: EmailStr | None = None
    document_number: str | None = Field(default=None, max_length=32)
    name: str | None = Field(default=None, max_length=255)
    type: ContactType = "lead"
    origin: str | None = Field(default=None, max_length=64)
    owner_id: str | None = None
    temperature: Temperature | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContactResolution(BaseModel):
    contact: ContactRead
    action: ContactAction
    created: bool
    restored: bool
    message_key: str


class ContactSearchResult(BaseModel):
    found: bool
    contact: ContactRead | None = None


class KanbanMoveRequest(BaseModel):
    status: ContactStatus
    anchor_contact_id: UUID | None = None
    placement: KanbanPlacement = "after"
    loss_reason: str | None = None


class KanbanCard(BaseModel):
    id: UUID
    name: str | None
    phone: str | None
    email: str | None
    temperature: Temperature | None
    owner_id: str | None
    kanban_position: int | None
    open_deals_count: int
    created_at: datetime


class KanbanLaneSummary(BaseModel):
    status: ContactStatus
    count: int
    cards: list[KanbanCard]


class KanbanLanePage(BaseModel):
    status: ContactStatus
    total: int
    cards: list[KanbanCard]
    has_more: bool
    next_offset: int | None


class ContactStats(BaseModel):
    total: int
    total_leads: int
    total_clients: int
    lifetime_value_total_cents: int
    new_last_30_days: int
    new_last_7_days: int

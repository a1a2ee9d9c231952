from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


DealStatus = Literal["open", "won", "lost"]
DealSortField = Literal["created_at", "updated_at", "title", "total_value_cents", "expected_close_date", "probability"]


class DealCreate(BaseModel):
    contact_id: UUID
    title: str = Field(max_length=255)
    description: str | None = None
    funnel_stage: str | None = Field(default=None, max_length=64)
    total_value_cents: int = 0
    probability: int = 0
    origin: str | None = Field(default=None, max_length=64)
    expected_close_date: date | None = None
    owner_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    funnel_stage: str | None = Field(default=None, max_length=64)
    total_value_cents: int | None = None
    probability: int | None = None
    origin: str | None = Field(default=None, max_length=64)
    expected_close_date: date | None = None
    owner_id: str | None = None
    metadata: dict[str, Any] | None = None


class DealStageRequest(BaseModel):
    funnel_stage: str = Field(max_length=64)


class DealLostRequest(BaseModel):
    reason: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: str
    contact_id: UUID
    contact_name: str | None = None
    owner_id: str | None
    title: str
    description: str | None
    funnel_stage: str
    status: DealStatus
    total_value_cents: int
    probability: int
    origin: str | None
    expected_close_date: date | None
    closed_at: datetime | None
    closed_reason: Literal["won", "lost"] | None
    loss_reason: str | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class DealPage(BaseModel):
    items: list[DealRead]
    total: int
    limit: int
    offset: int


class DealStats(BaseModel):
    total: int
    open: int
    won: int
    lost: int
    open_value_cents: int
    won_value_cents: int
    avg_value_cents: float
    avg_days_to_close: float
    conversion_rate: float

"""Pydantic schemas for deals and their stage history.

Defines all structured types for the deal lifecycle:
- Enums: DealPriority, DealStatus
- Stage tracking: StageHistoryEntry
- Embedded records: DealNote
- Deal: the persisted aggregate (owns its stage history and notes)
- Payloads: DealCreate, DealUpdate, MoveStageRequest, NoteCreate
- Queries: DealFilter, DealQuery, DealPage
- Reporting: DealAnalytics, KanbanStage, KanbanBoard

Durations on history entries are integer milliseconds throughout.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.app.schemas.custom_fields import CustomFields, normalize_custom_fields


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_currency(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError("Currency code must be 3 letters")
    return value


def _clean_labels(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    return [v.strip() for v in values if v and v.strip()]


# ── Enums ───────────────────────────────────────────────────────────────────


class DealPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DealStatus(str, Enum):
    """Commercial outcome of a deal. Terminal values are set by the caller."""

    OPEN = "open"
    WON = "won"
    LOST = "lost"
    PENDING = "pending"


# ── Stage History ───────────────────────────────────────────────────────────


class StageHistoryEntry(BaseModel):
    """One interval of stage occupancy. Open while exited_at is None."""

    stage_id: str
    stage_name: str = ""
    entered_at: datetime
    exited_at: datetime | None = None
    duration: int | None = None  # milliseconds
    reason: str | None = None
    changed_by: str

    @property
    def is_open(self) -> bool:
        return self.exited_at is None


# ── Notes ───────────────────────────────────────────────────────────────────


class DealNote(BaseModel):
    id: str = Field(default_factory=_new_id)
    content: str = Field(min_length=1, max_length=2000)
    created_by: str
    created_at: datetime = Field(default_factory=_utcnow)
    is_private: bool = False


# ── Deal ────────────────────────────────────────────────────────────────────


class Deal(BaseModel):
    """A sales opportunity moving through the stages of one pipeline.

    The stage pointer (stage_id, current_stage_entered_at,
    days_in_current_stage) and stage_history are maintained by
    src.app.deals.tracker; nothing else should write them.
    """

    id: str = Field(default_factory=_new_id)
    organization_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    value: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    priority: DealPriority = DealPriority.MEDIUM
    status: DealStatus = DealStatus.OPEN
    probability: int = Field(default=50, ge=0, le=100)
    expected_close_date: datetime | None = None
    actual_close_date: datetime | None = None

    # Relationships
    pipeline_id: str | None = None
    stage_id: str = ""
    assigned_to: str | None = None
    contact_id: str | None = None
    company_id: str | None = None

    # Stage tracking
    stage_history: list[StageHistoryEntry] = Field(default_factory=list)
    current_stage_entered_at: datetime = Field(default_factory=_utcnow)
    days_in_current_stage: int = 0

    # Sales metrics
    source: str | None = None
    lost_reason: str | None = None
    won_reason: str | None = None
    competitor_id: str | None = None

    custom_fields: CustomFields = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)

    # Activity tracking
    last_activity_at: datetime | None = None
    last_contacted_at: datetime | None = None
    next_follow_up_at: datetime | None = None

    attachments: list[str] = Field(default_factory=list)
    notes: list[DealNote] = Field(default_factory=list)

    total_activities: int = 0
    total_emails: int = 0
    total_calls: int = 0
    total_meetings: int = 0

    # Audit
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None

    # Soft delete
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    # Optimistic concurrency; bumped by the repository on every save
    version: int = 0

    @field_validator("custom_fields", mode="before")
    @classmethod
    def tag_custom_fields(cls, value):
        return normalize_custom_fields(value)


# ── Request Payloads ────────────────────────────────────────────────────────


class DealCreate(BaseModel):
    """Payload for creating a deal. Probability defaults to the stage's."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    value: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    priority: DealPriority = DealPriority.MEDIUM
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: datetime | None = None

    pipeline_id: str = Field(min_length=1)
    stage_id: str = Field(min_length=1)
    assigned_to: str | None = None
    contact_id: str | None = None
    company_id: str | None = None

    source: str | None = None
    custom_fields: CustomFields = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    next_follow_up_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def check_currency(cls, value):
        return _normalize_currency(value)

    @field_validator("tags", "labels")
    @classmethod
    def strip_labels(cls, value):
        return _clean_labels(value)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def tag_custom_fields(cls, value):
        return normalize_custom_fields(value)


class DealUpdate(BaseModel):
    """Partial deal update. A changed stage_id goes through the stage move flow."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    value: float | None = Field(default=None, ge=0)
    currency: str | None = None
    priority: DealPriority | None = None
    status: DealStatus | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: datetime | None = None

    stage_id: str | None = None
    assigned_to: str | None = None
    contact_id: str | None = None
    company_id: str | None = None

    source: str | None = None
    lost_reason: str | None = None
    won_reason: str | None = None

    custom_fields: CustomFields | None = None
    tags: list[str] | None = None
    labels: list[str] | None = None
    next_follow_up_at: datetime | None = None

    stage_change_reason: str | None = Field(default=None, max_length=500)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, value):
        return _normalize_currency(value)

    @field_validator("tags", "labels")
    @classmethod
    def strip_labels(cls, value):
        return _clean_labels(value)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def tag_custom_fields(cls, value):
        if value is None:
            return None
        return normalize_custom_fields(value)


class MoveStageRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    stage_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=500)


class NoteCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    content: str = Field(min_length=1, max_length=2000)
    is_private: bool = False


# ── Queries ─────────────────────────────────────────────────────────────────

DealSortField = Literal[
    "created_at",
    "updated_at",
    "title",
    "value",
    "probability",
    "expected_close_date",
    "days_in_current_stage",
]


class DealFilter(BaseModel):
    """Filters for listing deals. All conditions are AND-ed."""

    pipeline_id: str | None = None
    stage_id: str | None = None
    assigned_to: str | None = None
    status: DealStatus | None = None
    priority: DealPriority | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_value: float | None = None
    max_value: float | None = None
    tags: list[str] = Field(default_factory=list)
    search: str | None = None


class DealQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort: DealSortField = "created_at"
    order: Literal["asc", "desc"] = "desc"


class DealPage(BaseModel):
    items: list[Deal] = Field(default_factory=list)
    page: int
    limit: int
    total: int
    total_pages: int


# ── Reporting ───────────────────────────────────────────────────────────────

AnalyticsPeriod = Literal["7d", "30d", "90d"]

PERIOD_DAYS: dict[str, int] = {"7d": 7, "30d": 30, "90d": 90}


class DealAnalytics(BaseModel):
    period: AnalyticsPeriod
    total_deals: int = 0
    total_value: float = 0.0
    avg_value: float = 0.0
    won_deals: int = 0
    lost_deals: int = 0
    won_value: float = 0.0
    win_rate: float = 0.0


class KanbanStage(BaseModel):
    stage_id: str
    stage_name: str
    color: str
    probability: int
    deals: list[Deal] = Field(default_factory=list)
    deal_count: int = 0
    total_value: float = 0.0


class KanbanBoard(BaseModel):
    pipeline_id: str
    pipeline_name: str
    stages: list[KanbanStage] = Field(default_factory=list)

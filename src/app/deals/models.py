"""Deal persistence model -- one row per deal, tenant-scoped by organization_id.

Embedded collections (stage_history, notes, custom_fields, tags, labels,
attachments) are stored as JSON documents in the row: a deal exclusively
owns them and they are always read and written together with the deal.
The version column backs the repository's optimistic concurrency check.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class DealModel(Base):
    """A sales opportunity and its embedded stage history."""

    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deals_organization_id", "organization_id"),
        Index("ix_deals_pipeline_id", "pipeline_id"),
        Index("ix_deals_stage_id", "stage_id"),
        Index("ix_deals_assigned_to", "assigned_to"),
        Index("ix_deals_contact_id", "contact_id"),
        Index("ix_deals_company_id", "company_id"),
        Index("ix_deals_status", "status"),
        Index("ix_deals_priority", "priority"),
        Index("ix_deals_expected_close_date", "expected_close_date"),
        Index("ix_deals_value", "value"),
        Index("ix_deals_created_at", "created_at"),
        Index("ix_deals_is_deleted", "is_deleted"),
        Index("ix_deals_org_status", "organization_id", "status"),
        Index("ix_deals_org_assigned_to", "organization_id", "assigned_to"),
        Index("ix_deals_pipeline_stage", "pipeline_id", "stage_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[float] = mapped_column(Float, default=0.0, server_default=text("0"))
    currency: Mapped[str] = mapped_column(
        String(3), default="USD", server_default=text("'USD'")
    )
    priority: Mapped[str] = mapped_column(
        String(20), default="medium", server_default=text("'medium'")
    )
    status: Mapped[str] = mapped_column(
        String(20), default="open", server_default=text("'open'")
    )
    probability: Mapped[int] = mapped_column(
        Integer, default=50, server_default=text("50")
    )
    expected_close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    actual_close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships (application-level references, no FK constraints)
    pipeline_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    stage_id: Mapped[str] = mapped_column(String(36), nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Stage tracking
    stage_history: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    current_stage_entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    days_in_current_stage: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )

    # Sales metrics
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    won_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    competitor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    custom_fields: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    tags: Mapped[list] = mapped_column(
        JSONB, default=list, server_default=text("'[]'::jsonb")
    )
    labels: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )

    # Activity tracking
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_contacted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_follow_up_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    attachments: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    notes: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )

    total_activities: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_emails: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_calls: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_meetings: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))

"""Pipeline persistence model.

Stages and settings are JSON documents on the pipeline row. A partial unique
index keeps at most one live default pipeline per organization.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class PipelineModel(Base):
    """Ordered stage definition shared by the deals of one pipeline."""

    __tablename__ = "pipelines"
    __table_args__ = (
        Index("ix_pipelines_organization_id", "organization_id"),
        Index("ix_pipelines_is_default", "is_default"),
        Index("ix_pipelines_is_active", "is_active"),
        Index("ix_pipelines_is_deleted", "is_deleted"),
        Index(
            "uq_pipelines_org_default",
            "organization_id",
            unique=True,
            postgresql_where=text("is_default AND NOT is_deleted"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    stages: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    settings: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

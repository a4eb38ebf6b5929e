"""Create pipelines and deals tables.

Revision ID: 001_pipelines_and_deals
Revises:
Create Date: 2026-10-18

Both tables are tenant-scoped by organization_id. Embedded documents
(stages, settings, stage_history, notes, custom_fields, ...) are JSON
columns; deals.tags is JSONB so tag filters can use the ?| operator.
No foreign key constraints (application-level referential integrity via
the repositories).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, JSONB

# revision identifiers, used by Alembic.
revision: str = "001_pipelines_and_deals"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

DEAL_INDEXES = {
    "ix_deals_organization_id": ["organization_id"],
    "ix_deals_pipeline_id": ["pipeline_id"],
    "ix_deals_stage_id": ["stage_id"],
    "ix_deals_assigned_to": ["assigned_to"],
    "ix_deals_contact_id": ["contact_id"],
    "ix_deals_company_id": ["company_id"],
    "ix_deals_status": ["status"],
    "ix_deals_priority": ["priority"],
    "ix_deals_expected_close_date": ["expected_close_date"],
    "ix_deals_value": ["value"],
    "ix_deals_created_at": ["created_at"],
    "ix_deals_is_deleted": ["is_deleted"],
    "ix_deals_org_status": ["organization_id", "status"],
    "ix_deals_org_assigned_to": ["organization_id", "assigned_to"],
    "ix_deals_pipeline_stage": ["pipeline_id", "stage_id"],
}


def _json_column(name: str, default: str, type_=JSON) -> sa.Column:
    return sa.Column(name, type_(), server_default=sa.text(default), nullable=False)


def upgrade() -> None:
    # ── pipelines table ─────────────────────────────────────────────────

    op.create_table(
        "pipelines",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _json_column("stages", "'[]'::json"),
        _json_column("settings", "'{}'::json"),
        sa.Column("created_by", sa.String(100), nullable=False),
        sa.Column("updated_by", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(100), nullable=True),
    )

    op.create_index("ix_pipelines_organization_id", "pipelines", ["organization_id"])
    op.create_index("ix_pipelines_is_default", "pipelines", ["is_default"])
    op.create_index("ix_pipelines_is_active", "pipelines", ["is_active"])
    op.create_index("ix_pipelines_is_deleted", "pipelines", ["is_deleted"])
    # At most one live default pipeline per organization
    op.create_index(
        "uq_pipelines_org_default",
        "pipelines",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("is_default AND NOT is_deleted"),
    )

    # ── deals table ─────────────────────────────────────────────────────

    op.create_table(
        "deals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.String(100), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("value", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("currency", sa.String(3), server_default=sa.text("'USD'"), nullable=False),
        sa.Column("priority", sa.String(20), server_default=sa.text("'medium'"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'open'"), nullable=False),
        sa.Column("probability", sa.Integer(), server_default=sa.text("50"), nullable=False),
        sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pipeline_id", sa.String(36), nullable=True),
        sa.Column("stage_id", sa.String(36), nullable=False),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("contact_id", sa.String(100), nullable=True),
        sa.Column("company_id", sa.String(100), nullable=True),
        _json_column("stage_history", "'[]'::json"),
        sa.Column("current_stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("days_in_current_stage", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("won_reason", sa.Text(), nullable=True),
        sa.Column("competitor_id", sa.String(100), nullable=True),
        _json_column("custom_fields", "'{}'::json"),
        _json_column("tags", "'[]'::jsonb", type_=JSONB),
        _json_column("labels", "'[]'::json"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_follow_up_at", sa.DateTime(timezone=True), nullable=True),
        _json_column("attachments", "'[]'::json"),
        _json_column("notes", "'[]'::json"),
        sa.Column("total_activities", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_emails", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_calls", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_meetings", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("updated_by", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(100), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("0"), nullable=False),
    )

    for name, columns in DEAL_INDEXES.items():
        op.create_index(name, "deals", columns)


def downgrade() -> None:
    for name in DEAL_INDEXES:
        op.drop_index(name, table_name="deals")
    op.drop_table("deals")

    op.drop_index("uq_pipelines_org_default", table_name="pipelines")
    op.drop_index("ix_pipelines_is_deleted", table_name="pipelines")
    op.drop_index("ix_pipelines_is_active", table_name="pipelines")
    op.drop_index("ix_pipelines_is_default", table_name="pipelines")
    op.drop_index("ix_pipelines_organization_id", table_name="pipelines")
    op.drop_table("pipelines")

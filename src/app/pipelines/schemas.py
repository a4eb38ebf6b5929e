"""Pydantic schemas for sales pipelines and their stages.

Defines:
- PipelineStage: one named step with a close probability and display colour
- PipelineSettings: per-pipeline behaviour switches (stage reasons, stuck alerts)
- Pipeline: the authoritative stage definition for a set of deals
- PipelineCreate/Update, StageCreate/Update, StageOrder: request payloads
- PipelineStageAnalytics/PipelineAnalytics: per-stage reporting rows
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_STAGES = 2
MAX_STAGES = 10

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


def _new_id() -> str:
    return str(uuid.uuid4())


def check_single_outcome(is_closed_won: bool | None, is_closed_lost: bool | None) -> None:
    if is_closed_won and is_closed_lost:
        raise ValueError("A stage cannot be both closed won and closed lost")


def check_stage_set(stages: list) -> None:
    """Reject stage lists with repeated names or a stage that closes both ways.

    Names are compared case-insensitively, since stages can be addressed by name.
    """
    seen: set[str] = set()
    for stage in stages:
        check_single_outcome(stage.is_closed_won, stage.is_closed_lost)
        key = stage.name.casefold()
        if key in seen:
            raise ValueError(f"Duplicate stage name '{stage.name}'")
        seen.add(key)


# ── Stages ──────────────────────────────────────────────────────────────────


class PipelineStage(BaseModel):
    """A single stage of a pipeline."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=_new_id)
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    probability: int = Field(ge=0, le=100)
    color: str = Field(pattern=HEX_COLOR_PATTERN)
    order: int = Field(default=0, ge=0)
    is_active: bool = True
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @model_validator(mode="after")
    def _one_outcome(self) -> PipelineStage:
        check_single_outcome(self.is_closed_won, self.is_closed_lost)
        return self


class StageCreate(BaseModel):
    """Payload for adding a stage; the stage is appended after the last one."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    probability: int = Field(ge=0, le=100)
    color: str = Field(pattern=HEX_COLOR_PATTERN)
    order: int | None = Field(default=None, ge=0)
    is_active: bool = True
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @model_validator(mode="after")
    def _one_outcome(self) -> StageCreate:
        check_single_outcome(self.is_closed_won, self.is_closed_lost)
        return self


class StageUpdate(BaseModel):
    """Partial stage update."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    probability: int | None = Field(default=None, ge=0, le=100)
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    order: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    is_closed_won: bool | None = None
    is_closed_lost: bool | None = None

    @model_validator(mode="after")
    def _one_outcome(self) -> StageUpdate:
        check_single_outcome(self.is_closed_won, self.is_closed_lost)
        return self


class StageOrder(BaseModel):
    stage_id: str = Field(min_length=1)
    order: int = Field(ge=0)


# ── Settings ────────────────────────────────────────────────────────────────


class RotationCriterion(BaseModel):
    field: str
    value: Any = None


class NotificationSettings(BaseModel):
    stage_change: bool = True
    deal_stuck: bool = True
    stuck_days: int = Field(default=7, ge=1)


class PipelineSettings(BaseModel):
    """Behaviour switches stored with each pipeline."""

    require_stage_reason: bool = False
    auto_rotate_deals: bool = False
    rotation_criteria: list[RotationCriterion] = Field(default_factory=list)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


# ── Pipeline ────────────────────────────────────────────────────────────────


class Pipeline(BaseModel):
    """Pipeline definition as persisted, including soft-delete bookkeeping."""

    id: str = Field(default_factory=_new_id)
    organization_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_default: bool = False
    is_active: bool = True
    stages: list[PipelineStage] = Field(default_factory=list)
    settings: PipelineSettings = Field(default_factory=PipelineSettings)
    created_by: str
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @model_validator(mode="after")
    def _valid_stages(self) -> Pipeline:
        check_stage_set(self.stages)
        return self


class PipelineCreate(BaseModel):
    """Payload for creating a pipeline. Omitting stages uses the default template."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_default: bool = False
    is_active: bool = True
    stages: list[StageCreate] | None = Field(
        default=None, min_length=MIN_STAGES, max_length=MAX_STAGES
    )
    settings: PipelineSettings | None = None

    @field_validator("stages")
    @classmethod
    def _valid_stages(cls, stages: list[StageCreate] | None) -> list[StageCreate] | None:
        if stages is not None:
            check_stage_set(stages)
        return stages


class PipelineUpdate(BaseModel):
    """Partial pipeline update. Replacing stages still enforces the stage bounds."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_default: bool | None = None
    is_active: bool | None = None
    stages: list[StageCreate] | None = Field(
        default=None, min_length=MIN_STAGES, max_length=MAX_STAGES
    )
    settings: PipelineSettings | None = None

    @field_validator("stages")
    @classmethod
    def _valid_stages(cls, stages: list[StageCreate] | None) -> list[StageCreate] | None:
        if stages is not None:
            check_stage_set(stages)
        return stages


# ── Analytics ───────────────────────────────────────────────────────────────


class PipelineStageAnalytics(BaseModel):
    stage_id: str
    stage_name: str
    deal_count: int = 0
    total_value: float = 0.0
    avg_value: float = 0.0
    avg_days_in_stage: float = 0.0
    conversion_rate: float = 0.0


class PipelineAnalytics(BaseModel):
    pipeline_id: str
    pipeline_name: str
    stages: list[PipelineStageAnalytics] = Field(default_factory=list)

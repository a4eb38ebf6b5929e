"""Pipeline service -- stage definitions and the rules that protect them.

Keeps the pipeline invariants the rest of the system relies on:
- 2..10 stages, sorted by order and renumbered 0..n-1 after every change
- at most one live default pipeline per organization
- a pipeline (or stage) that still holds deals cannot be removed
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from src.app.core.exceptions import (
    DealConflictError,
    DealValidationError,
    PipelineNotFoundError,
    StageNotFoundError,
)
from src.app.deals import tracker
from src.app.deals.repository import DealRepository
from src.app.deals.schemas import DealFilter
from src.app.pipelines.repository import PipelineRepository
from src.app.pipelines.schemas import (
    MAX_STAGES,
    MIN_STAGES,
    Pipeline,
    PipelineAnalytics,
    PipelineCreate,
    PipelineSettings,
    PipelineStage,
    PipelineStageAnalytics,
    PipelineUpdate,
    StageCreate,
    StageOrder,
    StageUpdate,
    check_stage_set,
)
from src.app.pipelines.stages import (
    build_stages,
    default_stages,
    get_stage,
    normalize_stage_order,
)
from src.app.schemas.auth import CurrentUser

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineService:
    """Pipeline and stage management for one application instance.

    Args:
        pipeline_repository: Persistence for pipelines.
        deal_repository: Used to refuse removals that would orphan deals.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        pipeline_repository: PipelineRepository,
        deal_repository: DealRepository,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._pipelines = pipeline_repository
        self._deals = deal_repository
        self._clock = clock

    async def _load(self, user: CurrentUser, pipeline_id: str) -> Pipeline:
        pipeline = await self._pipelines.get_pipeline(user.organization_id, pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    async def _save(self, user: CurrentUser, pipeline: Pipeline) -> Pipeline:
        # Stages are edited in place, so the model validators have not seen them.
        try:
            check_stage_set(pipeline.stages)
        except ValueError as exc:
            raise DealValidationError(str(exc)) from exc
        pipeline.updated_by = user.user_id
        pipeline.updated_at = self._clock()
        return await self._pipelines.save_pipeline(pipeline)

    async def _count_deals(
        self, organization_id: str, pipeline_id: str, stage_id: str | None = None
    ) -> int:
        return await self._deals.count_deals(
            organization_id, DealFilter(pipeline_id=pipeline_id, stage_id=stage_id)
        )

    # ── Pipelines ───────────────────────────────────────────────────────────

    async def create_pipeline(self, user: CurrentUser, data: PipelineCreate) -> Pipeline:
        """Create a pipeline; without stages it gets the default template.

        The first pipeline of an organization always becomes its default.
        """
        stages = build_stages(data.stages) if data.stages else default_stages()
        existing = await self._pipelines.list_pipelines(
            user.organization_id, include_inactive=True
        )
        is_default = data.is_default or not existing

        now = self._clock()
        pipeline = Pipeline(
            organization_id=user.organization_id,
            name=data.name,
            description=data.description,
            is_default=is_default,
            is_active=data.is_active,
            stages=stages,
            settings=data.settings or PipelineSettings(),
            created_by=user.user_id,
            updated_by=user.user_id,
            created_at=now,
            updated_at=now,
        )
        if is_default:
            await self._pipelines.clear_default(user.organization_id)
        stored = await self._pipelines.add_pipeline(pipeline)
        logger.info(
            "pipeline_created",
            pipeline_id=stored.id,
            organization_id=stored.organization_id,
            stage_count=len(stored.stages),
            is_default=stored.is_default,
        )
        return stored

    async def get_pipeline(self, user: CurrentUser, pipeline_id: str) -> Pipeline:
        return await self._load(user, pipeline_id)

    async def list_pipelines(
        self, user: CurrentUser, include_inactive: bool = False
    ) -> list[Pipeline]:
        return await self._pipelines.list_pipelines(
            user.organization_id, include_inactive=include_inactive
        )

    async def update_pipeline(
        self, user: CurrentUser, pipeline_id: str, data: PipelineUpdate
    ) -> Pipeline:
        """Partial update. Replacing stages re-validates deal references."""
        pipeline = await self._load(user, pipeline_id)
        fields = data.model_fields_set

        if "name" in fields and data.name is not None:
            pipeline.name = data.name
        if "description" in fields:
            pipeline.description = data.description
        if "is_active" in fields and data.is_active is not None:
            pipeline.is_active = data.is_active
        if "settings" in fields and data.settings is not None:
            pipeline.settings = data.settings

        if "stages" in fields and data.stages is not None:
            new_stages = build_stages(data.stages)
            kept_ids = {s.id for s in new_stages}
            for stage in pipeline.stages:
                if stage.id not in kept_ids and await self._count_deals(
                    user.organization_id, pipeline.id, stage.id
                ):
                    raise DealConflictError(
                        f"Cannot replace stage '{stage.name}': it still has deals"
                    )
            pipeline.stages = new_stages

        if "is_default" in fields and data.is_default is not None:
            if data.is_default and not pipeline.is_default:
                await self._pipelines.clear_default(user.organization_id, keep_id=pipeline.id)
            pipeline.is_default = data.is_default

        stored = await self._save(user, pipeline)
        logger.info("pipeline_updated", pipeline_id=stored.id, fields=sorted(fields))
        return stored

    async def delete_pipeline(self, user: CurrentUser, pipeline_id: str) -> None:
        """Soft-delete a pipeline that is neither the default nor in use.

        Raises:
            DealConflictError: If the pipeline has deals or is the default.
        """
        pipeline = await self._load(user, pipeline_id)
        if await self._count_deals(user.organization_id, pipeline.id):
            raise DealConflictError("Cannot delete pipeline with existing deals")
        if pipeline.is_default:
            raise DealConflictError("Cannot delete the default pipeline")

        pipeline.is_deleted = True
        pipeline.deleted_at = self._clock()
        pipeline.deleted_by = user.user_id
        await self._save(user, pipeline)
        logger.info("pipeline_deleted", pipeline_id=pipeline.id, deleted_by=user.user_id)

    # ── Stages ──────────────────────────────────────────────────────────────

    async def add_stage(self, user: CurrentUser, pipeline_id: str, data: StageCreate) -> Pipeline:
        """Append a stage after the current last one."""
        pipeline = await self._load(user, pipeline_id)
        if len(pipeline.stages) >= MAX_STAGES:
            raise DealValidationError(f"Pipeline cannot have more than {MAX_STAGES} stages")

        next_order = max((s.order for s in pipeline.stages), default=-1) + 1
        stage = PipelineStage(**data.model_dump(exclude={"order", "is_active"}), order=next_order)
        pipeline.stages = normalize_stage_order([*pipeline.stages, stage])

        stored = await self._save(user, pipeline)
        logger.info("pipeline_stage_added", pipeline_id=pipeline.id, stage_id=stage.id)
        return stored

    async def update_stage(
        self, user: CurrentUser, pipeline_id: str, stage_id: str, data: StageUpdate
    ) -> Pipeline:
        pipeline = await self._load(user, pipeline_id)
        stage = get_stage(pipeline, stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id, pipeline.id)

        for name in data.model_fields_set:
            value = getattr(data, name)
            if value is None and name != "description":
                continue
            setattr(stage, name, value)
        pipeline.stages = normalize_stage_order(pipeline.stages)

        return await self._save(user, pipeline)

    async def remove_stage(self, user: CurrentUser, pipeline_id: str, stage_id: str) -> Pipeline:
        """Remove a stage that holds no deals, keeping at least MIN_STAGES."""
        pipeline = await self._load(user, pipeline_id)
        if get_stage(pipeline, stage_id) is None:
            raise StageNotFoundError(stage_id, pipeline.id)
        if len(pipeline.stages) <= MIN_STAGES:
            raise DealValidationError(f"Pipeline must have at least {MIN_STAGES} stages")
        if await self._count_deals(user.organization_id, pipeline.id, stage_id):
            raise DealConflictError("Cannot remove stage with existing deals")

        pipeline.stages = normalize_stage_order(
            [s for s in pipeline.stages if s.id != stage_id]
        )
        stored = await self._save(user, pipeline)
        logger.info("pipeline_stage_removed", pipeline_id=pipeline.id, stage_id=stage_id)
        return stored

    async def reorder_stages(
        self, user: CurrentUser, pipeline_id: str, orders: list[StageOrder]
    ) -> Pipeline:
        """Apply new order values, then renumber sequentially."""
        pipeline = await self._load(user, pipeline_id)
        for item in orders:
            stage = get_stage(pipeline, item.stage_id)
            if stage is None:
                raise StageNotFoundError(item.stage_id, pipeline.id)
            stage.order = item.order
        pipeline.stages = normalize_stage_order(pipeline.stages)
        return await self._save(user, pipeline)

    # ── Analytics ───────────────────────────────────────────────────────────

    async def get_pipeline_analytics(
        self, user: CurrentUser, pipeline_id: str
    ) -> PipelineAnalytics:
        """Per-stage deal counts and values, plus conversion to the next stage.

        conversion_rate is the next stage's deal count as a percentage of this
        stage's count; 0 for the last stage or when either stage is empty.
        Stage ages are recomputed at read time, as on every deal read.
        """
        pipeline = await self._load(user, pipeline_id)
        deals = await self._deals.find_deals(
            user.organization_id, DealFilter(pipeline_id=pipeline.id)
        )
        now = self._clock()
        for deal in deals:
            tracker.refresh_derived_fields(deal, now)

        rows: list[PipelineStageAnalytics] = []
        for stage in pipeline.stages:
            stage_deals = [d for d in deals if d.stage_id == stage.id]
            count = len(stage_deals)
            total = sum(d.value for d in stage_deals)
            rows.append(
                PipelineStageAnalytics(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    deal_count=count,
                    total_value=total,
                    avg_value=total / count if count else 0.0,
                    avg_days_in_stage=(
                        sum(d.days_in_current_stage for d in stage_deals) / count
                        if count
                        else 0.0
                    ),
                )
            )

        for current, following in zip(rows, rows[1:]):
            if current.deal_count and following.deal_count:
                current.conversion_rate = following.deal_count / current.deal_count * 100

        return PipelineAnalytics(
            pipeline_id=pipeline.id, pipeline_name=pipeline.name, stages=rows
        )

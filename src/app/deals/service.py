"""Deal service -- the caller of the stage tracker.

Orchestrates deal workflows on top of DealRepository and PipelineRepository:
- create_deal: validate pipeline and stage, seed the stage history
- move_deal_to_stage / update_deal: validate the target stage against the
  pipeline, run the tracker, backfill the stage name, derive probability
  and status from the stage
- add_note, delete_deal (soft)
- reporting reads: kanban board, period analytics, stuck deals

Every write loads the deal, mutates it in memory and saves it through the
repository's version check. A ConcurrentModificationError reloads the deal
and reapplies the change, up to STAGE_MOVE_MAX_ATTEMPTS times (tenacity).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.app.config import Settings, get_settings
from src.app.core.exceptions import (
    ConcurrentModificationError,
    DealNotFoundError,
    DealValidationError,
    PipelineNotFoundError,
    StageNotFoundError,
)
from src.app.core.monitoring import record_deal_created, record_stage_transition
from src.app.deals import tracker
from src.app.deals.repository import DealRepository
from src.app.deals.schemas import (
    PERIOD_DAYS,
    AnalyticsPeriod,
    Deal,
    DealAnalytics,
    DealCreate,
    DealFilter,
    DealNote,
    DealPage,
    DealQuery,
    DealStatus,
    DealUpdate,
    KanbanBoard,
    KanbanStage,
    NoteCreate,
    StageHistoryEntry,
)
from src.app.pipelines.repository import PipelineRepository
from src.app.pipelines.schemas import Pipeline, PipelineStage
from src.app.pipelines.stages import can_transition_to_stage, resolve_stage
from src.app.schemas.auth import CurrentUser

logger = structlog.get_logger(__name__)

# DealUpdate fields that may not be cleared with an explicit null.
_NON_NULLABLE_FIELDS = {
    "title",
    "value",
    "currency",
    "priority",
    "status",
    "custom_fields",
    "tags",
    "labels",
}

_UPDATE_CONTROL_FIELDS = {"stage_id", "stage_change_reason"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _apply_stage_outcome(deal: Deal, stage: PipelineStage, now: datetime) -> None:
    """Set status and close date from the stage the deal just entered."""
    if stage.is_closed_won:
        deal.status = DealStatus.WON
        deal.actual_close_date = now
    elif stage.is_closed_lost:
        deal.status = DealStatus.LOST
        deal.actual_close_date = now
    else:
        deal.status = DealStatus.OPEN
        deal.actual_close_date = None


class DealService:
    """Deal workflows for one application instance.

    Args:
        deal_repository: Persistence for deals.
        pipeline_repository: Source of the authoritative stage definitions.
        settings: Application settings; defaults to get_settings().
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        deal_repository: DealRepository,
        pipeline_repository: PipelineRepository,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._deals = deal_repository
        self._pipelines = pipeline_repository
        self._settings = settings or get_settings()
        self._clock = clock

    # ── Loading ─────────────────────────────────────────────────────────────

    async def _load_deal(self, user: CurrentUser, deal_id: str) -> Deal:
        """Fetch a live deal the caller may see. Sales reps only see their own."""
        deal = await self._deals.get_deal(user.organization_id, deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        if user.is_sales_rep and deal.assigned_to != user.user_id:
            raise DealNotFoundError(deal_id)
        return deal

    async def _load_pipeline(self, organization_id: str, pipeline_id: str | None) -> Pipeline:
        if not pipeline_id:
            raise PipelineNotFoundError("")
        pipeline = await self._pipelines.get_pipeline(organization_id, pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    def _resolve_target_stage(
        self,
        pipeline: Pipeline,
        deal: Deal,
        stage_ref: str,
        reason: str | None,
    ) -> PipelineStage:
        stage = resolve_stage(pipeline, stage_ref)
        if stage is None:
            raise StageNotFoundError(stage_ref, pipeline.id)
        if not can_transition_to_stage(pipeline, deal.stage_id, stage.id):
            raise DealValidationError("Cannot move deal to inactive stage")
        if pipeline.settings.require_stage_reason and not reason:
            raise DealValidationError("A reason is required to change stage in this pipeline")
        return stage

    def _scoped_filter(self, user: CurrentUser, filters: DealFilter | None) -> DealFilter:
        filters = filters.model_copy() if filters is not None else DealFilter()
        if user.is_sales_rep:
            filters.assigned_to = user.user_id
        return filters

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.STAGE_MOVE_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(ConcurrentModificationError),
            reraise=True,
        )

    async def _save_with_retry(
        self,
        user: CurrentUser,
        deal_id: str,
        mutate: Callable[[Deal, datetime], Awaitable[None]],
    ) -> Deal:
        """Load, mutate and save a deal, retrying on version conflicts."""
        async for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "deal_save_retry",
                        deal_id=deal_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                deal = await self._load_deal(user, deal_id)
                now = self._clock()
                await mutate(deal, now)
                deal.updated_by = user.user_id
                deal.updated_at = now
                tracker.refresh_derived_fields(deal, now)
                return await self._deals.save_deal(deal)

    # ── Create / Read ───────────────────────────────────────────────────────

    async def create_deal(self, user: CurrentUser, data: DealCreate) -> Deal:
        """Create a deal in the given pipeline stage and seed its history.

        Raises:
            PipelineNotFoundError: If the pipeline is not in the caller's organization.
            StageNotFoundError: If the stage is not part of the pipeline.
            DealValidationError: If the pipeline or stage is inactive.
        """
        pipeline = await self._load_pipeline(user.organization_id, data.pipeline_id)
        if not pipeline.is_active:
            raise DealValidationError("Cannot create a deal in an inactive pipeline")
        stage = resolve_stage(pipeline, data.stage_id)
        if stage is None:
            raise StageNotFoundError(data.stage_id, pipeline.id)
        if not stage.is_active:
            raise DealValidationError("Cannot create a deal in an inactive stage")

        now = self._clock()
        deal = Deal(
            organization_id=user.organization_id,
            **data.model_dump(exclude={"stage_id", "probability"}),
            stage_id=stage.id,
            probability=data.probability if data.probability is not None else stage.probability,
            created_by=user.user_id,
            updated_by=user.user_id,
            created_at=now,
            current_stage_entered_at=now,
        )
        tracker.initialize(deal, stage_name=stage.name)

        stored = await self._deals.add_deal(deal)
        record_deal_created()
        logger.info(
            "deal_created",
            deal_id=stored.id,
            organization_id=stored.organization_id,
            pipeline_id=stored.pipeline_id,
            stage_id=stored.stage_id,
            created_by=user.user_id,
        )
        return stored

    async def get_deal(self, user: CurrentUser, deal_id: str) -> Deal:
        deal = await self._load_deal(user, deal_id)
        return tracker.refresh_derived_fields(deal, self._clock())

    async def get_deal_history(self, user: CurrentUser, deal_id: str) -> list[StageHistoryEntry]:
        deal = await self._load_deal(user, deal_id)
        return deal.stage_history

    async def list_deals(
        self,
        user: CurrentUser,
        filters: DealFilter | None = None,
        query: DealQuery | None = None,
    ) -> DealPage:
        """Page through the organization's deals. Sales reps only see their own."""
        page = await self._deals.list_deals(
            user.organization_id, self._scoped_filter(user, filters), query
        )
        now = self._clock()
        for deal in page.items:
            tracker.refresh_derived_fields(deal, now)
        return page

    # ── Stage Moves ─────────────────────────────────────────────────────────

    async def move_deal_to_stage(
        self,
        user: CurrentUser,
        deal_id: str,
        stage_ref: str,
        reason: str | None = None,
    ) -> Deal:
        """Move a deal to another stage of its pipeline.

        Raises:
            DealNotFoundError: If the deal is missing or not visible to the caller.
            PipelineNotFoundError: If the deal's pipeline no longer exists.
            StageNotFoundError: If stage_ref names no stage of the pipeline.
            DealValidationError: If the deal is already in that stage, the
                stage is inactive, or the pipeline requires a reason.
            ConcurrentModificationError: If every save attempt lost a race.
        """
        moved_to: dict[str, str] = {}

        async def mutate(deal: Deal, now: datetime) -> None:
            pipeline = await self._load_pipeline(user.organization_id, deal.pipeline_id)
            stage = resolve_stage(pipeline, stage_ref)
            if stage is not None and stage.id == deal.stage_id:
                raise DealValidationError("Deal is already in this stage")
            stage = self._resolve_target_stage(pipeline, deal, stage_ref, reason)

            moved_to["from"] = deal.stage_id
            entry = tracker.move_to_stage(
                deal, stage.id, reason=reason, changed_by=user.user_id, now=now
            )
            entry.stage_name = stage.name
            deal.probability = stage.probability
            _apply_stage_outcome(deal, stage, now)

        stored = await self._save_with_retry(user, deal_id, mutate)
        record_stage_transition(stored.pipeline_id)
        logger.info(
            "deal_stage_moved",
            deal_id=stored.id,
            pipeline_id=stored.pipeline_id,
            from_stage=moved_to.get("from"),
            to_stage=stored.stage_id,
            status=stored.status.value,
            changed_by=user.user_id,
        )
        return stored

    async def update_deal(self, user: CurrentUser, deal_id: str, data: DealUpdate) -> Deal:
        """Apply a partial update; a changed stage_id runs the stage move flow.

        An explicit probability in the payload wins over the stage's.
        """
        fields = data.model_fields_set - _UPDATE_CONTROL_FIELDS
        stage_changed: dict[str, bool] = {}

        async def mutate(deal: Deal, now: datetime) -> None:
            for name in fields:
                value = getattr(data, name)
                if value is None and name in _NON_NULLABLE_FIELDS:
                    continue
                setattr(deal, name, value)

            if "status" in fields and data.status is not None:
                if data.status in (DealStatus.WON, DealStatus.LOST):
                    deal.actual_close_date = deal.actual_close_date or now
                elif data.status == DealStatus.OPEN:
                    deal.actual_close_date = None

            if not data.stage_id:
                return
            pipeline = await self._load_pipeline(user.organization_id, deal.pipeline_id)
            stage = resolve_stage(pipeline, data.stage_id)
            if stage is not None and stage.id == deal.stage_id:
                return
            stage = self._resolve_target_stage(
                pipeline, deal, data.stage_id, data.stage_change_reason
            )

            entry = tracker.move_to_stage(
                deal,
                stage.id,
                reason=data.stage_change_reason,
                changed_by=user.user_id,
                now=now,
            )
            entry.stage_name = stage.name
            if data.probability is None:
                deal.probability = stage.probability
            if stage.is_closed_won or stage.is_closed_lost:
                _apply_stage_outcome(deal, stage, now)
            stage_changed["moved"] = True

        stored = await self._save_with_retry(user, deal_id, mutate)
        if stage_changed:
            record_stage_transition(stored.pipeline_id)
        logger.info(
            "deal_updated",
            deal_id=stored.id,
            fields=sorted(fields),
            stage_changed=bool(stage_changed),
            updated_by=user.user_id,
        )
        return stored

    # ── Notes / Delete ──────────────────────────────────────────────────────

    async def add_note(self, user: CurrentUser, deal_id: str, data: NoteCreate) -> DealNote:
        note = DealNote(content=data.content, is_private=data.is_private, created_by=user.user_id)

        async def mutate(deal: Deal, now: datetime) -> None:
            note.created_at = now
            deal.notes.append(note)

        await self._save_with_retry(user, deal_id, mutate)
        logger.info("deal_note_added", deal_id=deal_id, note_id=note.id, created_by=user.user_id)
        return note

    async def delete_deal(self, user: CurrentUser, deal_id: str) -> None:
        """Soft-delete a deal. It disappears from every default read."""

        async def mutate(deal: Deal, now: datetime) -> None:
            deal.is_deleted = True
            deal.deleted_at = now
            deal.deleted_by = user.user_id

        await self._save_with_retry(user, deal_id, mutate)
        logger.info("deal_deleted", deal_id=deal_id, deleted_by=user.user_id)

    # ── Reporting ───────────────────────────────────────────────────────────

    async def get_deals_by_stage(self, user: CurrentUser, pipeline_id: str) -> KanbanBoard:
        """Kanban view: one column per pipeline stage with its deals, count and value."""
        pipeline = await self._load_pipeline(user.organization_id, pipeline_id)
        filters = self._scoped_filter(user, DealFilter(pipeline_id=pipeline.id))
        deals = await self._deals.find_deals(user.organization_id, filters)

        now = self._clock()
        columns: list[KanbanStage] = []
        for stage in pipeline.stages:
            stage_deals = [
                tracker.refresh_derived_fields(d, now) for d in deals if d.stage_id == stage.id
            ]
            columns.append(
                KanbanStage(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    color=stage.color,
                    probability=stage.probability,
                    deals=stage_deals,
                    deal_count=len(stage_deals),
                    total_value=sum(d.value for d in stage_deals),
                )
            )
        return KanbanBoard(pipeline_id=pipeline.id, pipeline_name=pipeline.name, stages=columns)

    async def get_deal_analytics(
        self,
        user: CurrentUser,
        period: AnalyticsPeriod = "30d",
        pipeline_id: str | None = None,
    ) -> DealAnalytics:
        """Totals and win rate over deals created within the period."""
        start = self._clock() - timedelta(days=PERIOD_DAYS[period])
        filters = self._scoped_filter(
            user, DealFilter(pipeline_id=pipeline_id, start_date=start)
        )
        deals = await self._deals.find_deals(user.organization_id, filters)

        total_deals = len(deals)
        total_value = sum(d.value for d in deals)
        won = [d for d in deals if d.status == DealStatus.WON]
        lost_count = sum(1 for d in deals if d.status == DealStatus.LOST)
        win_rate = (len(won) / total_deals) * 100 if total_deals else 0.0

        return DealAnalytics(
            period=period,
            total_deals=total_deals,
            total_value=total_value,
            avg_value=total_value / total_deals if total_deals else 0.0,
            won_deals=len(won),
            lost_deals=lost_count,
            won_value=sum(d.value for d in won),
            win_rate=round(win_rate, 2),
        )

    async def list_stuck_deals(
        self,
        user: CurrentUser,
        pipeline_id: str | None = None,
        threshold_days: int | None = None,
    ) -> list[Deal]:
        """Open deals that have sat in their stage longer than the threshold.

        Without an explicit threshold, each deal uses its pipeline's
        notifications.stuck_days, falling back to STUCK_DEAL_THRESHOLD_DAYS.
        """
        filters = self._scoped_filter(
            user, DealFilter(pipeline_id=pipeline_id, status=DealStatus.OPEN)
        )
        deals = await self._deals.find_deals(user.organization_id, filters)
        pipelines = {
            p.id: p
            for p in await self._pipelines.list_pipelines(
                user.organization_id, include_inactive=True
            )
        }

        now = self._clock()
        stuck: list[Deal] = []
        for deal in deals:
            limit = threshold_days
            if limit is None:
                pipeline = pipelines.get(deal.pipeline_id or "")
                limit = (
                    pipeline.settings.notifications.stuck_days
                    if pipeline is not None
                    else self._settings.STUCK_DEAL_THRESHOLD_DAYS
                )
            if tracker.is_stuck(deal, limit, now):
                stuck.append(tracker.refresh_derived_fields(deal, now))
        stuck.sort(key=lambda d: d.days_in_current_stage, reverse=True)
        return stuck

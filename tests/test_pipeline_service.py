"""Tests for PipelineService: defaults, stage management and deal protection."""

from __future__ import annotations

import pytest
import pytest_asyncio

from src.app.core.exceptions import (
    DealConflictError,
    DealValidationError,
    PipelineNotFoundError,
    StageNotFoundError,
)
from src.app.deals.schemas import DealCreate
from src.app.pipelines.schemas import (
    MAX_STAGES,
    Pipeline,
    PipelineCreate,
    PipelineUpdate,
    StageCreate,
    StageOrder,
    StageUpdate,
)


def _stage_id(pipeline: Pipeline, name: str) -> str:
    return next(s.id for s in pipeline.stages if s.name == name)


def _two_stages() -> list[StageCreate]:
    return [
        StageCreate(name="Open", probability=20, color="#111111"),
        StageCreate(name="Done", probability=100, color="#222222", is_closed_won=True),
    ]


@pytest_asyncio.fixture
async def pipeline(pipeline_service, admin) -> Pipeline:
    return await pipeline_service.create_pipeline(admin, PipelineCreate(name="Sales"))


async def _add_deal(deal_service, user, pipeline: Pipeline, stage: str = "Lead"):
    return await deal_service.create_deal(
        user,
        DealCreate(
            title="Acme", pipeline_id=pipeline.id, stage_id=_stage_id(pipeline, stage)
        ),
    )


# ── Create / Read ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_uses_default_template(pipeline, admin):
    assert [s.name for s in pipeline.stages] == [
        "Lead",
        "Qualified",
        "Proposal",
        "Negotiation",
        "Closed Won",
        "Closed Lost",
    ]
    assert pipeline.organization_id == admin.organization_id
    assert pipeline.created_by == admin.user_id


@pytest.mark.asyncio
async def test_first_pipeline_becomes_default(pipeline, pipeline_service, admin):
    assert pipeline.is_default

    second = await pipeline_service.create_pipeline(
        admin, PipelineCreate(name="Partners", stages=_two_stages())
    )
    assert not second.is_default
    assert [s.order for s in second.stages] == [0, 1]


@pytest.mark.asyncio
async def test_new_default_replaces_old(pipeline, pipeline_service, admin):
    second = await pipeline_service.create_pipeline(
        admin, PipelineCreate(name="Partners", is_default=True)
    )

    pipelines = await pipeline_service.list_pipelines(admin)
    defaults = [p.id for p in pipelines if p.is_default]
    assert defaults == [second.id]
    assert pipelines[0].id == second.id


@pytest.mark.asyncio
async def test_update_sets_default(pipeline, pipeline_service, admin):
    second = await pipeline_service.create_pipeline(admin, PipelineCreate(name="Partners"))

    await pipeline_service.update_pipeline(admin, second.id, PipelineUpdate(is_default=True))

    first = await pipeline_service.get_pipeline(admin, pipeline.id)
    assert not first.is_default
    assert (await pipeline_service.get_pipeline(admin, second.id)).is_default


@pytest.mark.asyncio
async def test_get_pipeline_other_org(pipeline, pipeline_service, outsider):
    with pytest.raises(PipelineNotFoundError):
        await pipeline_service.get_pipeline(outsider, pipeline.id)


@pytest.mark.asyncio
async def test_list_hides_inactive_unless_asked(pipeline, pipeline_service, admin):
    other = await pipeline_service.create_pipeline(admin, PipelineCreate(name="Archive"))
    await pipeline_service.update_pipeline(admin, other.id, PipelineUpdate(is_active=False))

    active = await pipeline_service.list_pipelines(admin)
    everything = await pipeline_service.list_pipelines(admin, include_inactive=True)
    assert [p.id for p in active] == [pipeline.id]
    assert {p.id for p in everything} == {pipeline.id, other.id}


# ── Update / Delete ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_update_name_and_description(pipeline, pipeline_service, admin):
    updated = await pipeline_service.update_pipeline(
        admin, pipeline.id, PipelineUpdate(name="Enterprise", description="Large accounts")
    )
    assert updated.name == "Enterprise"
    assert updated.description == "Large accounts"
    assert updated.updated_by == admin.user_id


@pytest.mark.asyncio
async def test_replace_stages_without_deals(pipeline, pipeline_service, admin):
    updated = await pipeline_service.update_pipeline(
        admin, pipeline.id, PipelineUpdate(stages=_two_stages())
    )
    assert [s.name for s in updated.stages] == ["Open", "Done"]


@pytest.mark.asyncio
async def test_replace_stages_with_deals_conflicts(
    pipeline, pipeline_service, deal_service, admin
):
    await _add_deal(deal_service, admin, pipeline)

    with pytest.raises(DealConflictError):
        await pipeline_service.update_pipeline(
            admin, pipeline.id, PipelineUpdate(stages=_two_stages())
        )


@pytest.mark.asyncio
async def test_delete_pipeline(pipeline_service, pipeline, admin, pipeline_repo):
    other = await pipeline_service.create_pipeline(admin, PipelineCreate(name="Old"))

    await pipeline_service.delete_pipeline(admin, other.id)

    with pytest.raises(PipelineNotFoundError):
        await pipeline_service.get_pipeline(admin, other.id)
    stored = await pipeline_repo.get_pipeline(admin.organization_id, other.id, include_deleted=True)
    assert stored.is_deleted
    assert stored.deleted_by == admin.user_id


@pytest.mark.asyncio
async def test_cannot_delete_default_pipeline(pipeline, pipeline_service, admin):
    with pytest.raises(DealConflictError, match="default"):
        await pipeline_service.delete_pipeline(admin, pipeline.id)


@pytest.mark.asyncio
async def test_cannot_delete_pipeline_with_deals(pipeline_service, deal_service, admin):
    await pipeline_service.create_pipeline(admin, PipelineCreate(name="Main"))
    other = await pipeline_service.create_pipeline(admin, PipelineCreate(name="Side"))
    await _add_deal(deal_service, admin, other)

    with pytest.raises(DealConflictError, match="existing deals"):
        await pipeline_service.delete_pipeline(admin, other.id)


# ── Stages ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_add_stage_appends(pipeline, pipeline_service, admin):
    updated = await pipeline_service.add_stage(
        admin,
        pipeline.id,
        StageCreate(name="On Hold", probability=5, color="#999999", order=0, is_active=False),
    )
    assert updated.stages[-1].name == "On Hold"
    assert updated.stages[-1].order == len(updated.stages) - 1
    assert updated.stages[-1].is_active
    assert [s.order for s in updated.stages] == list(range(len(updated.stages)))


@pytest.mark.asyncio
async def test_add_stage_limit(pipeline, pipeline_service, admin):
    for index in range(MAX_STAGES - len(pipeline.stages)):
        await pipeline_service.add_stage(
            admin, pipeline.id, StageCreate(name=f"Extra {index}", probability=1, color="#000")
        )

    with pytest.raises(DealValidationError, match="more than"):
        await pipeline_service.add_stage(
            admin, pipeline.id, StageCreate(name="One too many", probability=1, color="#000")
        )


@pytest.mark.asyncio
async def test_update_stage(pipeline, pipeline_service, admin):
    stage_id = _stage_id(pipeline, "Proposal")
    updated = await pipeline_service.update_stage(
        admin, pipeline.id, stage_id, StageUpdate(name="Quote", probability=55)
    )
    stage = next(s for s in updated.stages if s.id == stage_id)
    assert stage.name == "Quote"
    assert stage.probability == 55
    assert stage.color == "#F59E0B"


@pytest.mark.asyncio
async def test_update_unknown_stage(pipeline, pipeline_service, admin):
    with pytest.raises(StageNotFoundError):
        await pipeline_service.update_stage(admin, pipeline.id, "missing", StageUpdate(name="x"))


@pytest.mark.asyncio
async def test_remove_stage(pipeline, pipeline_service, admin):
    stage_id = _stage_id(pipeline, "Qualified")
    updated = await pipeline_service.remove_stage(admin, pipeline.id, stage_id)
    assert stage_id not in {s.id for s in updated.stages}
    assert [s.order for s in updated.stages] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_remove_stage_with_deals(pipeline, pipeline_service, deal_service, admin):
    await _add_deal(deal_service, admin, pipeline, stage="Qualified")
    with pytest.raises(DealConflictError):
        await pipeline_service.remove_stage(admin, pipeline.id, _stage_id(pipeline, "Qualified"))


@pytest.mark.asyncio
async def test_remove_stage_keeps_minimum(pipeline_service, admin):
    small = await pipeline_service.create_pipeline(
        admin, PipelineCreate(name="Small", stages=_two_stages())
    )
    with pytest.raises(DealValidationError, match="at least"):
        await pipeline_service.remove_stage(admin, small.id, small.stages[0].id)


@pytest.mark.asyncio
async def test_reorder_stages(pipeline, pipeline_service, admin):
    lead = _stage_id(pipeline, "Lead")
    updated = await pipeline_service.reorder_stages(
        admin, pipeline.id, [StageOrder(stage_id=lead, order=99)]
    )
    assert updated.stages[-1].id == lead
    assert [s.order for s in updated.stages] == list(range(6))


@pytest.mark.asyncio
async def test_reorder_unknown_stage(pipeline, pipeline_service, admin):
    with pytest.raises(StageNotFoundError):
        await pipeline_service.reorder_stages(
            admin, pipeline.id, [StageOrder(stage_id="missing", order=1)]
        )


# ── Analytics ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pipeline_analytics(pipeline, pipeline_service, deal_service, admin):
    for _ in range(4):
        await _add_deal(deal_service, admin, pipeline, stage="Lead")
    await _add_deal(deal_service, admin, pipeline, stage="Qualified")

    analytics = await pipeline_service.get_pipeline_analytics(admin, pipeline.id)

    rows = {row.stage_name: row for row in analytics.stages}
    assert rows["Lead"].deal_count == 4
    assert rows["Lead"].conversion_rate == 25.0
    assert rows["Qualified"].deal_count == 1
    assert rows["Qualified"].conversion_rate == 0.0
    assert rows["Proposal"].deal_count == 0


@pytest.mark.asyncio
async def test_pipeline_analytics_ages_match_kanban(
    pipeline, pipeline_service, deal_service, admin, clock
):
    """Stage ages come from the current clock, not from the last save."""
    await _add_deal(deal_service, admin, pipeline, stage="Lead")
    clock.advance(days=10)

    board = await deal_service.get_deals_by_stage(admin, pipeline.id)
    analytics = await pipeline_service.get_pipeline_analytics(admin, pipeline.id)

    kanban_days = board.stages[0].deals[0].days_in_current_stage
    rows = {row.stage_name: row for row in analytics.stages}
    assert kanban_days == 10
    assert rows["Lead"].avg_days_in_stage == kanban_days


# ── Stage Validation ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_add_stage_with_existing_name(pipeline, pipeline_service, admin):
    with pytest.raises(DealValidationError, match="Duplicate stage name"):
        await pipeline_service.add_stage(
            admin, pipeline.id, StageCreate(name="proposal", probability=5, color="#999999")
        )


@pytest.mark.asyncio
async def test_rename_stage_to_existing_name(pipeline, pipeline_service, admin, pipeline_repo):
    with pytest.raises(DealValidationError, match="Duplicate stage name"):
        await pipeline_service.update_stage(
            admin, pipeline.id, _stage_id(pipeline, "Lead"), StageUpdate(name="Qualified")
        )

    stored = await pipeline_repo.get_pipeline(admin.organization_id, pipeline.id)
    assert [s.name for s in stored.stages].count("Qualified") == 1


@pytest.mark.asyncio
async def test_stage_cannot_become_won_and_lost(pipeline, pipeline_service, admin):
    with pytest.raises(DealValidationError, match="both closed won and closed lost"):
        await pipeline_service.update_stage(
            admin,
            pipeline.id,
            _stage_id(pipeline, "Closed Won"),
            StageUpdate(is_closed_lost=True),
        )


@pytest.mark.asyncio
async def test_switch_stage_outcome(pipeline, pipeline_service, admin):
    stage_id = _stage_id(pipeline, "Closed Won")
    updated = await pipeline_service.update_stage(
        admin, pipeline.id, stage_id, StageUpdate(is_closed_won=False, is_closed_lost=True)
    )
    stage = next(s for s in updated.stages if s.id == stage_id)
    assert stage.is_closed_lost
    assert not stage.is_closed_won

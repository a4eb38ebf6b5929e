"""Stage lookup and ordering rules for pipeline definitions.

Pure functions over Pipeline/PipelineStage. Stage references coming from
clients are stage ids; resolve_stage() also accepts a stage name, since
older clients address stages by their display name.

Any active stage is a legal transition target: skipping stages and moving
backwards are both allowed.
"""

from __future__ import annotations

from src.app.pipelines.schemas import Pipeline, PipelineStage, StageCreate

# Template used when a pipeline is created without explicit stages.
DEFAULT_STAGE_TEMPLATE: list[tuple[str, int, str]] = [
    ("Lead", 10, "#6B7280"),
    ("Qualified", 25, "#3B82F6"),
    ("Proposal", 50, "#F59E0B"),
    ("Negotiation", 75, "#EF4444"),
    ("Closed Won", 100, "#10B981"),
    ("Closed Lost", 0, "#6B7280"),
]


def default_stages() -> list[PipelineStage]:
    """Fresh copies of the default stage template."""
    return [
        PipelineStage(
            name=name,
            probability=probability,
            color=color,
            order=index,
            is_closed_won=name == "Closed Won",
            is_closed_lost=name == "Closed Lost",
        )
        for index, (name, probability, color) in enumerate(DEFAULT_STAGE_TEMPLATE)
    ]


def build_stages(payload: list[StageCreate]) -> list[PipelineStage]:
    """Materialize requested stages, keeping list position as the default order."""
    stages = [
        PipelineStage(
            **item.model_dump(exclude={"order"}),
            order=item.order if item.order is not None else index,
        )
        for index, item in enumerate(payload)
    ]
    return normalize_stage_order(stages)


def normalize_stage_order(stages: list[PipelineStage]) -> list[PipelineStage]:
    """Sort stages by order and renumber them 0..n-1.

    The sort is stable, so stages that share an order keep their relative
    position.
    """
    ordered = sorted(stages, key=lambda s: s.order)
    for index, stage in enumerate(ordered):
        stage.order = index
    return ordered


def get_stage(pipeline: Pipeline, stage_id: str) -> PipelineStage | None:
    """Find a stage by id."""
    for stage in pipeline.stages:
        if stage.id == stage_id:
            return stage
    return None


def resolve_stage(pipeline: Pipeline, stage_ref: str) -> PipelineStage | None:
    """Find a stage by id, falling back to an exact name match."""
    stage = get_stage(pipeline, stage_ref)
    if stage is not None:
        return stage
    for candidate in pipeline.stages:
        if candidate.name == stage_ref:
            return candidate
    return None



def can_transition_to_stage(pipeline: Pipeline, from_stage_id: str, to_stage_id: str) -> bool:
    """True when both stages exist and the target is active."""
    from_stage = get_stage(pipeline, from_stage_id)
    to_stage = get_stage(pipeline, to_stage_id)
    if from_stage is None or to_stage is None:
        return False
    return to_stage.is_active

"""Deal stage tracker -- append-only stage history and derived stage durations.

A deal's stage history is a sequence of intervals. The last interval is
"open" (no exited_at) while the deal sits in that stage; every transition
closes it and appends a new open one. Two invariants hold after
initialize() and after every move_to_stage():

- at most one history entry has no exited_at
- deal.stage_id equals the stage_id of the open entry

All functions here are synchronous, in-memory mutations of a single Deal.
They never touch the database: the service layer calls them before saving,
and the repository's version check serializes concurrent writers.

Two things are deliberately left to the caller:

- move_to_stage() does not check that the new stage belongs to the deal's
  pipeline, and appends the entry with an empty stage_name. DealService
  validates the stage and fills in the name from the pipeline definition.
- moving to the stage the deal is already in still closes the current
  interval and opens a new one.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

from src.app.deals.schemas import Deal, DealStatus, StageHistoryEntry

ONE_DAY = timedelta(days=1)
DEFAULT_STUCK_DAYS = 7


class StageTrackingError(ValueError):
    """Raised when a deal lacks the fields a stage operation requires."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so aware and naive values compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((_as_utc(end) - _as_utc(start)) / timedelta(milliseconds=1))


# ── History Operations ──────────────────────────────────────────────────────


def open_history_entry(deal: Deal) -> StageHistoryEntry | None:
    """Return the currently open interval, if the last entry is still open."""
    if not deal.stage_history:
        return None
    last = deal.stage_history[-1]
    return last if last.is_open else None


def initialize(deal: Deal, stage_name: str = "") -> Deal:
    """Seed a newly created deal's history with its initial stage.

    The single entry starts at current_stage_entered_at and is attributed to
    the deal's creator.

    Args:
        deal: Deal that has not been initialized yet.
        stage_name: Display name of the initial stage, when the caller has
            resolved it from the pipeline definition.

    Returns:
        The same deal, mutated.

    Raises:
        StageTrackingError: If stage_id, pipeline_id, or created_by is
            missing, or the history was already seeded.
    """
    if not deal.stage_id:
        raise StageTrackingError("Deal stage_id is required")
    if not deal.pipeline_id:
        raise StageTrackingError("Deal pipeline_id is required")
    if not deal.created_by:
        raise StageTrackingError("Deal created_by is required")
    if deal.stage_history:
        raise StageTrackingError(f"Deal {deal.id} stage history is already initialized")

    deal.stage_history = [
        StageHistoryEntry(
            stage_id=deal.stage_id,
            stage_name=stage_name,
            entered_at=deal.current_stage_entered_at,
            changed_by=deal.created_by,
        )
    ]
    deal.days_in_current_stage = 0
    return deal


def move_to_stage(
    deal: Deal,
    new_stage_id: str,
    reason: str | None = None,
    changed_by: str | None = None,
    now: datetime | None = None,
) -> StageHistoryEntry:
    """Close the open interval and open a new one for new_stage_id.

    The acting user defaults to deal.updated_by. Nothing is persisted.

    Returns:
        The newly appended (open) history entry.

    Raises:
        StageTrackingError: If new_stage_id is empty or no acting user is known.
    """
    if not new_stage_id:
        raise StageTrackingError("New stage_id is required")
    actor = changed_by or deal.updated_by
    if not actor:
        raise StageTrackingError("changed_by is required when the deal has no updated_by")

    now = now or _utcnow()

    current = open_history_entry(deal)
    if current is not None:
        current.exited_at = now
        current.duration = _elapsed_ms(current.entered_at, now)

    entry = StageHistoryEntry(
        stage_id=new_stage_id,
        stage_name="",
        entered_at=now,
        reason=reason,
        changed_by=actor,
    )
    deal.stage_history.append(entry)

    deal.stage_id = new_stage_id
    deal.current_stage_entered_at = now
    deal.days_in_current_stage = 0
    return entry


# ── Derived Values ──────────────────────────────────────────────────────────


def recompute_days_in_stage(deal: Deal, now: datetime | None = None) -> int:
    """Whole days (rounded up) the deal has spent in its current stage.

    Uses the absolute difference, so a clock slightly behind
    current_stage_entered_at does not produce negative ages.
    """
    now = now or _utcnow()
    elapsed = abs(_as_utc(now) - _as_utc(deal.current_stage_entered_at))
    return math.ceil(elapsed / ONE_DAY)


def refresh_derived_fields(deal: Deal, now: datetime | None = None) -> Deal:
    """Bring days_in_current_stage up to date before a save."""
    deal.days_in_current_stage = recompute_days_in_stage(deal, now)
    return deal


def is_stuck(
    deal: Deal,
    threshold_days: int = DEFAULT_STUCK_DAYS,
    now: datetime | None = None,
) -> bool:
    """True when an open deal has sat in its stage longer than threshold_days."""
    return (
        recompute_days_in_stage(deal, now) > threshold_days
        and deal.status == DealStatus.OPEN
    )


def is_overdue(deal: Deal, now: datetime | None = None) -> bool:
    """True when an open deal is past its expected close date."""
    if deal.expected_close_date is None:
        return False
    now = now or _utcnow()
    return (
        _as_utc(now) > _as_utc(deal.expected_close_date)
        and deal.status == DealStatus.OPEN
    )


def days_since_creation(deal: Deal, now: datetime | None = None) -> int:
    now = now or _utcnow()
    return math.ceil(abs(_as_utc(now) - _as_utc(deal.created_at)) / ONE_DAY)

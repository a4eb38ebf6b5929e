"""Unit tests for the deal stage tracker.

Covers history seeding, stage moves, derived stage age, stuck/overdue
checks, and the history invariants (one open interval, stage pointer
matches the open interval).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.app.deals import tracker
from src.app.deals.schemas import Deal, DealStatus
from src.app.deals.tracker import StageTrackingError

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
DAY_MS = 24 * 60 * 60 * 1000


def _make_deal(**overrides) -> Deal:
    data = {
        "organization_id": "org-1",
        "title": "Acme renewal",
        "pipeline_id": "pipe-1",
        "stage_id": "lead",
        "created_by": "u1",
        "created_at": T0,
        "current_stage_entered_at": T0,
    }
    data.update(overrides)
    return Deal(**data)


def _open_entries(deal: Deal) -> list:
    return [e for e in deal.stage_history if e.exited_at is None]


def _assert_invariants(deal: Deal) -> None:
    open_entries = _open_entries(deal)
    assert len(open_entries) <= 1
    if open_entries:
        assert open_entries[0].stage_id == deal.stage_id


class TestInitialize:
    """Tests for seeding the stage history of a new deal."""

    def test_seeds_single_open_entry(self):
        """Initialize at T0 produces one open entry for the initial stage."""
        deal = tracker.initialize(_make_deal())

        assert len(deal.stage_history) == 1
        entry = deal.stage_history[0]
        assert entry.stage_id == "lead"
        assert entry.entered_at == T0
        assert entry.exited_at is None
        assert entry.changed_by == "u1"
        assert deal.days_in_current_stage == 0
        _assert_invariants(deal)

    def test_records_resolved_stage_name(self):
        deal = tracker.initialize(_make_deal(), stage_name="Lead")
        assert deal.stage_history[0].stage_name == "Lead"

    def test_stage_name_defaults_to_empty(self):
        deal = tracker.initialize(_make_deal())
        assert deal.stage_history[0].stage_name == ""

    def test_days_in_stage_is_zero_at_entry_time(self):
        """Initialize followed by recompute at enteredAt yields 0."""
        deal = tracker.initialize(_make_deal())
        assert tracker.recompute_days_in_stage(deal, T0) == 0

    def test_rejects_empty_stage_id(self):
        with pytest.raises(StageTrackingError, match="stage_id"):
            tracker.initialize(_make_deal(stage_id=""))

    def test_rejects_missing_pipeline(self):
        with pytest.raises(StageTrackingError, match="pipeline_id"):
            tracker.initialize(_make_deal(pipeline_id=None))

    def test_rejects_missing_creator(self):
        with pytest.raises(StageTrackingError, match="created_by"):
            tracker.initialize(_make_deal(created_by=None))

    def test_rejects_already_seeded_history(self):
        deal = tracker.initialize(_make_deal())
        with pytest.raises(StageTrackingError, match="already initialized"):
            tracker.initialize(deal)
        assert len(deal.stage_history) == 1

    def test_tracking_error_is_a_value_error(self):
        assert issubclass(StageTrackingError, ValueError)


class TestMoveToStage:
    """Tests for closing the open interval and opening the next one."""

    def test_move_closes_previous_and_opens_new(self):
        """Move to 'qualified' two days after creation."""
        deal = tracker.initialize(_make_deal())
        moved_at = T0 + timedelta(days=2)

        entry = tracker.move_to_stage(deal, "qualified", "good fit", "u2", now=moved_at)

        first, second = deal.stage_history
        assert first.exited_at == moved_at
        assert first.duration == 2 * DAY_MS
        assert second is entry
        assert second.stage_id == "qualified"
        assert second.entered_at == moved_at
        assert second.reason == "good fit"
        assert second.changed_by == "u2"
        assert second.exited_at is None
        assert deal.stage_id == "qualified"
        assert deal.current_stage_entered_at == moved_at
        assert deal.days_in_current_stage == 0
        _assert_invariants(deal)

    def test_new_entry_has_empty_stage_name(self):
        deal = tracker.initialize(_make_deal(), stage_name="Lead")
        entry = tracker.move_to_stage(deal, "qualified", changed_by="u2", now=T0)
        assert entry.stage_name == ""

    def test_same_stage_move_still_opens_new_interval(self):
        """Two moves to the same stage produce two history entries."""
        deal = tracker.initialize(_make_deal())

        tracker.move_to_stage(deal, "qualified", changed_by="u2", now=T0 + timedelta(hours=1))
        tracker.move_to_stage(deal, "qualified", changed_by="u2", now=T0 + timedelta(hours=3))

        assert [e.stage_id for e in deal.stage_history] == ["lead", "qualified", "qualified"]
        assert deal.stage_history[1].exited_at == T0 + timedelta(hours=3)
        assert deal.stage_history[1].duration == 2 * 60 * 60 * 1000
        _assert_invariants(deal)

    def test_changed_by_defaults_to_updated_by(self):
        deal = tracker.initialize(_make_deal(updated_by="u9"))
        entry = tracker.move_to_stage(deal, "qualified", now=T0)
        assert entry.changed_by == "u9"

    def test_rejects_move_without_actor(self):
        deal = tracker.initialize(_make_deal())
        with pytest.raises(StageTrackingError, match="changed_by"):
            tracker.move_to_stage(deal, "qualified", now=T0)
        assert len(deal.stage_history) == 1

    def test_rejects_empty_stage_id(self):
        deal = tracker.initialize(_make_deal())
        with pytest.raises(StageTrackingError):
            tracker.move_to_stage(deal, "", changed_by="u2", now=T0)
        assert deal.stage_id == "lead"
        assert deal.stage_history[0].exited_at is None

    def test_any_stage_to_stage_transition_is_allowed(self):
        """Skipping forward and moving backwards are both legal."""
        deal = tracker.initialize(_make_deal())
        tracker.move_to_stage(deal, "negotiation", changed_by="u2", now=T0 + timedelta(days=1))
        tracker.move_to_stage(deal, "lead", changed_by="u2", now=T0 + timedelta(days=2))
        assert deal.stage_id == "lead"
        _assert_invariants(deal)

    def test_invariants_hold_over_many_moves(self):
        deal = tracker.initialize(_make_deal())
        stages = ["qualified", "proposal", "qualified", "negotiation", "won"]
        for offset, stage in enumerate(stages, start=1):
            tracker.move_to_stage(deal, stage, changed_by="u2", now=T0 + timedelta(days=offset))
            _assert_invariants(deal)

        assert len(deal.stage_history) == len(stages) + 1
        closed = deal.stage_history[:-1]
        assert all(e.duration == DAY_MS for e in closed)

    def test_does_not_touch_status(self):
        deal = tracker.initialize(_make_deal())
        tracker.move_to_stage(deal, "closed-won", changed_by="u2", now=T0)
        assert deal.status == DealStatus.OPEN


class TestDerivedValues:
    """Tests for stage age, stuck and overdue checks."""

    def test_recompute_rounds_up_partial_days(self):
        deal = _make_deal()
        assert tracker.recompute_days_in_stage(deal, T0 + timedelta(hours=1)) == 1
        assert tracker.recompute_days_in_stage(deal, T0 + timedelta(days=2)) == 2
        assert tracker.recompute_days_in_stage(deal, T0 + timedelta(days=2, seconds=1)) == 3

    def test_recompute_is_idempotent(self):
        deal = _make_deal()
        now = T0 + timedelta(days=4, hours=6)
        values = {tracker.recompute_days_in_stage(deal, now) for _ in range(5)}
        assert values == {5}

    def test_recompute_uses_absolute_difference(self):
        deal = _make_deal()
        assert tracker.recompute_days_in_stage(deal, T0 - timedelta(hours=3)) == 1

    def test_recompute_accepts_naive_datetimes(self):
        deal = _make_deal(current_stage_entered_at=datetime(2026, 1, 5, 12, 0))
        assert tracker.recompute_days_in_stage(deal, T0 + timedelta(days=3)) == 3

    def test_refresh_derived_fields_updates_counter(self):
        deal = _make_deal()
        tracker.refresh_derived_fields(deal, T0 + timedelta(days=6))
        assert deal.days_in_current_stage == 6

    def test_is_stuck_for_open_deal_past_threshold(self):
        """Open deal entered at T0 is stuck at T0+10 days with threshold 7."""
        deal = _make_deal(status=DealStatus.OPEN)
        assert tracker.is_stuck(deal, threshold_days=7, now=T0 + timedelta(days=10))

    def test_won_deal_is_never_stuck(self):
        deal = _make_deal(status=DealStatus.WON)
        assert not tracker.is_stuck(deal, threshold_days=7, now=T0 + timedelta(days=10))

    def test_threshold_is_exclusive(self):
        deal = _make_deal()
        assert not tracker.is_stuck(deal, threshold_days=7, now=T0 + timedelta(days=7))
        assert tracker.is_stuck(deal, threshold_days=7, now=T0 + timedelta(days=7, minutes=1))

    def test_is_overdue(self):
        deal = _make_deal(expected_close_date=T0 + timedelta(days=30))
        assert not tracker.is_overdue(deal, T0 + timedelta(days=29))
        assert tracker.is_overdue(deal, T0 + timedelta(days=31))

    def test_closed_or_undated_deal_is_not_overdue(self):
        assert not tracker.is_overdue(_make_deal(), T0 + timedelta(days=365))
        lost = _make_deal(status=DealStatus.LOST, expected_close_date=T0)
        assert not tracker.is_overdue(lost, T0 + timedelta(days=1))

    def test_days_since_creation(self):
        deal = _make_deal()
        assert tracker.days_since_creation(deal, T0) == 0
        assert tracker.days_since_creation(deal, T0 + timedelta(days=3, hours=1)) == 4

    def test_open_history_entry(self):
        deal = _make_deal()
        assert tracker.open_history_entry(deal) is None
        tracker.initialize(deal)
        assert tracker.open_history_entry(deal) is deal.stage_history[0]

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dealflow.automation.transitions import (
    LifecycleFlags,
    Override,
    StageContext,
    TransitionKind,
    resolve_transition,
)
from dealflow.crm.schemas import PipelineConfig


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EARLIER = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


def _pipeline(**overrides: object) -> PipelineConfig:
    values: dict[str, object] = {
        "id": "p1",
        "name": "Sales",
        "stages": [
            {"id": "new", "label": "New", "position": 0},
            {"id": "won", "label": "Won", "position": 1},
            {"id": "lost", "label": "Lost", "position": 2},
            {"id": "customer", "label": "Customer", "position": 3, "linked_lifecycle_stage": "CUSTOMER"},
            {"id": "other", "label": "Other", "position": 4, "linked_lifecycle_stage": "OTHER"},
        ],
        "won_stage_id": "won",
        "lost_stage_id": "lost",
    }
    values.update(overrides)
    return PipelineConfig.model_validate(values)


def test_configured_won_stage_closes_as_won() -> None:
    transition = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(_pipeline(), "won"), now=NOW)

    assert transition.kind is TransitionKind.WON
    assert transition.flags == LifecycleFlags(is_won=True, closed_at=NOW)
    assert transition.as_changes() == {"is_won": True, "is_lost": False, "closed_at": NOW}


def test_configured_lost_stage_closes_as_lost() -> None:
    transition = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(_pipeline(), "lost"), now=NOW)

    assert transition.kind is TransitionKind.LOST
    assert transition.flags == LifecycleFlags(is_lost=True, closed_at=NOW)


def test_configured_stages_take_precedence_over_markers() -> None:
    pipeline = _pipeline()

    assert resolve_transition(LifecycleFlags.open(), StageContext.for_stage(pipeline, "customer"), now=NOW).kind is (
        TransitionKind.UNCHANGED
    )
    assert resolve_transition(LifecycleFlags.open(), StageContext.for_stage(pipeline, "other"), now=NOW).kind is (
        TransitionKind.UNCHANGED
    )


def test_markers_decide_when_no_stages_are_configured() -> None:
    pipeline = _pipeline(won_stage_id=None, lost_stage_id=None)

    won = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(pipeline, "customer"), now=NOW)
    lost = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(pipeline, "other"), now=NOW)

    assert won.kind is TransitionKind.WON
    assert lost.kind is TransitionKind.LOST


def test_customer_marker_does_not_win_inside_customer_pipeline() -> None:
    pipeline = _pipeline(won_stage_id=None, lost_stage_id=None, linked_lifecycle_stage="CUSTOMER")

    transition = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(pipeline, "customer"), now=NOW)

    assert transition.kind is TransitionKind.UNCHANGED


def test_custom_markers_are_honoured() -> None:
    pipeline = _pipeline(won_stage_id=None, lost_stage_id=None)

    transition = resolve_transition(
        LifecycleFlags.open(),
        StageContext.for_stage(pipeline, "other"),
        now=NOW,
        won_marker="OTHER",
        lost_marker="CHURNED",
    )

    assert transition.kind is TransitionKind.WON


@pytest.mark.parametrize(
    ("override", "expected"),
    [(Override.WIN, TransitionKind.WON), (Override.LOSE, TransitionKind.LOST)],
)
def test_explicit_override_wins_over_stage_rules(override: Override, expected: TransitionKind) -> None:
    transition = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(_pipeline(), "new"), override, NOW)

    assert transition.kind is expected
    assert transition.flags.closed_at == NOW


def test_closed_deal_moved_to_open_stage_is_reopened() -> None:
    current = LifecycleFlags(is_won=True, closed_at=EARLIER)

    transition = resolve_transition(current, StageContext.for_stage(_pipeline(), "new"), now=NOW)

    assert transition.kind is TransitionKind.REOPENED
    assert transition.as_changes() == {"is_won": False, "is_lost": False, "closed_at": None}


def test_open_deal_moved_between_open_stages_is_unchanged() -> None:
    transition = resolve_transition(LifecycleFlags.open(), StageContext.for_stage(_pipeline(), "new"), now=NOW)

    assert transition.kind is TransitionKind.UNCHANGED
    assert not transition.changes_flags
    assert transition.as_changes() == {}


def test_unknown_pipeline_only_reopens() -> None:
    destination = StageContext.for_stage(None, "anything")

    assert resolve_transition(LifecycleFlags.open(), destination, now=NOW).kind is TransitionKind.UNCHANGED
    closed = LifecycleFlags(is_lost=True, closed_at=EARLIER)
    assert resolve_transition(closed, destination, now=NOW).kind is TransitionKind.REOPENED


def test_flags_reject_inconsistent_combinations() -> None:
    with pytest.raises(ValueError):
        LifecycleFlags(is_won=True, is_lost=True, closed_at=NOW)
    with pytest.raises(ValueError):
        LifecycleFlags(is_won=True)
    with pytest.raises(ValueError):
        LifecycleFlags(closed_at=NOW)

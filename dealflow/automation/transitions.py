from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from dealflow.crm.schemas import DealView, PipelineConfig


class TransitionKind(str, Enum):
    WON = "won"
    LOST = "lost"
    REOPENED = "reopened"
    UNCHANGED = "unchanged"


class Override(str, Enum):
    WIN = "win"
    LOSE = "lose"


@dataclass(frozen=True)
class LifecycleFlags:
    is_won: bool = False
    is_lost: bool = False
    closed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.is_won and self.is_lost:
            raise ValueError("is_won and is_lost cannot both be true")
        if (self.is_won or self.is_lost) != (self.closed_at is not None):
            raise ValueError("closed_at must be set exactly when closed")

    @property
    def is_closed(self) -> bool:
        return self.is_won or self.is_lost

    @classmethod
    def open(cls) -> LifecycleFlags:
        return cls()

    @classmethod
    def from_record(cls, record: DealView) -> LifecycleFlags:
        return cls(is_won=record.is_won, is_lost=record.is_lost, closed_at=record.closed_at)


@dataclass(frozen=True)
class StageContext:
    """Destination stage as seen by the transition rules."""

    stage_id: str
    linked_lifecycle_stage: str | None = None
    won_stage_id: str | None = None
    lost_stage_id: str | None = None
    pipeline_lifecycle_stage: str | None = None

    @classmethod
    def for_stage(cls, pipeline: PipelineConfig | None, stage_id: str) -> StageContext:
        if pipeline is None:
            return cls(stage_id=stage_id)
        stage = pipeline.stage(stage_id)
        return cls(
            stage_id=stage_id,
            linked_lifecycle_stage=stage.linked_lifecycle_stage if stage else None,
            won_stage_id=pipeline.won_stage_id,
            lost_stage_id=pipeline.lost_stage_id,
            pipeline_lifecycle_stage=pipeline.linked_lifecycle_stage,
        )


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    flags: LifecycleFlags

    @property
    def changes_flags(self) -> bool:
        return self.kind is not TransitionKind.UNCHANGED

    def as_changes(self) -> dict[str, object]:
        if not self.changes_flags:
            return {}
        return {
            "is_won": self.flags.is_won,
            "is_lost": self.flags.is_lost,
            "closed_at": self.flags.closed_at,
        }


def _is_won_stage(destination: StageContext, won_marker: str) -> bool:
    if destination.won_stage_id:
        return destination.stage_id == destination.won_stage_id
    return (
        destination.linked_lifecycle_stage == won_marker
        and destination.pipeline_lifecycle_stage != won_marker
    )


def _is_lost_stage(destination: StageContext, lost_marker: str) -> bool:
    if destination.lost_stage_id:
        return destination.stage_id == destination.lost_stage_id
    return destination.linked_lifecycle_stage == lost_marker


def resolve_transition(
    current: LifecycleFlags,
    destination: StageContext,
    override: Override | None = None,
    now: datetime | None = None,
    *,
    won_marker: str = "CUSTOMER",
    lost_marker: str = "OTHER",
) -> Transition:
    """Derive the lifecycle flags of a deal moved to ``destination``.

    Rules in order: an explicit override, the won stage, the lost stage,
    reopening a closed deal, otherwise the flags stay as they are.
    """
    closed_at = now or datetime.now(timezone.utc)

    if override is Override.WIN:
        return Transition(TransitionKind.WON, LifecycleFlags(is_won=True, closed_at=closed_at))
    if override is Override.LOSE:
        return Transition(TransitionKind.LOST, LifecycleFlags(is_lost=True, closed_at=closed_at))
    if _is_won_stage(destination, won_marker):
        return Transition(TransitionKind.WON, LifecycleFlags(is_won=True, closed_at=closed_at))
    if _is_lost_stage(destination, lost_marker):
        return Transition(TransitionKind.LOST, LifecycleFlags(is_lost=True, closed_at=closed_at))
    if current.is_closed:
        return Transition(TransitionKind.REOPENED, LifecycleFlags.open())
    return Transition(TransitionKind.UNCHANGED, current)

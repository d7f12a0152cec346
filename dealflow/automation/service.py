from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial

from dealflow.automation.effects import EffectSkipped, SideEffect, run_effects
from dealflow.automation.transitions import (
    LifecycleFlags,
    Override,
    StageContext,
    Transition,
    TransitionKind,
    resolve_transition,
)
from dealflow.cache.display import DisplayResolver
from dealflow.cache.store import ReadModelCache
from dealflow.core.config import Settings, get_settings
from dealflow.crm.client import RemoteStore
from dealflow.crm.errors import ItemNotFoundError
from dealflow.crm.models import utcnow
from dealflow.crm.schemas import ActivityCreate, DealCreate, DealView, MoveResult, PipelineConfig
from dealflow.mutations.pipeline import MutationKind, MutationPipeline
from dealflow.otel import get_tracer, traced


logger = logging.getLogger("dealflow.automation")
tracer = get_tracer("dealflow.automation")

EFFECT_HISTORY = "history_entry"
EFFECT_LIFECYCLE = "lifecycle_propagation"
EFFECT_FORWARDING = "pipeline_forwarding"
FORWARDING_AUTOMATION = "NEXT_PIPELINE"


class StageTransitionAutomator:
    def __init__(
        self,
        pipeline: MutationPipeline,
        cache: ReadModelCache,
        remote: RemoteStore,
        resolver: DisplayResolver,
        settings: Settings | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._cache = cache
        self._remote = remote
        self._resolver = resolver
        self._settings = settings or get_settings()
        self._tasks: set[asyncio.Task[list[str]]] = set()

    async def move_item(
        self,
        item_id: str,
        stage_id: str,
        *,
        loss_reason: str | None = None,
        override: Override | None = None,
    ) -> MoveResult:
        record = self._cache.get(item_id)
        if record is None:
            raise ItemNotFoundError(self._cache.dataset_key, item_id)

        pipeline = self._resolver.pipeline(record.pipeline_id)
        now = utcnow()
        transition = resolve_transition(
            LifecycleFlags.from_record(record),
            StageContext.for_stage(pipeline, stage_id),
            override,
            now,
            won_marker=self._settings.won_lifecycle_marker,
            lost_marker=self._settings.lost_lifecycle_marker,
        )
        changes: dict[str, object] = {"stage_id": stage_id, "last_stage_change_date": now}
        if loss_reason:
            changes["loss_reason"] = loss_reason
        changes.update(transition.as_changes())

        with traced(tracer, "deals.move", item_id=item_id, stage_id=stage_id, transition=transition.kind.value):
            await self._pipeline.update(item_id, changes, kind=MutationKind.MOVE)

        logger.info(
            "automation.moved",
            extra={"dataset": self._cache.dataset_key, "item_id": item_id, "transition": transition.kind.value},
        )
        effects = self.plan_effects(record, pipeline, stage_id, transition, loss_reason=loss_reason, now=now)
        if effects:
            self._schedule(effects, item_id)

        return MoveResult(
            item_id=item_id,
            stage_id=stage_id,
            transition=transition.kind.value,
            is_won=transition.flags.is_won,
            is_lost=transition.flags.is_lost,
            closed_at=transition.flags.closed_at,
        )

    def plan_effects(
        self,
        record: DealView,
        pipeline: PipelineConfig | None,
        stage_id: str,
        transition: Transition,
        *,
        loss_reason: str | None = None,
        now: datetime | None = None,
    ) -> list[SideEffect]:
        stage = pipeline.stage(stage_id) if pipeline else None
        label = stage.label if stage else stage_id
        description = f"Loss reason: {loss_reason}" if loss_reason else None
        effects = [
            SideEffect(EFFECT_HISTORY, partial(self._log_history, record, f"Moved to {label}", description, now)),
        ]

        marker = stage.linked_lifecycle_stage if stage else None
        if marker and record.contact_id:
            effects.append(
                SideEffect(EFFECT_LIFECYCLE, partial(self._propagate_lifecycle, record, record.contact_id, marker, label))
            )

        if pipeline is not None and pipeline.next_pipeline_id and self._is_success(transition, marker):
            effects.append(SideEffect(EFFECT_FORWARDING, partial(self._forward, record, pipeline)))
        return effects

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks))

    def _schedule(self, effects: list[SideEffect], item_id: str) -> None:
        task = asyncio.get_running_loop().create_task(run_effects(effects, item_id=item_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _is_success(self, transition: Transition, marker: str | None) -> bool:
        if transition.kind is TransitionKind.WON:
            return True
        return marker is not None and marker in self._settings.forwarding_lifecycle_markers

    async def _log_history(
        self,
        record: DealView,
        title: str,
        description: str | None = None,
        at: datetime | None = None,
    ) -> None:
        entry = ActivityCreate(
            deal_id=record.id,
            deal_title=record.title,
            type="STATUS_CHANGE",
            title=title,
            description=description,
            date=at or utcnow(),
            completed=True,
            user_name=self._settings.history_actor_name,
        )
        await self._remote.activities.create(entry.model_dump())

    async def _propagate_lifecycle(self, record: DealView, contact_id: str, marker: str, stage_label: str) -> None:
        await self._remote.contacts.update(contact_id, {"stage": marker})
        await self._log_history(
            record,
            f"Contact promoted to {self._resolver.lifecycle_name(marker)}",
            f'Automatic via linked stage "{stage_label}"',
        )

    async def _forward(self, record: DealView, pipeline: PipelineConfig) -> None:
        payload = await self._remote.pipelines.get(pipeline.next_pipeline_id)
        if payload is None:
            raise EffectSkipped(EFFECT_FORWARDING, "forwarding pipeline not found")
        target = PipelineConfig.model_validate(payload)
        entry_stage = target.first_stage()
        if entry_stage is None:
            raise EffectSkipped(EFFECT_FORWARDING, "forwarding pipeline has no stages")
        if self._settings.forwarding_dedupe_enabled and self._already_forwarded(record.id, target.id):
            raise EffectSkipped(EFFECT_FORWARDING, "item already forwarded to pipeline")

        self._resolver.remember_pipelines([target])
        forwarded = DealCreate(
            title=record.title,
            pipeline_id=target.id,
            stage_id=entry_stage.id,
            value=record.value,
            contact_id=record.contact_id,
            company_id=record.company_id,
            owner_id=record.owner_id,
            priority=record.priority,
            probability=0,
            tags=list(record.tags),
            custom_fields={
                "origin_deal_id": record.id,
                "origin_pipeline_id": pipeline.id,
                "origin_automation": FORWARDING_AUTOMATION,
            },
            origin_deal_id=record.id,
            origin_pipeline_id=pipeline.id,
        )
        await self._remote.deals.create(forwarded.model_dump())
        await self._log_history(record, f"Sent to {target.name}")

    def _already_forwarded(self, origin_id: str, pipeline_id: str) -> bool:
        items = self._cache.read() or ()
        return any(item.origin_deal_id == origin_id and item.pipeline_id == pipeline_id for item in items)

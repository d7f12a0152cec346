from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar

from dealflow.automation.service import StageTransitionAutomator
from dealflow.automation.transitions import Override
from dealflow.cache.display import DisplayResolver
from dealflow.cache.store import CacheRegistry, DealSequence, cache_registry
from dealflow.core.config import Settings, get_settings
from dealflow.crm.client import RemoteStore
from dealflow.crm.schemas import (
    CompanyRead,
    ContactRead,
    DealCreate,
    DealMoveRequest,
    DealUpdate,
    DealView,
    LifecycleStageRead,
    MoveResult,
    PipelineConfig,
    normalize_deal_payload,
)
from dealflow.mutations.pipeline import MutationPipeline, MutationStatus
from dealflow.realtime.channel import PushChannel
from dealflow.realtime.reconciler import PushReconciler


logger = logging.getLogger("dealflow.cache")

T = TypeVar("T")

MUTATION_OPERATIONS = ("create_item", "update_item", "delete_item", "move_item")


@dataclass
class DealFilters:
    pipeline_id: str | None = None
    stage_id: str | None = None
    search: str | None = None
    min_value: float | None = None
    max_value: float | None = None

    def matches(self, record: DealView) -> bool:
        if self.pipeline_id and record.pipeline_id != self.pipeline_id:
            return False
        if self.stage_id and record.stage_id != self.stage_id:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in record.title.lower() and needle not in record.company_name.lower():
                return False
        if self.min_value is not None and record.value < self.min_value:
            return False
        if self.max_value is not None and record.value > self.max_value:
            return False
        return True


class DealsClient:
    """Read accessor and tracked mutations over the deals read-model cache."""

    def __init__(
        self,
        remote: RemoteStore,
        channel: PushChannel,
        *,
        registry: CacheRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._remote = remote
        self._channel = channel
        self.cache = (registry or cache_registry).get(self._settings.deals_dataset)
        self.resolver = DisplayResolver()
        self.pipeline = MutationPipeline(
            self.cache,
            remote.deals,
            self.resolver,
            temp_id_prefix=self._settings.temp_id_prefix,
        )
        self.reconciler = PushReconciler(self.cache, self.resolver, temp_id_prefix=self._settings.temp_id_prefix)
        self.automator = StageTransitionAutomator(
            self.pipeline,
            self.cache,
            remote,
            self.resolver,
            settings=self._settings,
        )
        self.statuses = {operation: MutationStatus(operation) for operation in MUTATION_OPERATIONS}

    @property
    def dataset(self) -> str:
        return self.cache.dataset_key

    async def load(self) -> DealSequence:
        deals, pipelines, contacts, companies, lifecycle_stages = await asyncio.gather(
            self._remote.deals.get_all(),
            self._remote.pipelines.get_all(),
            self._remote.contacts.get_all(),
            self._remote.companies.get_all(),
            self._remote.lifecycle_stages.get_all(),
        )
        self.resolver.remember_pipelines(PipelineConfig.model_validate(item) for item in pipelines)
        self.resolver.remember_contacts(ContactRead.model_validate(item) for item in contacts)
        self.resolver.remember_companies(CompanyRead.model_validate(item) for item in companies)
        self.resolver.remember_lifecycle_stages(LifecycleStageRead.model_validate(item) for item in lifecycle_stages)
        records = [self.resolver.resolve(DealView.model_validate(normalize_deal_payload(item))) for item in deals]
        loaded = self.cache.load(records)
        logger.info("deals.loaded", extra={"dataset": self.dataset, "operation": "load"})
        return loaded

    def start(self) -> None:
        self.reconciler.start(self._channel)

    async def stop(self) -> None:
        await self.automator.drain()
        await self.reconciler.stop()

    async def drain(self) -> None:
        await self.automator.drain()
        await self.reconciler.drain()

    def items(self, filters: DealFilters | None = None) -> list[DealView] | None:
        items = self.cache.read()
        if items is None:
            return None
        if filters is None:
            return list(items)
        if filters.pipeline_id and self.pipeline.is_temp_id(filters.pipeline_id):
            return []
        return [item for item in items if filters.matches(item)]

    def get_item(self, item_id: str) -> DealView | None:
        return self.cache.get(item_id)

    def status(self, operation: str) -> MutationStatus:
        return self.statuses[operation]

    async def create_item(self, payload: DealCreate) -> DealView:
        return await self._tracked("create_item", self.pipeline.create(payload.model_dump()))

    async def update_item(self, item_id: str, changes: DealUpdate) -> DealView:
        return await self._tracked("update_item", self.pipeline.update(item_id, changes.model_dump(exclude_unset=True)))

    async def delete_item(self, item_id: str) -> None:
        await self._tracked("delete_item", self.pipeline.delete(item_id))

    async def move_item(self, item_id: str, request: DealMoveRequest) -> MoveResult:
        override = None
        if request.explicit_win:
            override = Override.WIN
        elif request.explicit_lost:
            override = Override.LOSE
        return await self._tracked(
            "move_item",
            self.automator.move_item(item_id, request.stage_id, loss_reason=request.loss_reason, override=override),
        )

    async def _tracked(self, operation: str, call: Awaitable[T]) -> T:
        status = self.statuses[operation]
        status.begin()
        try:
            result: Any = await call
        except Exception as exc:
            status.fail(exc)
            raise
        status.succeed(result)
        return result

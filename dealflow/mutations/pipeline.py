from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from pydantic import ValidationError

from dealflow.cache.display import DisplayResolver
from dealflow.cache.store import (
    DealSequence,
    ReadModelCache,
    contains,
    index_of,
    insert_at,
    remove_record,
    replace_record,
)
from dealflow.context import get_mutation_id, reset_mutation_id, set_mutation_id
from dealflow.core.config import get_settings
from dealflow.crm.client import RemoteCollection
from dealflow.crm.errors import ItemNotFoundError
from dealflow.crm.models import utcnow
from dealflow.crm.schemas import REFERENCE_FIELDS, DealView, apply_changes, normalize_deal_payload
from dealflow.metrics import observe_mutation
from dealflow.otel import get_tracer, traced


logger = logging.getLogger("dealflow.mutations")
tracer = get_tracer("dealflow.mutations")

T = TypeVar("T")


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MOVE = "move"


@dataclass
class MutationContext:
    kind: MutationKind
    target_id: str
    temp_id: str | None = None
    snapshot: DealView | None = None
    snapshot_index: int | None = None
    changed_fields: frozenset[str] = frozenset()
    mutation_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class MutationStatus:
    operation: str
    pending: int = 0
    settled: int = 0
    failed: int = 0
    last_result: Any = None
    last_error: BaseException | None = None

    @property
    def is_pending(self) -> bool:
        return self.pending > 0

    def begin(self) -> None:
        self.pending += 1

    def succeed(self, result: Any) -> None:
        self.pending -= 1
        self.settled += 1
        self.last_result = result
        self.last_error = None

    def fail(self, error: BaseException) -> None:
        self.pending -= 1
        self.settled += 1
        self.failed += 1
        self.last_error = error


@contextmanager
def mutation_scope() -> Iterator[str]:
    """Bind a mutation id for one optimistic write, keeping one the caller already bound."""
    mutation_id = get_mutation_id() or str(uuid.uuid4())
    token = set_mutation_id(mutation_id)
    try:
        yield mutation_id
    finally:
        reset_mutation_id(token)


class MutationPipeline:
    """Optimistic begin/dispatch/confirm/rollback around remote writes for one cache."""

    def __init__(
        self,
        cache: ReadModelCache,
        remote: RemoteCollection,
        resolver: DisplayResolver,
        *,
        temp_id_prefix: str | None = None,
    ) -> None:
        self._cache = cache
        self._remote = remote
        self._resolver = resolver
        self._temp_id_prefix = temp_id_prefix if temp_id_prefix is not None else get_settings().temp_id_prefix

    @property
    def dataset(self) -> str:
        return self._cache.dataset_key

    def is_temp_id(self, record_id: str) -> bool:
        return record_id.startswith(self._temp_id_prefix)

    async def create(self, payload: dict[str, Any]) -> DealView:
        with mutation_scope() as mutation_id:
            context = self.begin_create(payload, mutation_id=mutation_id)
            confirmed = await self._dispatch(context, lambda: self._remote.create(payload))
            return self.confirm_create(context, confirmed)

    async def update(
        self,
        record_id: str,
        changes: dict[str, Any],
        *,
        kind: MutationKind = MutationKind.UPDATE,
    ) -> DealView:
        with mutation_scope() as mutation_id:
            context = self.begin_update(record_id, changes, kind=kind, mutation_id=mutation_id)
            confirmed = await self._dispatch(context, lambda: self._remote.update(record_id, changes))
            current = self._cache.get(record_id)
            if current is not None:
                return current
            return self._resolver.resolve(DealView.model_validate(normalize_deal_payload(confirmed)))

    async def delete(self, record_id: str) -> None:
        with mutation_scope() as mutation_id:
            context = self.begin_delete(record_id, mutation_id=mutation_id)
            await self._dispatch(context, lambda: self._remote.delete(record_id))

    def begin_create(self, payload: dict[str, Any], *, mutation_id: str) -> MutationContext:
        now = utcnow()
        temp_id = f"{self._temp_id_prefix}{uuid.uuid4()}"
        placeholder = DealView.model_validate(
            {
                **normalize_deal_payload(payload),
                "id": temp_id,
                "is_won": False,
                "is_lost": False,
                "closed_at": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        placeholder = self._resolver.resolve(placeholder)

        def _prepend(items: DealSequence | None) -> DealSequence | None:
            if items is None:
                return None
            return (placeholder, *items)

        self._cache.write(_prepend)
        logger.debug(
            "mutation.begin",
            extra={"dataset": self.dataset, "mutation": MutationKind.CREATE.value, "temp_id": temp_id},
        )
        return MutationContext(kind=MutationKind.CREATE, target_id=temp_id, temp_id=temp_id, mutation_id=mutation_id)

    def begin_update(
        self,
        record_id: str,
        changes: dict[str, Any],
        *,
        kind: MutationKind = MutationKind.UPDATE,
        mutation_id: str,
    ) -> MutationContext:
        snapshot = self._require(record_id)
        diff = {**changes, "updated_at": utcnow()}
        optimistic = apply_changes(snapshot, diff)
        if REFERENCE_FIELDS & diff.keys():
            optimistic = self._resolver.resolve(optimistic)

        def _apply(items: DealSequence | None) -> DealSequence | None:
            if items is None:
                return None
            return replace_record(items, optimistic)

        snapshot_index = self._cache.index_of(record_id)
        self._cache.write(_apply)
        logger.debug("mutation.begin", extra={"dataset": self.dataset, "mutation": kind.value, "item_id": record_id})
        return MutationContext(
            kind=kind,
            target_id=record_id,
            snapshot=snapshot,
            snapshot_index=snapshot_index,
            changed_fields=frozenset(diff),
            mutation_id=mutation_id,
        )

    def begin_delete(self, record_id: str, *, mutation_id: str) -> MutationContext:
        snapshot = self._require(record_id)
        snapshot_index = self._cache.index_of(record_id)

        def _remove(items: DealSequence | None) -> DealSequence | None:
            if items is None:
                return None
            return remove_record(items, record_id)

        self._cache.write(_remove)
        logger.debug(
            "mutation.begin",
            extra={"dataset": self.dataset, "mutation": MutationKind.DELETE.value, "item_id": record_id},
        )
        return MutationContext(
            kind=MutationKind.DELETE,
            target_id=record_id,
            snapshot=snapshot,
            snapshot_index=snapshot_index,
            mutation_id=mutation_id,
        )

    def confirm_create(self, context: MutationContext, payload: dict[str, Any]) -> DealView:
        confirmed = self._resolver.resolve(DealView.model_validate(normalize_deal_payload(payload)))
        temp_id = context.temp_id or context.target_id

        def _swap(items: DealSequence | None) -> DealSequence | None:
            if items is None:
                return None
            temp_index = index_of(items, temp_id)
            remaining = remove_record(items, temp_id)
            if contains(remaining, confirmed.id):
                return remaining
            return insert_at(remaining, temp_index if temp_index is not None else 0, confirmed)

        self._cache.write(_swap)
        logger.debug(
            "mutation.swapped",
            extra={"dataset": self.dataset, "temp_id": temp_id, "item_id": confirmed.id},
        )
        return self._cache.get(confirmed.id) or confirmed

    def rollback(self, context: MutationContext) -> None:
        if context.kind is MutationKind.CREATE:
            temp_id = context.temp_id or context.target_id
            self._cache.write(lambda items: None if items is None else remove_record(items, temp_id))
        elif context.kind is MutationKind.DELETE:
            self._cache.write(self._reinsert(context))
        else:
            self._cache.write(self._restore_fields(context))
        logger.info(
            "mutation.rolled_back",
            extra={"dataset": self.dataset, "mutation": context.kind.value, "item_id": context.target_id},
        )

    def _reinsert(self, context: MutationContext) -> Callable[[DealSequence | None], DealSequence | None]:
        snapshot = context.snapshot

        def _updater(items: DealSequence | None) -> DealSequence | None:
            if items is None or snapshot is None or contains(items, snapshot.id):
                return items
            return insert_at(items, context.snapshot_index or 0, snapshot)

        return _updater

    def _restore_fields(self, context: MutationContext) -> Callable[[DealSequence | None], DealSequence | None]:
        snapshot = context.snapshot

        def _updater(items: DealSequence | None) -> DealSequence | None:
            if items is None or snapshot is None:
                return items
            current = next((item for item in items if item.id == snapshot.id), None)
            if current is None:
                logger.debug(
                    "mutation.rollback_target_gone",
                    extra={"dataset": self.dataset, "item_id": snapshot.id},
                )
                return items
            previous = {name: getattr(snapshot, name) for name in context.changed_fields}
            try:
                restored = apply_changes(current, previous)
            except ValidationError:
                restored = snapshot
            if REFERENCE_FIELDS & context.changed_fields:
                restored = self._resolver.resolve(restored)
            return replace_record(items, restored)

        return _updater

    def _require(self, record_id: str) -> DealView:
        record = self._cache.get(record_id)
        if record is None:
            raise ItemNotFoundError(self.dataset, record_id)
        return record

    async def _dispatch(self, context: MutationContext, call: Callable[[], Awaitable[T]]) -> T:
        operation = context.kind.value
        started = time.perf_counter()
        try:
            with traced(tracer, f"deals.remote.{operation}", item_id=context.target_id, dataset=self.dataset):
                result = await call()
        except Exception as exc:
            observe_mutation(self._remote.entity, operation, "failed", time.perf_counter() - started)
            logger.warning(
                "mutation.failed",
                extra={
                    "dataset": self.dataset,
                    "mutation": operation,
                    "item_id": context.target_id,
                    "error": str(exc),
                },
            )
            self.rollback(context)
            raise

        observe_mutation(self._remote.entity, operation, "confirmed", time.perf_counter() - started)
        logger.info(
            "mutation.confirmed",
            extra={"dataset": self.dataset, "mutation": operation, "item_id": context.target_id},
        )
        return result

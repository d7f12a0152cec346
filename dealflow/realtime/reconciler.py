from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from dealflow.cache.display import DisplayResolver
from dealflow.cache.store import DealSequence, ReadModelCache, contains, remove_record, replace_record
from dealflow.core.config import get_settings
from dealflow.crm.schemas import REFERENCE_FIELDS, ChangeNotification, DealView, apply_changes, normalize_deal_payload
from dealflow.metrics import observe_push_notification
from dealflow.realtime.channel import PushChannel, Subscription


logger = logging.getLogger("dealflow.realtime")


class PushReconciler:
    """Merges push notifications for one dataset into its read-model cache.

    Notifications are applied in arrival order, last arrival wins, and only the
    notified fields are merged. Outcomes: ``applied``, ``ignored`` (already
    present), ``skipped`` (cache not loaded or target absent) and ``rejected``
    (payload that does not form a valid record).
    """

    def __init__(
        self,
        cache: ReadModelCache,
        resolver: DisplayResolver,
        *,
        temp_id_prefix: str | None = None,
    ) -> None:
        self._cache = cache
        self._resolver = resolver
        self._temp_id_prefix = temp_id_prefix if temp_id_prefix is not None else get_settings().temp_id_prefix
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def dataset(self) -> str:
        return self._cache.dataset_key

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, channel: PushChannel) -> None:
        if self.running:
            return
        self._subscription = channel.subscribe(self.dataset)
        self._task = asyncio.get_running_loop().create_task(self._consume(self._subscription))
        logger.info("push.started", extra={"dataset": self.dataset})

    async def stop(self) -> None:
        subscription, task = self._subscription, self._task
        self._subscription = None
        self._task = None
        if subscription is not None:
            subscription.close()
        if task is not None:
            await task
        logger.info("push.stopped", extra={"dataset": self.dataset})

    async def drain(self) -> None:
        if self._subscription is not None:
            await self._subscription.drain()

    async def _consume(self, subscription: Subscription) -> None:
        async for notification in subscription:
            try:
                self.apply(notification)
            except Exception as exc:
                observe_push_notification(self.dataset, notification.operation, "failed")
                logger.exception(
                    "push.apply_failed",
                    extra={"dataset": self.dataset, "operation": notification.operation, "error": str(exc)},
                )
            finally:
                subscription.task_done()

    def apply(self, notification: ChangeNotification) -> str:
        if notification.operation == "insert":
            outcome = self._apply_insert(notification.record or {})
        elif notification.operation == "update":
            outcome = self._apply_update(notification.record or {})
        else:
            outcome = self._apply_delete(notification.target_id or "")
        observe_push_notification(self.dataset, notification.operation, outcome)
        logger.debug(
            "push.applied",
            extra={
                "dataset": self.dataset,
                "operation": notification.operation,
                "item_id": notification.target_id,
                "outcome": outcome,
            },
        )
        return outcome

    def _apply_insert(self, payload: dict[str, Any]) -> str:
        try:
            record = self._resolver.resolve(DealView.model_validate(normalize_deal_payload(payload)))
        except ValidationError as exc:
            logger.warning("push.rejected", extra={"dataset": self.dataset, "operation": "insert", "error": str(exc)})
            return "rejected"

        outcome = "applied"

        def _insert(items: DealSequence | None) -> DealSequence | None:
            nonlocal outcome
            if items is None:
                outcome = "skipped"
                return None
            if contains(items, record.id):
                outcome = "ignored"
                return items
            remaining = tuple(item for item in items if not self._is_placeholder_for(item, record))
            return (*remaining, record)

        self._cache.write(_insert)
        return outcome

    def _apply_update(self, payload: dict[str, Any]) -> str:
        changes = normalize_deal_payload(payload)
        record_id = changes.pop("id", None)
        if not record_id:
            return "rejected"

        outcome = "applied"

        def _merge(items: DealSequence | None) -> DealSequence | None:
            nonlocal outcome
            if items is None:
                outcome = "skipped"
                return None
            current = next((item for item in items if item.id == record_id), None)
            if current is None:
                inserted = self._resolver.resolve(DealView.model_validate({**changes, "id": record_id}))
                return (*items, inserted)
            merged = apply_changes(current, changes)
            if REFERENCE_FIELDS & changes.keys():
                merged = self._resolver.resolve(merged)
            return replace_record(items, merged)

        try:
            self._cache.write(_merge)
        except ValidationError as exc:
            logger.warning(
                "push.rejected",
                extra={"dataset": self.dataset, "operation": "update", "item_id": record_id, "error": str(exc)},
            )
            return "rejected"
        return outcome

    def _apply_delete(self, record_id: str) -> str:
        outcome = "applied"

        def _remove(items: DealSequence | None) -> DealSequence | None:
            nonlocal outcome
            if items is None:
                outcome = "skipped"
                return None
            if not contains(items, record_id):
                outcome = "skipped"
                return items
            return remove_record(items, record_id)

        self._cache.write(_remove)
        return outcome

    def _is_placeholder_for(self, item: DealView, record: DealView) -> bool:
        return (
            item.id.startswith(self._temp_id_prefix)
            and item.title == record.title
            and item.pipeline_id == record.pipeline_id
        )

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from dealflow.core.config import get_settings
from dealflow.core.database import Base
from dealflow.crm.errors import RemoteWriteError
from dealflow.crm.models import Activity, Company, Contact, Deal, LifecycleStage, Pipeline, PipelineStage, utcnow
from dealflow.crm.schemas import ChangeNotification
from dealflow.realtime.channel import PushChannel


logger = logging.getLogger("dealflow.crm.repositories")

T = TypeVar("T")


class SqlCollection:
    """Remote collection backed by one ORM model.

    Session work runs in a worker thread so the event loop keeps serving other
    coroutines while a write is in flight. Every committed write is announced
    on the push channel: inserts carry the full row, updates only the changed
    columns plus ``id`` and ``updated_at``, deletes only the id.
    """

    model: type[Base]
    entity: str

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        channel: PushChannel | None = None,
        dataset: str | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._channel = channel
        self._lock = lock or asyncio.Lock()
        self.dataset = dataset or self.entity
        self._columns = [column.key for column in self.model.__table__.columns]

    def _order_by(self) -> Any:
        return self.model.created_at.desc()

    async def get_all(self) -> list[dict[str, Any]]:
        return await self._run(self._get_all)

    async def get(self, record_id: str) -> dict[str, Any] | None:
        return await self._run(self._get, record_id)

    async def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self._run(self._create, payload)
        self._notify(ChangeNotification(operation="insert", dataset=self.dataset, record=result))
        return result

    async def update(self, record_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        result, changed = await self._run(self._update, record_id, partial)
        delta = {"id": record_id, **{key: result[key] for key in changed}}
        self._notify(ChangeNotification(operation="update", dataset=self.dataset, record=delta))
        return result

    async def delete(self, record_id: str) -> None:
        await self._run(self._delete, record_id)
        self._notify(ChangeNotification(operation="delete", dataset=self.dataset, record_id=record_id))

    async def _run(self, work: Callable[..., T], *args: Any) -> T:
        # Collections of one store share a lock: in-memory SQLite hands every session the same connection.
        async with self._lock:
            return await asyncio.to_thread(work, *args)

    def _get_all(self) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            rows = session.scalars(select(self.model).order_by(self._order_by())).all()
            return [self._to_payload(row) for row in rows]

    def _get(self, record_id: str) -> dict[str, Any] | None:
        with self._session_factory() as session:
            row = session.get(self.model, record_id)
            return self._to_payload(row) if row is not None else None

    def _create(self, payload: dict[str, Any]) -> dict[str, Any]:
        with self._session_factory() as session:
            row = self._build_row(session, payload)
            session.add(row)
            self._commit(session, "create")
            return self._to_payload(row)

    def _update(self, record_id: str, partial: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        with self._session_factory() as session:
            row = session.get(self.model, record_id)
            if row is None:
                raise RemoteWriteError(self.entity, "update", "not_found", record_id)
            changed: list[str] = []
            for key, value in self._writable(partial).items():
                if key == "id" or getattr(row, key) == value:
                    continue
                setattr(row, key, value)
                changed.append(key)
            if "updated_at" in self._columns:
                row.updated_at = utcnow()
                changed.append("updated_at")
            self._commit(session, "update")
            return self._to_payload(row), changed

    def _delete(self, record_id: str) -> None:
        with self._session_factory() as session:
            row = session.get(self.model, record_id)
            if row is None:
                raise RemoteWriteError(self.entity, "delete", "not_found", record_id)
            session.delete(row)
            self._commit(session, "delete")

    def _build_row(self, session: Session, payload: dict[str, Any]) -> Base:
        values = self._writable(payload)
        if values.get("id") is None:
            values.pop("id", None)
        return self.model(**values)

    def _writable(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in payload.items() if key in self._columns}

    def _commit(self, session: Session, operation: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.warning(
                "remote.rejected",
                extra={"dataset": self.dataset, "operation": operation, "error": str(exc.orig)},
            )
            raise RemoteWriteError(self.entity, operation, "conflict", str(exc.orig)) from exc

    def _to_payload(self, row: Base) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in self._columns:
            value = getattr(row, key)
            if isinstance(value, Decimal):
                value = float(value)
            elif isinstance(value, datetime) and value.tzinfo is None:
                # SQLite drops the offset of timezone-aware columns.
                value = value.replace(tzinfo=timezone.utc)
            payload[key] = value
        return payload

    def _notify(self, notification: ChangeNotification) -> None:
        if self._channel is not None:
            self._channel.publish(notification)


class DealCollection(SqlCollection):
    model = Deal
    entity = "deal"


class ContactCollection(SqlCollection):
    model = Contact
    entity = "contact"


class CompanyCollection(SqlCollection):
    model = Company
    entity = "company"


class ActivityCollection(SqlCollection):
    model = Activity
    entity = "activity"


class LifecycleStageCollection(SqlCollection):
    model = LifecycleStage
    entity = "lifecycle_stage"

    def _order_by(self) -> Any:
        return LifecycleStage.position.asc()


class PipelineCollection(SqlCollection):
    """Pipelines are read and created together with their ordered stages."""

    model = Pipeline
    entity = "pipeline"

    def _order_by(self) -> Any:
        return Pipeline.created_at.asc()

    def _build_row(self, session: Session, payload: dict[str, Any]) -> Base:
        row = super()._build_row(session, payload)
        for index, stage in enumerate(payload.get("stages") or []):
            values = {
                "label": stage["label"],
                "position": stage.get("position", index),
                "linked_lifecycle_stage": stage.get("linked_lifecycle_stage"),
            }
            if stage.get("id"):
                values["id"] = stage["id"]
            row.stages.append(PipelineStage(**values))
        return row

    def _to_payload(self, row: Base) -> dict[str, Any]:
        payload = super()._to_payload(row)
        payload["stages"] = [
            {
                "id": stage.id,
                "label": stage.label,
                "position": stage.position,
                "linked_lifecycle_stage": stage.linked_lifecycle_stage,
            }
            for stage in row.stages
        ]
        return payload


class SqlRemoteStore:
    def __init__(self, session_factory: sessionmaker[Session], channel: PushChannel | None = None) -> None:
        settings = get_settings()
        lock = asyncio.Lock()
        self.deals = DealCollection(session_factory, channel, settings.deals_dataset, lock)
        self.pipelines = PipelineCollection(session_factory, channel, "pipelines", lock)
        self.contacts = ContactCollection(session_factory, channel, "contacts", lock)
        self.companies = CompanyCollection(session_factory, channel, "companies", lock)
        self.activities = ActivityCollection(session_factory, channel, "activities", lock)
        self.lifecycle_stages = LifecycleStageCollection(session_factory, channel, "lifecycle_stages", lock)

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio

from dealflow.cache.store import CacheRegistry
from dealflow.core.config import get_settings
from dealflow.core.events import InProcessEventBus
from dealflow.crm.errors import RemoteWriteError
from dealflow.crm.service import DealsClient
from dealflow.realtime.channel import InProcessPushChannel


PIPELINE_ID = "pipeline-sales"
STAGE_NEW = "stage-new"
STAGE_WON = "stage-won"
STAGE_LOST = "stage-lost"
DEAL_ID = "deal-x"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeCollection:
    """In-memory remote collection whose writes can be held open or rejected."""

    def __init__(self, entity: str, records: list[dict[str, Any]] | None = None) -> None:
        self.entity = entity
        self.records: dict[str, dict[str, Any]] = {record["id"]: dict(record) for record in records or []}
        self.calls: list[tuple[str, Any]] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self.next_ids: list[str] = []

    def hold(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate

    async def _settle(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def get_all(self) -> list[dict[str, Any]]:
        return [dict(record) for record in self.records.values()]

    async def get(self, record_id: str) -> dict[str, Any] | None:
        record = self.records.get(record_id)
        return dict(record) if record is not None else None

    async def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create", payload))
        await self._settle()
        now = _now()
        record_id = payload.get("id") or (self.next_ids.pop(0) if self.next_ids else str(uuid.uuid4()))
        record = {**payload, "id": record_id, "created_at": now, "updated_at": now}
        self.records[record["id"]] = record
        return dict(record)

    async def update(self, record_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", (record_id, partial)))
        await self._settle()
        if record_id not in self.records:
            raise RemoteWriteError(self.entity, "update", "not_found", record_id)
        self.records[record_id].update({**partial, "updated_at": _now()})
        return dict(self.records[record_id])

    async def delete(self, record_id: str) -> None:
        self.calls.append(("delete", record_id))
        await self._settle()
        if self.records.pop(record_id, None) is None:
            raise RemoteWriteError(self.entity, "delete", "not_found", record_id)

    def created(self) -> list[dict[str, Any]]:
        return [payload for operation, payload in self.calls if operation == "create"]


class FakeRemoteStore:
    def __init__(self) -> None:
        self.deals = FakeCollection("deal")
        self.pipelines = FakeCollection("pipeline")
        self.contacts = FakeCollection("contact")
        self.companies = FakeCollection("company")
        self.activities = FakeCollection("activity")
        self.lifecycle_stages = FakeCollection("lifecycle_stage")


def sales_pipeline(**overrides: Any) -> dict[str, Any]:
    pipeline = {
        "id": PIPELINE_ID,
        "name": "Sales",
        "won_stage_id": STAGE_WON,
        "lost_stage_id": STAGE_LOST,
        "linked_lifecycle_stage": None,
        "next_pipeline_id": None,
        "stages": [
            {"id": STAGE_NEW, "label": "New", "position": 0},
            {"id": STAGE_WON, "label": "Won", "position": 1},
            {"id": STAGE_LOST, "label": "Lost", "position": 2},
        ],
    }
    pipeline.update(overrides)
    return pipeline


def open_deal(**overrides: Any) -> dict[str, Any]:
    deal = {
        "id": DEAL_ID,
        "pipeline_id": PIPELINE_ID,
        "stage_id": STAGE_NEW,
        "title": "Acme renewal",
        "value": 500.0,
        "contact_id": "contact-1",
        "company_id": "company-1",
        "is_won": False,
        "is_lost": False,
        "closed_at": None,
        "created_at": _now(),
        "updated_at": _now(),
    }
    deal.update(overrides)
    return deal


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def remote() -> FakeRemoteStore:
    store = FakeRemoteStore()
    store.pipelines.records[PIPELINE_ID] = sales_pipeline()
    store.deals.records[DEAL_ID] = open_deal()
    store.contacts.records["contact-1"] = {"id": "contact-1", "name": "Ada Lovelace", "email": "ada@example.com"}
    store.companies.records["company-1"] = {"id": "company-1", "name": "Acme"}
    store.lifecycle_stages.records["CUSTOMER"] = {"id": "CUSTOMER", "name": "Customer", "position": 3}
    return store


@pytest.fixture()
def channel() -> InProcessPushChannel:
    return InProcessPushChannel(InProcessEventBus())


@pytest_asyncio.fixture
async def deals_client(remote: FakeRemoteStore, channel: InProcessPushChannel) -> AsyncGenerator[DealsClient, None]:
    client = DealsClient(remote, channel, registry=CacheRegistry())
    await client.load()
    client.start()
    yield client
    await client.stop()

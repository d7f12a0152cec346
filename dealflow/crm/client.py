from __future__ import annotations

from typing import Any, Protocol


class RemoteCollection(Protocol):
    entity: str

    async def get_all(self) -> list[dict[str, Any]]: ...

    async def get(self, record_id: str) -> dict[str, Any] | None: ...

    async def create(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, record_id: str, partial: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, record_id: str) -> None: ...


class RemoteStore(Protocol):
    deals: RemoteCollection
    pipelines: RemoteCollection
    contacts: RemoteCollection
    companies: RemoteCollection
    activities: RemoteCollection
    lifecycle_stages: RemoteCollection

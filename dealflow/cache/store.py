from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from dealflow.crm.schemas import DealView


logger = logging.getLogger("dealflow.cache")

DealSequence = tuple[DealView, ...]
Updater = Callable[[DealSequence | None], Iterable[DealView] | None]


class ReadModelCache:
    """Single authoritative in-memory sequence of view records for one dataset.

    All writes go through ``write`` with a pure updater over the previous
    sequence; ``None`` means the dataset has not been loaded yet.
    """

    def __init__(self, dataset_key: str) -> None:
        self.dataset_key = dataset_key
        self._items: DealSequence | None = None
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_loaded(self) -> bool:
        return self._items is not None

    def read(self) -> DealSequence | None:
        return self._items

    def write(self, updater: Updater) -> DealSequence | None:
        result = updater(self._items)
        items = tuple(result) if result is not None else None
        self._items = items
        self._version += 1
        return items

    def load(self, records: Iterable[DealView]) -> DealSequence:
        items = self.write(lambda _previous: tuple(records))
        logger.debug("cache.loaded", extra={"dataset": self.dataset_key, "operation": "load"})
        return items or ()

    def get(self, record_id: str) -> DealView | None:
        if self._items is None:
            return None
        return next((item for item in self._items if item.id == record_id), None)

    def index_of(self, record_id: str) -> int | None:
        return index_of(self._items, record_id)


class CacheRegistry:
    def __init__(self) -> None:
        self._caches: dict[str, ReadModelCache] = {}

    def get(self, dataset_key: str) -> ReadModelCache:
        cache = self._caches.get(dataset_key)
        if cache is None:
            cache = ReadModelCache(dataset_key)
            self._caches[dataset_key] = cache
        return cache

    def keys(self) -> list[str]:
        return sorted(self._caches)


cache_registry = CacheRegistry()


def index_of(items: DealSequence | None, record_id: str) -> int | None:
    if items is None:
        return None
    for index, item in enumerate(items):
        if item.id == record_id:
            return index
    return None


def contains(items: DealSequence | None, record_id: str) -> bool:
    return index_of(items, record_id) is not None


def replace_record(items: DealSequence, record: DealView) -> DealSequence:
    return tuple(record if item.id == record.id else item for item in items)


def remove_record(items: DealSequence, record_id: str) -> DealSequence:
    return tuple(item for item in items if item.id != record_id)


def insert_at(items: DealSequence, index: int, record: DealView) -> DealSequence:
    position = max(0, min(index, len(items)))
    return (*items[:position], record, *items[position:])

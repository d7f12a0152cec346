from __future__ import annotations


class DealflowError(Exception):
    """Base error for read-model cache and remote store failures."""


class RemoteWriteError(DealflowError):
    """Raised when the remote store rejects a write."""

    def __init__(self, entity: str, operation: str, code: str, detail: str | None = None) -> None:
        self.entity = entity
        self.operation = operation
        self.code = code
        self.detail = detail
        message = f"Remote {operation} on '{entity}' rejected: {code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ItemNotFoundError(DealflowError):
    """Raised when a mutation targets an id that is not in the cache."""

    def __init__(self, dataset: str, item_id: str) -> None:
        self.dataset = dataset
        self.item_id = item_id
        super().__init__(f"Item '{item_id}' not found in dataset '{dataset}'")


from dealflow.cache.display import DisplayResolver
from dealflow.cache.store import CacheRegistry, DealSequence, ReadModelCache, cache_registry

__all__ = [
    "CacheRegistry",
    "DealSequence",
    "DisplayResolver",
    "ReadModelCache",
    "cache_registry",
]

"""Object caches used by the session manager."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Tuple

from .config import GovflowConfig
from .contracts import ObjectKind

CacheKey = Tuple[ObjectKind, str]


class ObjectCache(Protocol):
    """Overwrite-on-miss map of resolved platform objects."""

    enabled: bool

    def get(self, key: CacheKey) -> Optional[Any]:
        """Return the cached object or ``None``."""

    def put(self, key: CacheKey, value: Any) -> None:
        """Store ``value`` under ``key``."""

    def clear(self) -> None:
        """Drop every entry."""

    def __len__(self) -> int:
        ...


class DictObjectCache:
    """Plain dictionary cache; no eviction besides :meth:`clear`."""

    enabled = True

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, Any] = {}

    def get(self, key: CacheKey) -> Optional[Any]:
        return self._entries.get(key)

    def put(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = value

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class NullObjectCache:
    """Cache that never stores anything."""

    enabled = False

    def get(self, key: CacheKey) -> Optional[Any]:
        return None

    def put(self, key: CacheKey, value: Any) -> None:
        pass

    def clear(self) -> None:
        pass

    def __len__(self) -> int:
        return 0


def make_cache(config: GovflowConfig) -> ObjectCache:
    """Select the cache implementation allowed by the environment."""
    if config.caching_enabled():
        return DictObjectCache()
    return NullObjectCache()

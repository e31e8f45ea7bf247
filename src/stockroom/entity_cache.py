"""Identity-preserving memoization of loaded entities.

Each repository owns one :class:`EntityCache`. Its lifecycle is simple:
entries are populated on first read, invalidated on every write that goes
through to storage, and dropped wholesale only when a new runtime context is
built. The cache does no locking and assumes a single thread of control.
"""

from __future__ import annotations

from typing import Callable, Dict, Generic, Iterator, Optional, TypeVar

from . import log


T = TypeVar("T")


class EntityCache(Generic[T]):
    """Map numeric ids to the single live instance loaded for that id."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Dict[int, T] = {}

    def get(self, entity_id: int) -> Optional[T]:
        """Return the cached instance, or ``None`` on a miss."""

        entity = self._entries.get(entity_id)
        log.debug("Cache %s %s for id %s", self.name, "hit" if entity is not None else "miss", entity_id)
        return entity

    def put(self, entity_id: int, entity: T) -> T:
        """Insert or overwrite the entry for ``entity_id`` and return ``entity``."""

        self._entries[entity_id] = entity
        return entity

    def invalidate(self, entity_id: int) -> None:
        """Forget ``entity_id`` so the next read reloads it. Unknown ids are ignored."""

        if self._entries.pop(entity_id, None) is not None:
            log.debug("Invalidated %s cache entry %s", self.name, entity_id)

    def get_or_load(self, entity_id: int, loader: Callable[[int], T]) -> T:
        """Return the cached instance or load, cache, and return a fresh one."""

        entity = self.get(entity_id)
        if entity is None:
            entity = self.put(entity_id, loader(entity_id))
        return entity

    def clear(self) -> None:
        log.debug("Clearing %s cache (%d entries)", self.name, len(self._entries))
        self._entries.clear()

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._entries))

"""Local repository contract and an in-memory implementation.

Business subsystems own their entities. The engine only reads and writes
opaque payloads with a logical timestamp through this interface.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from .timeutils import as_utc


@dataclass(frozen=True)
class VersionedValue:
    """An entity payload and its logical version.

    Deletes are kept as tombstones (deleted=True, payload None) so that
    their timestamp still takes part in conflict detection.
    """

    payload: Optional[dict[str, Any]]
    timestamp: datetime
    deleted: bool = False


@runtime_checkable
class LocalRepository(Protocol):
    """Storage for one entity type."""

    def get(self, entity_id: str) -> Optional[VersionedValue]:
        ...

    def put(self, entity_id: str, payload: dict[str, Any], timestamp: datetime) -> None:
        ...

    def delete(self, entity_id: str, timestamp: datetime) -> None:
        ...


class InMemoryRepository:
    """Thread-safe dict-backed repository."""

    def __init__(self, entity_type: str = ""):
        self.entity_type = entity_type
        self._values: dict[str, VersionedValue] = {}
        self._lock = threading.Lock()
        self.writes = 0

    def get(self, entity_id: str) -> Optional[VersionedValue]:
        with self._lock:
            return self._values.get(str(entity_id))

    def put(self, entity_id: str, payload: dict[str, Any], timestamp: datetime) -> None:
        with self._lock:
            self._values[str(entity_id)] = VersionedValue(dict(payload), as_utc(timestamp))
            self.writes += 1

    def delete(self, entity_id: str, timestamp: datetime) -> None:
        with self._lock:
            self._values[str(entity_id)] = VersionedValue(None, as_utc(timestamp), deleted=True)
            self.writes += 1

    def ids(self) -> list[str]:
        """Ids of live (non-deleted) entities."""
        with self._lock:
            return sorted(k for k, v in self._values.items() if not v.deleted)

    def __len__(self) -> int:
        return len(self.ids())


class RepositoryRegistry:
    """Maps entity types to their local repositories."""

    def __init__(self, repositories: Optional[dict[str, LocalRepository]] = None):
        self._repositories: dict[str, LocalRepository] = dict(repositories or {})

    @classmethod
    def in_memory(cls, entity_types: Iterable[str]) -> "RepositoryRegistry":
        """Registry with a fresh InMemoryRepository per entity type."""
        return cls({t: InMemoryRepository(t) for t in entity_types})

    def register(self, entity_type: str, repository: LocalRepository) -> None:
        self._repositories[entity_type] = repository

    def get(self, entity_type: str) -> Optional[LocalRepository]:
        return self._repositories.get(entity_type)

    @property
    def entity_types(self) -> list[str]:
        return sorted(self._repositories)

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._repositories

    def __getitem__(self, entity_type: str) -> LocalRepository:
        return self._repositories[entity_type]

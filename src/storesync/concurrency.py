"""Cooperative cancellation and keyed locks shared by the engine components."""

import threading
from contextlib import contextmanager
from typing import Generator, Hashable, Optional

from .errors import SyncCancelledError


class CancellationToken:
    """Cooperative cancellation flag, checked between records."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "sync cycle") -> None:
        if self.is_cancelled():
            raise SyncCancelledError(f"{what} cancelled")


def raise_if_cancelled(token: Optional[CancellationToken], what: str = "sync cycle") -> None:
    if token is not None:
        token.raise_if_cancelled(what)


class KeyedLocks:
    """One re-entrant lock per key, dropped when its last holder leaves."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: dict[Hashable, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class EntityLockRegistry(KeyedLocks):
    """Per (entity type, entity id) locks.

    Lets HQ apply batches from many stores concurrently while two batches
    never write the same entity at the same time.
    """

    @contextmanager
    def entity(self, entity_type: str, entity_id: str) -> Generator[None, None, None]:
        with self.hold((entity_type, str(entity_id))):
            yield

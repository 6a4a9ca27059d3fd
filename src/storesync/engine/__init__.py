"""Sync engine, worker pool and scheduler."""

from ..concurrency import CancellationToken, EntityLockRegistry
from .engine import SyncCycleResult, SyncEngine
from .workers import StoreWorkerPool, SyncScheduler

__all__ = [
    "CancellationToken",
    "EntityLockRegistry",
    "StoreWorkerPool",
    "SyncCycleResult",
    "SyncEngine",
    "SyncScheduler",
]

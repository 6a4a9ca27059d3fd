"""Background execution of sync cycles.

StoreWorkerPool runs cycles for many stores concurrently, at most one per
store. SyncScheduler ticks in a daemon thread and submits the stores whose
interval has elapsed.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Optional

from ..concurrency import CancellationToken
from .engine import SyncCycleResult, SyncEngine

logger = logging.getLogger(__name__)


class StoreWorkerPool:
    """Bounded thread pool with per-store exclusivity."""

    def __init__(self, engine: SyncEngine, max_workers: Optional[int] = None):
        self.engine = engine
        self.max_workers = max_workers or engine.config.worker_count
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="storesync-worker"
        )
        self._active: dict[int, Future] = {}
        self._tokens: dict[int, CancellationToken] = {}
        self._lock = threading.Lock()

    def submit(
        self, store_id: int, now: Optional[datetime] = None
    ) -> Optional["Future[SyncCycleResult]"]:
        """Start a sync cycle for a store.

        Returns:
            Future of the cycle, or None if the store already has one running
        """
        with self._lock:
            running = self._active.get(store_id)
            if running is not None and not running.done():
                logger.debug("Store %s already syncing, not submitting", store_id)
                return None
            token = CancellationToken()
            future = self._executor.submit(self.engine.sync_store, store_id, token, now)
            self._active[store_id] = future
            self._tokens[store_id] = token

        future.add_done_callback(partial(self._finished, store_id))
        return future

    def run_due(self, now: Optional[datetime] = None) -> list[Future]:
        """Submit every store that needs a sync. Returns the new futures."""
        futures = []
        for store_id in self.engine.stores_needing_sync(now):
            future = self.submit(store_id, now)
            if future is not None:
                futures.append(future)
        return futures

    def is_running(self, store_id: int) -> bool:
        with self._lock:
            future = self._active.get(store_id)
            return future is not None and not future.done()

    def cancel(self, store_id: int) -> bool:
        """Ask a running cycle to stop. Returns False if none is running."""
        with self._lock:
            future = self._active.get(store_id)
            token = self._tokens.get(store_id)
            if future is None or future.done() or token is None:
                return False
            token.cancel()
        logger.info("Cancellation requested for store %s", store_id)
        return True

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._lock:
                for token in self._tokens.values():
                    token.cancel()
        self._executor.shutdown(wait=wait)

    def _finished(self, store_id: int, future: Future) -> None:
        with self._lock:
            if self._active.get(store_id) is future:
                del self._active[store_id]
                self._tokens.pop(store_id, None)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Sync cycle for store %s failed: %s", store_id, exc)


class SyncScheduler:
    """Periodically submits stores that are due for a sync."""

    def __init__(self, pool: StoreWorkerPool, interval: float = 5.0):
        self.pool = pool
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def engine(self) -> SyncEngine:
        return self.pool.engine

    def start(self) -> None:
        """Start ticking. Stores with auto_sync_on_startup run immediately."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        for config in self.engine.rules.list_configurations():
            if config.is_enabled and config.auto_sync_on_startup:
                self.pool.submit(config.store_id)

        self._thread = threading.Thread(
            target=self._run, name="storesync-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Sync scheduler started (every %ss)", self.interval)

    def tick(self, now: Optional[datetime] = None) -> list[Future]:
        """One scheduling pass: release stuck claims, then run due stores."""
        self.engine.maintenance(now)
        return self.pool.run_due(now)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync scheduler stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

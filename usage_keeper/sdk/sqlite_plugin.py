"""
SQLite usage plugin.

Bridges host usage events to the durable store. Writes are dispatched to
a background thread pool so the request path never waits on disk I/O,
and failures are logged, never raised back at the host.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from ..config.loader import statistics_enabled
from ..core.events import RequestContext, UsageEvent, build_request_detail
from ..core.merge import MergeResult
from ..core.statistics import RequestStatistics
from ..storage.models import RequestDetail
from ..storage.repository import SQLiteStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 10000


class SQLitePlugin:
    """Usage plugin that persists every usage event to SQLite.

    Each event gets at most one persistence attempt. The write runs on the
    plugin's own worker threads, so it is not cut short when the request
    that produced the event completes; completion order across events is
    not guaranteed. At most max_pending writes wait at once; events beyond
    that are dropped with a warning rather than queued without bound.
    """

    def __init__(
        self,
        store: Optional[SQLiteStore],
        stats: Optional[RequestStatistics] = None,
        max_workers: int = 1,
        max_pending: int = DEFAULT_MAX_PENDING
    ):
        """Initialize the plugin.

        Args:
            store: Store to persist records to; None disables persistence
            stats: In-memory statistics that persisted history is merged into
            max_workers: Background writer threads
            max_pending: Writes allowed to wait before new events are dropped
        """
        self.store = store
        self.stats = stats
        self._max_workers = max_workers
        self._pending = threading.BoundedSemaphore(max_pending)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._shutdown = False
        self._lock = threading.Lock()

    def handle_usage(self, ctx: Optional[RequestContext], event: UsageEvent) -> None:
        """Schedule persistence of a usage event; returns immediately."""
        if self.store is None or not statistics_enabled():
            return

        try:
            api_key, model, detail = build_request_detail(ctx, event)
        except (TypeError, ValueError) as e:
            logger.error(f"Dropping malformed usage event: {e}")
            return

        with self._lock:
            if self._shutdown:
                logger.debug("Usage plugin is shut down; dropping usage record")
                return
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="usage-sqlite",
                )
            if not self._pending.acquire(blocking=False):
                logger.warning(
                    "Usage write queue is full; dropping usage record",
                    extra={"api_key": api_key, "model": model},
                )
                return
            try:
                self._executor.submit(self._persist, api_key, model, detail)
            except RuntimeError as e:
                # The executor refuses work once the interpreter is exiting.
                self._pending.release()
                logger.debug(f"Usage writer unavailable; dropping usage record: {e}")

    def _persist(self, api_key: str, model: str, detail: RequestDetail) -> None:
        try:
            self.store.insert_record(api_key, model, detail)
        except Exception:
            logger.exception(
                "Failed to persist usage record to SQLite",
                extra={"api_key": api_key, "model": model},
            )
        finally:
            self._pending.release()

    def load_and_merge(self, timeout: Optional[float] = None) -> Optional[MergeResult]:
        """Restore persisted history into the in-memory statistics.

        Meant to run once at startup, before traffic is accepted.

        Args:
            timeout: Optional deadline in seconds for the load

        Returns:
            MergeResult, or None when the store or statistics are absent

        Raises:
            StoreError: If the store is not initialized
            ReadError: If loading fails
        """
        if self.store is None or self.stats is None:
            return None

        snapshot = self.store.load_all(timeout=timeout)
        result = self.stats.merge_snapshot(snapshot)
        logger.info(
            f"Restored usage statistics from SQLite: {result.added} added, {result.skipped} skipped",
            extra={"added": result.added, "skipped": result.skipped},
        )
        return result

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events and, if wait, drain pending writes."""
        with self._lock:
            self._shutdown = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

# ABOUTME: Debounce buffer and bounded change queue for the sync pipeline
# ABOUTME: Merges per-resource changes and flushes deduplicated batches on a fixed window

"""
Debounce buffer: many changes in, few batches out.

=============================================================================
HOW CHANGES FLOW
=============================================================================

    informer thread --offer()--> ChangeQueue --get()--> DebounceBuffer.run()
                                  (bounded)                 |
                                                            v
                                                   record() into pending map
                                                            |
                                              every window: flush()
                                                            |
                                                            v
                                                 SyncClient.sync_resources()

Informer callbacks run on plain threads and must never wait for the MCP
endpoint, so they hand changes to the ChangeQueue with a non-blocking
offer(). When the queue is full the change is dropped and counted; the next
periodic resync repairs the gap.

=============================================================================
MERGE RULES (per resource ID, evaluated under the lock)
=============================================================================

    pending        incoming       result
    -------        --------       ------
    (none)         upsert         upsert
    (none)         delete         delete
    upsert         upsert         newer upsert       (last state wins)
    upsert         delete         delete             (delete wins)
    delete         delete         delete
    delete         upsert         delete             (no resurrection)

A change with an empty ID is dropped and counted. None is ignored.

=============================================================================
FAILURE HANDLING
=============================================================================

    success          -> batch discarded, metrics updated
    partial failure  -> only the IDs MCP reported as failed are recorded again
    any other error  -> the whole batch is recorded again

A requeued change only fills an empty slot: anything recorded for the same
ID while the HTTP call was in flight is newer and stays.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from resource_sync.config import DEFAULT_DEBOUNCE_WINDOW_SECONDS
from resource_sync.utils.client import PartialSyncError
from resource_sync.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from resource_sync.models import ResourceChange
    from resource_sync.utils.client import SyncClient

logger = structlog.get_logger(__name__)


# =============================================================================
# CHANGE QUEUE
# =============================================================================


class QueueClosed(Exception):
    """The queue was closed and every queued change has been consumed."""


class ChangeQueue:
    """
    Bounded mailbox between informer threads and the buffer task.

    offer() may be called from any thread and never blocks. get() must be
    awaited on the event loop the queue was created on.
    """

    def __init__(self, maxsize: int, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._maxsize = max(1, maxsize)
        self._loop = loop or asyncio.get_running_loop()
        self._items: deque[ResourceChange] = deque()
        self._lock = threading.Lock()
        self._ready = asyncio.Event()
        self._closed = False
        self._dropped = 0

    @property
    def dropped(self) -> int:
        """Changes rejected because the queue was full or closed."""
        with self._lock:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def qsize(self) -> int:
        with self._lock:
            return len(self._items)

    def offer(self, change: ResourceChange) -> bool:
        """Enqueue without blocking; False means the change was dropped."""
        with self._lock:
            if self._closed or len(self._items) >= self._maxsize:
                self._dropped += 1
                return False
            self._items.append(change)
        self._wake()
        return True

    async def get(self) -> ResourceChange:
        """
        Wait for the next change.

        Raises:
            QueueClosed: The queue is closed and empty
        """
        while True:
            with self._lock:
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    raise QueueClosed
                self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        """Reject further offers; get() raises once the backlog is drained."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._wake()

    def _wake(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._ready.set)
        except RuntimeError:
            # Event loop already closed; nobody is left to consume.
            logger.debug("Change queue loop is closed")


# =============================================================================
# METRICS
# =============================================================================


@dataclass
class DebounceBufferMetrics:
    """Cumulative counters of one buffer, returned as a snapshot."""

    total_upserts: int = 0
    total_deletes: int = 0
    total_flushes: int = 0
    total_dropped: int = 0
    pending_changes: int = 0
    last_flush_time: datetime | None = None
    last_flush_count: int = 0
    sync_errors: int = 0
    last_error: str | None = None
    last_error_time: datetime | None = None


# =============================================================================
# DEBOUNCE BUFFER
# =============================================================================


class DebounceBuffer:
    """
    Collects changes per resource ID and ships them in batches.

    USAGE:
    ------
        queue = ChangeQueue(maxsize=10000)
        buffer = DebounceBuffer(window=10, client=sync_client, queue=queue)
        task = asyncio.create_task(buffer.run())

        queue.offer(change)          # from any thread
        buffer.record(change)        # or directly, also thread-safe
    """

    def __init__(
        self,
        window: float = DEFAULT_DEBOUNCE_WINDOW_SECONDS,
        client: SyncClient | None = None,
        queue: ChangeQueue | None = None,
    ) -> None:
        """
        Initialize buffer.

        Args:
            window: Flush interval in seconds (non-positive means 10)
            client: Sync client, None to discard batches
            queue: Intake queue consumed by run()
        """
        self._window = window if window > 0 else DEFAULT_DEBOUNCE_WINDOW_SECONDS
        self._client = client
        self._queue = queue
        self._pending: dict[str, ResourceChange] = {}
        self._lock = threading.Lock()
        self._metrics = DebounceBufferMetrics()

    @property
    def window(self) -> float:
        return self._window

    def set_client(self, client: SyncClient | None) -> None:
        """Attach (or detach) the sync client used by flush()."""
        with self._lock:
            self._client = client

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_metrics(self) -> DebounceBufferMetrics:
        """Snapshot of the metrics, including drops at the intake queue."""
        with self._lock:
            metrics = replace(self._metrics, pending_changes=len(self._pending))
        if self._queue is not None:
            metrics.total_dropped += self._queue.dropped
        return metrics

    # =========================================================================
    # RECORD
    # =========================================================================

    def record(self, change: ResourceChange | None) -> None:
        """Merge one change into the pending map (see module docstring)."""
        if change is None:
            return

        with self._lock:
            if not change.id:
                self._metrics.total_dropped += 1
                return

            existing = self._pending.get(change.id)
            if existing is not None and existing.is_delete and not change.is_delete:
                return
            self._pending[change.id] = change

    # =========================================================================
    # FLUSH
    # =========================================================================

    async def flush(self) -> None:
        """Send everything pending as one batch."""
        with self._lock:
            if not self._pending:
                return
            batch, self._pending = self._pending, {}
            client = self._client

        if client is None:
            logger.debug("No sync client attached, discarding batch", count=len(batch))
            return

        upserts = [c.data for c in batch.values() if not c.is_delete and c.data is not None]
        deletes = [c.id for c in batch.values() if c.is_delete]

        new_correlation_id()
        log = logger.bind(upserts=len(upserts), deletes=len(deletes))
        log.info("Flushing changes")

        try:
            response = await client.sync_resources(upserts, deletes)
        except PartialSyncError as e:
            failed = {failure.id for failure in e.response.get_failures()}
            self._requeue({k: v for k, v in batch.items() if k in failed})
            details = e.response.details or {}
            self._record_flush(
                upserted=int(details.get("upserted", 0) or 0),
                deleted=int(details.get("deleted", 0) or 0),
            )
            self._record_error(e)
            log.warning("Partial sync failure, requeued failed items", failed=len(failed))
            return
        except asyncio.CancelledError:
            self._requeue(batch)
            raise
        except Exception as e:
            self._requeue(batch)
            self._record_error(e)
            log.warning("Sync failed, batch requeued", error=str(e))
            return

        self._record_flush(upserted=len(upserts), deleted=len(deletes))
        self._clear_error()
        log.info("Flush completed", upserted=response.upserted, deleted=response.deleted)

    def _requeue(self, batch: dict[str, ResourceChange]) -> None:
        with self._lock:
            for resource_id, change in batch.items():
                self._pending.setdefault(resource_id, change)

    def _record_flush(self, upserted: int, deleted: int) -> None:
        with self._lock:
            self._metrics.total_flushes += 1
            self._metrics.total_upserts += upserted
            self._metrics.total_deletes += deleted
            self._metrics.last_flush_time = datetime.now(UTC)
            self._metrics.last_flush_count = upserted + deleted

    def _clear_error(self) -> None:
        with self._lock:
            self._metrics.last_error = None

    def _record_error(self, error: Exception) -> None:
        with self._lock:
            self._metrics.sync_errors += 1
            self._metrics.last_error = str(error)
            self._metrics.last_error_time = datetime.now(UTC)

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    async def run(self) -> None:
        """
        Consume the intake queue and flush every `window` seconds.

        Returns when the queue is closed and drained. Cancelling the task
        stops it at once without a final flush; call flush() first when the
        pending changes must not be lost.
        """
        if self._queue is None:
            raise RuntimeError("DebounceBuffer.run() requires an intake queue")

        loop = asyncio.get_running_loop()
        next_flush = loop.time() + self._window
        logger.debug("Debounce buffer started", window=self._window)

        while True:
            timeout = next_flush - loop.time()
            if timeout <= 0:
                await self.flush()
                next_flush = loop.time() + self._window
                continue

            try:
                change = await asyncio.wait_for(self._queue.get(), timeout)
            except TimeoutError:
                continue
            except QueueClosed:
                logger.debug("Change queue closed, debounce buffer stopping")
                return
            self.record(change)

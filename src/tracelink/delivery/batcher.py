# src/tracelink/delivery/batcher.py
"""BatchWorker: accumulate payloads and hand them off as batches.

Payloads are queued by enqueue() (non-blocking, any thread) and consumed by
one background thread that groups them into batches. A batch is submitted
when it reaches ``batch_size`` or when ``flush_interval`` seconds have
passed since its first payload arrived, whichever comes first.

Backpressure is DROP: when the bounded queue is full, new payloads are
discarded and counted. Drops are logged in aggregate every _LOG_INTERVAL.

Thread Safety:
    enqueue(), flush() and close() may be called from any thread.
    _dropped is protected by _dropped_lock (written by producer threads).
    The current batch is only touched by the worker thread.
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from typing import Any

import structlog

from tracelink.contracts.results import ProcessedEvent

logger = structlog.get_logger(__name__)


class _FlushRequest:
    """Queue marker asking the worker to submit its partial batch now."""

    __slots__ = ("done",)

    def __init__(self) -> None:
        self.done = threading.Event()


class BatchWorker:
    """Background batching thread in front of a batch submit callable.

    The thread is started lazily on the first enqueue().

    Example:
        worker = BatchWorker(engine.deliver_batch, batch_size=100, flush_interval=5.0)
        worker.enqueue(payload)
        worker.flush()
        worker.close()
    """

    _LOG_INTERVAL = 100

    def __init__(
        self,
        submit: Callable[[list[ProcessedEvent]], Any],
        *,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        max_queue_size: int = 1000,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be > 0, got {flush_interval}")
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be >= 1, got {max_queue_size}")
        self._submit = submit
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._queue: queue.Queue[ProcessedEvent | _FlushRequest | None] = queue.Queue(maxsize=max_queue_size)

        self._dropped = 0
        self._last_logged_drop_count = 0
        self._dropped_lock = threading.Lock()
        self._batches_submitted = 0

        self._shutdown_event = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def dropped_count(self) -> int:
        with self._dropped_lock:
            return self._dropped

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def queue_maxsize(self) -> int:
        return self._queue.maxsize

    @property
    def batches_submitted(self) -> int:
        return self._batches_submitted

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def enqueue(self, payload: ProcessedEvent) -> bool:
        """Queue a payload for batching. Never blocks.

        Returns:
            True if queued, False if dropped (queue full or worker closed)
        """
        if self._shutdown_event.is_set():
            self._record_drop()
            return False
        self._ensure_started()
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            self._record_drop()
            return False
        return True

    def flush(self, timeout: float | None = 30.0) -> bool:
        """Submit everything queued so far, waiting for the worker.

        Returns:
            True if the worker confirmed the flush within ``timeout``
        """
        if not self.running:
            return True
        request = _FlushRequest()
        try:
            self._queue.put(request, timeout=timeout)
        except queue.Full:
            logger.warning("Flush request could not be queued", queue_depth=self._queue.qsize())
            return False
        return request.done.wait(timeout)

    def close(self, timeout: float = 10.0) -> None:
        """Stop accepting payloads, submit what is queued and stop the thread.

        Shutdown Sequence:
        1. Signal shutdown so enqueue() rejects new payloads
        2. Send the sentinel; the worker submits everything ahead of it,
           including its partial batch, then exits
        3. Join the thread
        """
        self._shutdown_event.set()
        if self._thread is None:
            return

        sentinel_sent = False
        for _ in range(self._queue.maxsize + 10):
            try:
                self._queue.put(None, timeout=0.1)
                sentinel_sent = True
                break
            except queue.Full:
                # Worker is stuck or slow; make room by discarding the oldest payload
                try:
                    discarded = self._queue.get_nowait()
                except queue.Empty:
                    continue
                if isinstance(discarded, _FlushRequest):
                    discarded.done.set()
                elif discarded is not None:
                    self._record_drop()

        if not sentinel_sent:
            logger.error("Failed to send shutdown sentinel after drain attempts - batch worker may hang")

        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.error("Batch worker did not exit cleanly within timeout")

    def _ensure_started(self) -> None:
        if self._thread is not None:
            return
        with self._start_lock:
            if self._thread is None:
                ready = threading.Event()
                thread = threading.Thread(
                    target=self._run,
                    args=(ready,),
                    name="tracelink-batch-worker",
                    daemon=False,
                )
                thread.start()
                ready.wait(timeout=5.0)
                self._thread = thread

    def _run(self, ready: threading.Event) -> None:
        ready.set()
        batch: list[ProcessedEvent] = []
        deadline = 0.0

        while True:
            timeout = max(0.0, deadline - time.monotonic()) if batch else None
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                batch = self._submit_batch(batch)
                continue

            if item is None:
                self._submit_batch(batch)
                break
            if isinstance(item, _FlushRequest):
                batch = self._submit_batch(batch)
                item.done.set()
                continue

            batch.append(item)
            if len(batch) == 1:
                deadline = time.monotonic() + self._flush_interval
            if len(batch) >= self._batch_size:
                batch = self._submit_batch(batch)

    def _submit_batch(self, batch: list[ProcessedEvent]) -> list[ProcessedEvent]:
        """Hand a batch to the submit callable; returns a fresh empty batch."""
        if not batch:
            return batch
        try:
            self._submit(batch)
            self._batches_submitted += 1
        except Exception as e:
            # Submission failures must not kill the worker thread
            logger.error("Batch submission failed unexpectedly", batch_size=len(batch), error=str(e))
        return []

    def _record_drop(self) -> None:
        with self._dropped_lock:
            self._dropped += 1
            if self._dropped - self._last_logged_drop_count >= self._LOG_INTERVAL:
                logger.warning(
                    "Delivery buffer full - events dropped",
                    dropped_since_last_log=self._dropped - self._last_logged_drop_count,
                    dropped_total=self._dropped,
                    buffer_size=self._queue.maxsize,
                    hint="Consider increasing event_buffer_size or batch_size",
                )
                self._last_logged_drop_count = self._dropped

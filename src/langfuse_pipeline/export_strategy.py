"""Export strategies: when and how finished spans are handed to the exporter.

Two policies share one small interface (``on_end``, ``force_flush``,
``shutdown``):

BatchExportStrategy
    Finished spans are appended to an ordered pending list. A flush is
    triggered when the list reaches ``flush_at`` entries, every
    ``flush_interval`` seconds by a daemon timer thread, or explicitly by
    ``force_flush`` / ``shutdown``. A flush takes the whole pending list and
    exports it in sub-batches of at most ``MAX_EXPORT_BATCH_SIZE`` spans, in
    order, on a single worker thread. A failing sub-batch is logged and the
    remaining sub-batches are still attempted. Delivery is best effort: no
    retry, no re-queue.

    While a flush is in flight every further ``flush`` call returns the same
    future instead of starting a parallel export.

ImmediateExportStrategy
    Each span is exported synchronously as soon as it ends. Useful for short
    lived processes (serverless handlers, CLIs) where a background thread
    may never get scheduled before exit.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import List, Optional, Sequence, Union

from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from .config import ExportMode

logger = logging.getLogger(__name__)

__all__ = [
    "MAX_EXPORT_BATCH_SIZE",
    "ExportStrategy",
    "BatchExportStrategy",
    "ImmediateExportStrategy",
    "create_export_strategy",
]

MAX_EXPORT_BATCH_SIZE = 100
DEFAULT_FLUSH_AT = 512
DEFAULT_FLUSH_INTERVAL = 5.0
DEFAULT_FLUSH_TIMEOUT_MILLIS = 30_000


def _export_chunk(exporter: SpanExporter, chunk: Sequence[ReadableSpan]) -> bool:
    try:
        result = exporter.export(chunk)
    except Exception:
        logger.exception("Failed to export batch of %d spans", len(chunk))
        return False
    if result is not SpanExportResult.SUCCESS:
        logger.warning("Exporter reported failure for batch of %d spans", len(chunk))
        return False
    return True


def _completed_future() -> "Future[None]":
    future: "Future[None]" = Future()
    future.set_result(None)
    return future


class ExportStrategy:
    """Interface shared by the export policies."""

    def on_end(self, span: ReadableSpan) -> None:
        raise NotImplementedError

    def force_flush(self, timeout_millis: int = DEFAULT_FLUSH_TIMEOUT_MILLIS) -> bool:
        raise NotImplementedError

    def shutdown(self) -> None:
        raise NotImplementedError


class BatchExportStrategy(ExportStrategy):
    def __init__(
        self,
        exporter: SpanExporter,
        *,
        flush_at: int = DEFAULT_FLUSH_AT,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        max_export_batch_size: int = MAX_EXPORT_BATCH_SIZE,
    ) -> None:
        if flush_at < 1:
            raise ValueError(f"flush_at must be >= 1 (got {flush_at})")
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be > 0 seconds (got {flush_interval})")
        if max_export_batch_size < 1:
            raise ValueError(f"max_export_batch_size must be >= 1 (got {max_export_batch_size})")
        self._exporter = exporter
        self._flush_at = flush_at
        self._flush_interval = flush_interval
        self._max_export_batch_size = max_export_batch_size

        self._lock = threading.Lock()
        self._pending: List[ReadableSpan] = []
        self._in_flight: Optional["Future[None]"] = None
        self._shutdown = False
        self._closed = False

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="langfuse-export")
        self._stop_event = threading.Event()
        self._timer = threading.Thread(
            target=self._run_timer, name="langfuse-flush-timer", daemon=True
        )
        self._timer.start()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def on_end(self, span: ReadableSpan) -> None:
        with self._lock:
            if self._shutdown:
                logger.warning("Export strategy is shut down; dropping span %s", span.name)
                return
            self._pending.append(span)
            should_flush = len(self._pending) >= self._flush_at
        if should_flush:
            self.flush()

    def flush(self) -> "Future[None]":
        """Export everything pending; returns the in-flight future if one exists."""
        with self._lock:
            if self._in_flight is not None and not self._in_flight.done():
                return self._in_flight
            if not self._pending or self._closed:
                return _completed_future()
            batch, self._pending = self._pending, []
            future = self._executor.submit(self._export_all, batch)
            self._in_flight = future
        future.add_done_callback(self._after_flush)
        return future

    def _export_all(self, batch: List[ReadableSpan]) -> None:
        size = self._max_export_batch_size
        failed = 0
        for start in range(0, len(batch), size):
            chunk = batch[start : start + size]
            if not _export_chunk(self._exporter, chunk):
                failed += len(chunk)
        logger.debug("Flushed %d spans (%d failed)", len(batch), failed)

    def _after_flush(self, _future: "Future[None]") -> None:
        # Spans that piled up past the threshold during the flush start the next one.
        with self._lock:
            backlog = not self._shutdown and len(self._pending) >= self._flush_at
        if backlog:
            self.flush()

    def _run_timer(self) -> None:
        while not self._stop_event.wait(self._flush_interval):
            self.flush()

    def force_flush(self, timeout_millis: int = DEFAULT_FLUSH_TIMEOUT_MILLIS) -> bool:
        deadline = time.monotonic() + timeout_millis / 1000
        while True:
            future = self.flush()
            try:
                future.result(timeout=max(deadline - time.monotonic(), 0))
            except FutureTimeoutError:
                logger.warning("Timed out after %d ms waiting for span export", timeout_millis)
                return False
            with self._lock:
                if not self._pending or self._closed:
                    return True

    def shutdown(self) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._stop_event.set()
        self._timer.join()
        # Waits for the in-flight flush, then drains whatever is left.
        self.force_flush()
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
        self._exporter.shutdown()


class ImmediateExportStrategy(ExportStrategy):
    def __init__(self, exporter: SpanExporter) -> None:
        self._exporter = exporter
        self._shutdown = False

    def on_end(self, span: ReadableSpan) -> None:
        if self._shutdown:
            logger.warning("Export strategy is shut down; dropping span %s", span.name)
            return
        _export_chunk(self._exporter, [span])

    def force_flush(self, timeout_millis: int = DEFAULT_FLUSH_TIMEOUT_MILLIS) -> bool:
        return True

    def shutdown(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._exporter.shutdown()


def create_export_strategy(
    mode: Union[ExportMode, str],
    exporter: SpanExporter,
    *,
    flush_at: int = DEFAULT_FLUSH_AT,
    flush_interval: float = DEFAULT_FLUSH_INTERVAL,
) -> ExportStrategy:
    """Return the strategy for `mode` ('batched' or 'immediate').

    Raises:
        ValueError: unknown mode or invalid batching thresholds.
    """
    resolved = ExportMode(mode)
    if resolved is ExportMode.IMMEDIATE:
        return ImmediateExportStrategy(exporter)
    return BatchExportStrategy(exporter, flush_at=flush_at, flush_interval=flush_interval)

from __future__ import annotations

import threading
from typing import List, Sequence

import pytest
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from langfuse_pipeline.config import ExportMode
from langfuse_pipeline.export_strategy import (
    MAX_EXPORT_BATCH_SIZE,
    BatchExportStrategy,
    ImmediateExportStrategy,
    create_export_strategy,
)


class _RecordingExporter(SpanExporter):
    def __init__(self, fail_calls: Sequence[int] = (), raise_calls: Sequence[int] = ()):
        self.batches: List[List[str]] = []
        self.calls = 0
        self.shut_down = False
        self.exported = threading.Event()
        self._fail_calls = set(fail_calls)
        self._raise_calls = set(raise_calls)

    def export(self, spans):
        self.calls += 1
        if self.calls in self._raise_calls:
            raise ConnectionError("network down")
        self.batches.append([s.name for s in spans])
        self.exported.set()
        if self.calls in self._fail_calls:
            return SpanExportResult.FAILURE
        return SpanExportResult.SUCCESS

    def shutdown(self):
        self.shut_down = True


class _BlockingExporter(_RecordingExporter):
    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def export(self, spans):
        self.started.set()
        self.release.wait(5)
        return super().export(spans)


def _spans(n: int, prefix: str = "s") -> List[ReadableSpan]:
    return [ReadableSpan(name=f"{prefix}{i}") for i in range(n)]


def test_threshold_triggers_flush():
    exporter = _RecordingExporter()
    strategy = BatchExportStrategy(exporter, flush_at=3, flush_interval=60)
    a, b, c = _spans(3)
    strategy.on_end(a)
    strategy.on_end(b)
    assert exporter.batches == []
    strategy.on_end(c)
    assert exporter.exported.wait(5)
    assert exporter.calls == 1
    assert [len(batch) for batch in exporter.batches] == [3]
    assert exporter.batches == [["s0", "s1", "s2"]]
    strategy.shutdown()


def test_flush_splits_into_sub_batches():
    exporter = _RecordingExporter()
    strategy = BatchExportStrategy(exporter, flush_at=1000, flush_interval=60)
    for span in _spans(150):
        strategy.on_end(span)
    assert strategy.force_flush(5000)
    assert [len(b) for b in exporter.batches] == [MAX_EXPORT_BATCH_SIZE, 50]
    assert exporter.batches[0][0] == "s0"
    assert exporter.batches[1][-1] == "s149"
    strategy.shutdown()


def test_failing_sub_batch_does_not_block_the_rest():
    exporter = _RecordingExporter(raise_calls=[1], fail_calls=[2])
    strategy = BatchExportStrategy(exporter, flush_at=1000, flush_interval=60)
    for span in _spans(250):
        strategy.on_end(span)
    assert strategy.force_flush(5000)
    assert exporter.calls == 3
    # first call raised before recording; second failed, third succeeded
    assert [len(b) for b in exporter.batches] == [100, 50]
    strategy.shutdown()


def test_concurrent_flush_returns_in_flight_future():
    exporter = _BlockingExporter()
    strategy = BatchExportStrategy(exporter, flush_at=1000, flush_interval=60)
    strategy.on_end(_spans(1)[0])
    first = strategy.flush()
    assert exporter.started.wait(5)
    strategy.on_end(_spans(1, prefix="late")[0])
    second = strategy.flush()
    assert second is first
    exporter.release.set()
    assert strategy.force_flush(5000)
    assert exporter.batches == [["s0"], ["late0"]]
    strategy.shutdown()


def test_timer_flushes_pending_spans():
    exporter = _RecordingExporter()
    strategy = BatchExportStrategy(exporter, flush_at=1000, flush_interval=0.05)
    strategy.on_end(_spans(1)[0])
    deadline = threading.Event()
    for _ in range(100):
        if exporter.batches:
            break
        deadline.wait(0.05)
    assert exporter.batches == [["s0"]]
    strategy.shutdown()


def test_shutdown_drains_and_drops_later_spans(caplog):
    exporter = _RecordingExporter()
    strategy = BatchExportStrategy(exporter, flush_at=1000, flush_interval=60)
    for span in _spans(5):
        strategy.on_end(span)
    strategy.shutdown()
    assert exporter.batches == [["s0", "s1", "s2", "s3", "s4"]]
    assert exporter.shut_down
    strategy.on_end(_spans(1, prefix="after")[0])
    assert strategy.pending_count == 0
    assert "shut down" in caplog.text


def test_shutdown_during_running_flush_exports_everything():
    exporter = _BlockingExporter()
    strategy = BatchExportStrategy(exporter, flush_at=1000, flush_interval=60)
    strategy.on_end(_spans(1)[0])
    strategy.flush()
    assert exporter.started.wait(5)
    for span in _spans(2, prefix="pending"):
        strategy.on_end(span)
    closer = threading.Thread(target=strategy.shutdown)
    closer.start()
    closer.join(0.1)
    assert closer.is_alive()
    exporter.release.set()
    closer.join(5)
    assert not closer.is_alive()
    assert exporter.batches == [["s0"], ["pending0", "pending1"]]
    assert exporter.shut_down
    assert strategy.pending_count == 0


def test_immediate_strategy_exports_on_end():
    exporter = _RecordingExporter(raise_calls=[1])
    strategy = ImmediateExportStrategy(exporter)
    first, second = _spans(2)
    strategy.on_end(first)
    strategy.on_end(second)
    assert exporter.batches == [["s1"]]
    assert strategy.force_flush() is True
    strategy.shutdown()
    assert exporter.shut_down


@pytest.mark.parametrize(
    "kwargs",
    [{"flush_at": 0}, {"flush_interval": 0}, {"flush_interval": -1}],
)
def test_invalid_thresholds_rejected(kwargs):
    with pytest.raises(ValueError):
        BatchExportStrategy(_RecordingExporter(), **kwargs)


def test_create_export_strategy_selects_policy():
    immediate = create_export_strategy("immediate", _RecordingExporter())
    assert isinstance(immediate, ImmediateExportStrategy)
    batched = create_export_strategy(ExportMode.BATCHED, _RecordingExporter(), flush_at=10)
    assert isinstance(batched, BatchExportStrategy)
    batched.shutdown()
    with pytest.raises(ValueError):
        create_export_strategy("eventually", _RecordingExporter())

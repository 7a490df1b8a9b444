from __future__ import annotations

import asyncio
import logging

import pytest
from opentelemetry import baggage, context as otel_context

from langfuse_pipeline.attributes import LangfuseOtelSpanAttributes as A
from langfuse_pipeline.propagation import (
    BAGGAGE_METADATA_PREFIX,
    BAGGAGE_TAGS,
    BAGGAGE_USER_ID,
    get_propagation_scope,
    propagate,
    propagate_attributes,
    read_from_context,
)


def _span(memory_exporter, name):
    spans = [s for s in memory_exporter.get_finished_spans() if s.name == name]
    assert len(spans) == 1, f"expected one span named {name!r}"
    return spans[0]


def test_attributes_reach_child_spans(tracer, memory_exporter):
    with propagate_attributes(user_id="u1", session_id="s1", version="v1"):
        with tracer.start_as_current_span("child"):
            pass
    attrs = _span(memory_exporter, "child").attributes
    assert attrs[A.TRACE_USER_ID] == "u1"
    assert attrs[A.TRACE_SESSION_ID] == "s1"
    assert attrs[A.VERSION] == "v1"


def test_scope_restored_after_exit_and_on_exception(tracer, memory_exporter):
    assert read_from_context() == {}
    with propagate_attributes(user_id="u1"):
        assert read_from_context()[A.TRACE_USER_ID] == "u1"
    assert read_from_context() == {}

    with pytest.raises(RuntimeError):
        with propagate_attributes(user_id="u2"):
            raise RuntimeError("boom")
    assert get_propagation_scope() is None

    with tracer.start_as_current_span("after"):
        pass
    assert A.TRACE_USER_ID not in _span(memory_exporter, "after").attributes


def test_enclosing_span_is_stamped(tracer, memory_exporter):
    with tracer.start_as_current_span("parent"):
        with propagate_attributes(session_id="s9"):
            pass
    assert _span(memory_exporter, "parent").attributes[A.TRACE_SESSION_ID] == "s9"


def test_nested_tags_union_outer_first(tracer, memory_exporter):
    with propagate_attributes(tags=["a", "b"]):
        with propagate_attributes(tags=["b", "c"]):
            with tracer.start_as_current_span("inner"):
                pass
    assert list(_span(memory_exporter, "inner").attributes[A.TRACE_TAGS]) == ["a", "b", "c"]


def test_innermost_scalar_wins_and_empty_tags_keep_inherited():
    with propagate_attributes(user_id="outer", tags=["x"]):
        with propagate_attributes(user_id="inner", tags=[]):
            attrs = read_from_context()
            assert attrs[A.TRACE_USER_ID] == "inner"
            assert attrs[A.TRACE_TAGS] == ["x"]
        assert read_from_context()[A.TRACE_USER_ID] == "outer"


def test_metadata_merge_and_restore():
    with propagate_attributes(metadata={"a": "1", "b": "2"}):
        with propagate_attributes(metadata={"b": "3", "c": "4"}):
            attrs = read_from_context()
            assert attrs[f"{A.TRACE_METADATA}.a"] == "1"
            assert attrs[f"{A.TRACE_METADATA}.b"] == "3"
            assert attrs[f"{A.TRACE_METADATA}.c"] == "4"
        attrs = read_from_context()
        assert attrs[f"{A.TRACE_METADATA}.b"] == "2"
        assert f"{A.TRACE_METADATA}.c" not in attrs


def test_value_length_boundary(caplog):
    with propagate_attributes(user_id="x" * 200):
        assert read_from_context()[A.TRACE_USER_ID] == "x" * 200
    with caplog.at_level(logging.WARNING, logger="langfuse_pipeline.propagation"):
        with propagate_attributes(user_id="y" * 201, metadata={"k": "z" * 201}):
            assert read_from_context() == {}
    assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 2


def test_non_string_values_dropped(caplog):
    with caplog.at_level(logging.WARNING, logger="langfuse_pipeline.propagation"):
        with propagate_attributes(user_id=123, tags=["ok", 5]):  # type: ignore[arg-type]
            attrs = read_from_context()
    assert A.TRACE_USER_ID not in attrs
    assert attrs[A.TRACE_TAGS] == ["ok"]
    assert caplog.records


def test_baggage_encoding():
    with propagate_attributes(user_id="u1", tags=["a", "b"], metadata={"env": "prod"}, as_baggage=True):
        entries = baggage.get_all()
        assert entries[BAGGAGE_USER_ID] == "u1"
        assert entries[BAGGAGE_TAGS] == "a,b"
        assert entries[f"{BAGGAGE_METADATA_PREFIX}env"] == "prod"
    assert BAGGAGE_USER_ID not in baggage.get_all()


def test_nested_baggage_follows_merge_rules():
    with propagate_attributes(tags=["a"], metadata={"k": "outer", "only": "outer"}, as_baggage=True):
        with propagate_attributes(tags=["b", "a"], metadata={"k": "inner"}, as_baggage=True):
            entries = baggage.get_all()
            assert entries[BAGGAGE_TAGS] == "a,b"
            assert entries[f"{BAGGAGE_METADATA_PREFIX}k"] == "inner"
            assert entries[f"{BAGGAGE_METADATA_PREFIX}only"] == "outer"
        entries = baggage.get_all()
        assert entries[BAGGAGE_TAGS] == "a"
        assert entries[f"{BAGGAGE_METADATA_PREFIX}k"] == "outer"
    assert BAGGAGE_TAGS not in baggage.get_all()


def test_read_from_baggage_only_context():
    ctx = baggage.set_baggage(BAGGAGE_USER_ID, "remote-user")
    ctx = baggage.set_baggage(BAGGAGE_TAGS, "t1,t2", ctx)
    ctx = baggage.set_baggage(f"{BAGGAGE_METADATA_PREFIX}region", "eu", ctx)
    attrs = read_from_context(ctx)
    assert attrs[A.TRACE_USER_ID] == "remote-user"
    assert attrs[A.TRACE_TAGS] == ["t1", "t2"]
    assert attrs[f"{A.TRACE_METADATA}.region"] == "eu"


def test_in_process_scope_wins_over_baggage():
    token = otel_context.attach(baggage.set_baggage(BAGGAGE_USER_ID, "remote-user"))
    try:
        with propagate_attributes(user_id="local-user"):
            assert read_from_context()[A.TRACE_USER_ID] == "local-user"
    finally:
        otel_context.detach(token)


def test_propagate_sync_callable():
    def work(x, *, y):
        return read_from_context()[A.TRACE_SESSION_ID], x + y

    assert propagate({"sessionId": "s1"}, work, 1, y=2) == ("s1", 3)
    assert read_from_context() == {}


def test_propagate_async_survives_suspension():
    async def work():
        await asyncio.sleep(0)
        first = read_from_context()[A.TRACE_USER_ID]
        await asyncio.sleep(0.01)
        return first, read_from_context()[A.TRACE_USER_ID]

    async def main():
        coro = propagate({"user_id": "async-user"}, work)
        assert read_from_context() == {}
        return await coro

    assert asyncio.run(main()) == ("async-user", "async-user")


def test_propagate_async_restores_scope_when_coroutine_raises():
    async def work():
        await asyncio.sleep(0)
        assert read_from_context()[A.TRACE_USER_ID] == "doomed"
        raise RuntimeError("boom")

    async def main():
        with pytest.raises(RuntimeError, match="boom"):
            await propagate({"user_id": "doomed"}, work)
        return read_from_context()

    assert asyncio.run(main()) == {}
    assert read_from_context() == {}


@pytest.mark.asyncio
async def test_concurrent_tasks_keep_separate_scopes():
    async def worker(user):
        with propagate_attributes(user_id=user):
            await asyncio.sleep(0.01)
            return read_from_context()[A.TRACE_USER_ID]

    results = await asyncio.gather(worker("a"), worker("b"), worker("c"))
    assert results == ["a", "b", "c"]

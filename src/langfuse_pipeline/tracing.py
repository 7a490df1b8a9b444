"""Tracing facade: create Langfuse observations on top of OpenTelemetry spans.

Observations are native OpenTelemetry spans created by the ``langfuse-sdk``
tracer. The wrappers here only add the Langfuse attribute conventions:

    obs = start_observation("retrieve", input={"query": q})
    gen = obs.start_observation("llm", as_type="generation", model="gpt-4o")
    gen.update(output=answer, usage_details={"input": 10, "output": 42})
    gen.end()
    obs.update_trace(user_id="u-1", tags=["rag"])
    obs.end()

``start_active_observation`` additionally makes the span current, so spans
created by other instrumentations inside the block become its children, and
``observe`` wraps a function (sync or async) in an active observation that
captures its arguments and return value.
"""
from __future__ import annotations

import functools
import inspect
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union, overload

from opentelemetry import trace
from pydantic import BaseModel

from .attributes import LangfuseOtelSpanAttributes, build_observation_attributes, build_trace_attributes
from .models.langfuse import OBSERVATION_ATTRIBUTE_MODELS, ObservationType
from .span_filter import LANGFUSE_TRACER_NAME

logger = logging.getLogger(__name__)

__all__ = [
    "get_tracer",
    "LangfuseObservation",
    "LangfuseSpan",
    "LangfuseGeneration",
    "LangfuseEvent",
    "start_observation",
    "start_active_observation",
    "create_event",
    "update_active_trace",
    "update_active_observation",
    "observe",
]

F = TypeVar("F", bound=Callable[..., Any])

_MAX_CAPTURE_DEPTH = 10


def get_tracer(tracer_provider: Optional[trace.TracerProvider] = None) -> trace.Tracer:
    return trace.get_tracer(LANGFUSE_TRACER_NAME, tracer_provider=tracer_provider)


class LangfuseObservation:
    """Wrapper around an OpenTelemetry span carrying Langfuse attributes."""

    kind: ObservationType = "span"

    def __init__(self, otel_span: trace.Span, *, tracer: trace.Tracer) -> None:
        self._otel_span = otel_span
        self._tracer = tracer

    @property
    def otel_span(self) -> trace.Span:
        return self._otel_span

    @property
    def id(self) -> str:
        return format(self._otel_span.get_span_context().span_id, "016x")

    @property
    def trace_id(self) -> str:
        return format(self._otel_span.get_span_context().trace_id, "032x")

    def update(self, **attributes: Any) -> "LangfuseObservation":
        """Set observation attributes (input, output, metadata, level, ...)."""
        self._otel_span.set_attributes(build_observation_attributes(self.kind, attributes))
        return self

    def update_trace(self, **attributes: Any) -> "LangfuseObservation":
        """Set trace-level attributes (name, user_id, session_id, tags, ...)."""
        self._otel_span.set_attributes(build_trace_attributes(attributes))
        return self

    def start_observation(
        self, name: str, *, as_type: ObservationType = "span", **attributes: Any
    ) -> "LangfuseObservation":
        """Start a child observation of this one (not made current)."""
        parent_ctx = trace.set_span_in_context(self._otel_span)
        return _start(self._tracer, name, as_type, attributes, context=parent_ctx)

    def end(self, end_time: Optional[int] = None) -> None:
        self._otel_span.end(end_time=end_time)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, trace_id={self.trace_id!r})"


class LangfuseSpan(LangfuseObservation):
    kind: ObservationType = "span"


class LangfuseGeneration(LangfuseObservation):
    kind: ObservationType = "generation"


class LangfuseEvent(LangfuseObservation):
    kind: ObservationType = "event"


_WRAPPERS: Dict[str, type] = {
    "span": LangfuseSpan,
    "generation": LangfuseGeneration,
    "event": LangfuseEvent,
}


def _wrap(otel_span: trace.Span, as_type: str, tracer: trace.Tracer) -> LangfuseObservation:
    return _WRAPPERS[as_type](otel_span, tracer=tracer)


def _check_type(as_type: str) -> None:
    if as_type not in OBSERVATION_ATTRIBUTE_MODELS:
        raise ValueError(f"Unknown observation type {as_type!r}; expected one of {sorted(OBSERVATION_ATTRIBUTE_MODELS)}")


def _start(
    tracer: trace.Tracer,
    name: str,
    as_type: str,
    attributes: Dict[str, Any],
    *,
    context: Any = None,
    start_time: Optional[int] = None,
) -> LangfuseObservation:
    _check_type(as_type)
    otel_span = tracer.start_span(
        name,
        context=context,
        attributes=build_observation_attributes(as_type, attributes),  # type: ignore[arg-type]
        start_time=start_time,
    )
    return _wrap(otel_span, as_type, tracer)


def start_observation(
    name: str,
    *,
    as_type: ObservationType = "span",
    tracer_provider: Optional[trace.TracerProvider] = None,
    **attributes: Any,
) -> LangfuseObservation:
    """Start an observation as a child of the current span; the caller must `end()` it."""
    return _start(get_tracer(tracer_provider), name, as_type, attributes)


@contextmanager
def start_active_observation(
    name: str,
    *,
    as_type: ObservationType = "span",
    end_on_exit: bool = True,
    tracer_provider: Optional[trace.TracerProvider] = None,
    **attributes: Any,
) -> Iterator[LangfuseObservation]:
    """Start an observation and make it the current span for the block.

    An exception escaping the block marks the observation ``ERROR`` with the
    exception message as status message, then propagates.
    """
    _check_type(as_type)
    tracer = get_tracer(tracer_provider)
    with tracer.start_as_current_span(
        name,
        attributes=build_observation_attributes(as_type, attributes),
        end_on_exit=end_on_exit,
    ) as otel_span:
        observation = _wrap(otel_span, as_type, tracer)
        try:
            yield observation
        except Exception as e:
            observation.update(level="ERROR", status_message=str(e))
            raise


def create_event(
    name: str, *, tracer_provider: Optional[trace.TracerProvider] = None, **attributes: Any
) -> LangfuseObservation:
    """Record a zero-duration event observation under the current span."""
    event = start_observation(name, as_type="event", tracer_provider=tracer_provider, **attributes)
    event.end(end_time=getattr(event.otel_span, "start_time", None))
    return event


def _current_recording_span(operation: str) -> Optional[trace.Span]:
    span = trace.get_current_span()
    if not span.is_recording():
        logger.warning("%s called without an active recording span; ignoring", operation)
        return None
    return span


def update_active_trace(**attributes: Any) -> None:
    span = _current_recording_span("update_active_trace")
    if span is not None:
        span.set_attributes(build_trace_attributes(attributes))


def update_active_observation(as_type: Optional[ObservationType] = None, **attributes: Any) -> None:
    """Update the current observation; the kind defaults to the one it was created with."""
    span = _current_recording_span("update_active_observation")
    if span is None:
        return
    if as_type is None:
        existing = getattr(span, "attributes", None) or {}
        as_type = existing.get(LangfuseOtelSpanAttributes.OBSERVATION_TYPE, "span")
    if as_type not in OBSERVATION_ATTRIBUTE_MODELS:
        as_type = "span"
    span.set_attributes(build_observation_attributes(as_type, attributes))  # type: ignore[arg-type]


def _to_jsonable(value: Any, depth: int = 0) -> Any:
    if depth > _MAX_CAPTURE_DEPTH:
        return repr(value)
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_jsonable(v, depth + 1) for v in value]
    return repr(value)


def _capture_input(args: tuple, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {"args": _to_jsonable(args), "kwargs": _to_jsonable(kwargs)}


@overload
def observe(func: F) -> F: ...


@overload
def observe(
    func: None = None,
    *,
    name: Optional[str] = None,
    as_type: ObservationType = "span",
    capture_input: bool = True,
    capture_output: bool = True,
) -> Callable[[F], F]: ...


def observe(
    func: Optional[F] = None,
    *,
    name: Optional[str] = None,
    as_type: ObservationType = "span",
    capture_input: bool = True,
    capture_output: bool = True,
) -> Union[F, Callable[[F], F]]:
    """Decorator wrapping a sync or async function in an active observation.

    Usable bare (``@observe``) or with options
    (``@observe(name="rank", as_type="generation")``).
    """
    _check_type(as_type)

    def decorator(fn: F) -> F:
        observation_name = name or fn.__name__

        def _input(args: tuple, kwargs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            return _capture_input(args, kwargs) if capture_input else None

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with start_active_observation(
                    observation_name, as_type=as_type, input=_input(args, kwargs)
                ) as observation:
                    result = await fn(*args, **kwargs)
                    if capture_output:
                        observation.update(output=_to_jsonable(result))
                    return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with start_active_observation(
                observation_name, as_type=as_type, input=_input(args, kwargs)
            ) as observation:
                result = fn(*args, **kwargs)
                if capture_output:
                    observation.update(output=_to_jsonable(result))
                return result

        return sync_wrapper  # type: ignore[return-value]

    if func is not None:
        return decorator(func)
    return decorator

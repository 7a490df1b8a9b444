"""Propagation of trace-level attributes to every span created inside a scope.

``propagate_attributes`` (context manager) and ``propagate`` (callable
wrapper) push a `PropagationScope` onto the OpenTelemetry context. The span
processor reads it back in ``on_start`` through `read_from_context`, so each
new span carries the ambient ``user_id`` / ``session_id`` / ``version`` /
``tags`` / ``metadata`` without the call site repeating them.

The OpenTelemetry context is ``contextvars`` based: the scope follows the
current thread and asyncio task, survives ``await`` suspension, and is
restored to exactly the previous value when the block exits (normal return
or exception).

Merge rules for nested scopes:
    - user_id / session_id / version: innermost non-missing value wins
    - metadata: merged key by key, inner keys override outer keys
    - tags: union, outer tags first, duplicates dropped

Validation happens at merge time. Values that are not strings, or that are
longer than 200 characters, are dropped (never truncated) with a warning.

With ``as_baggage=True`` the merged attributes are also written to
OpenTelemetry baggage so they cross process boundaries with the W3C baggage
header. Baggage keys:

    langfuse_user_id, langfuse_session_id, langfuse_version,
    langfuse_tags (comma joined), langfuse_metadata_<key>

Baggage values end up in HTTP headers of outbound requests; only enable it
for values that are safe to transmit.
"""
from __future__ import annotations

import inspect
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple, TypeVar

from opentelemetry import baggage as otel_baggage
from opentelemetry import context as otel_context
from opentelemetry import trace as otel_trace
from opentelemetry.context import Context
from pydantic import BaseModel

from .attributes import LangfuseOtelSpanAttributes

logger = logging.getLogger(__name__)

__all__ = [
    "MAX_PROPAGATED_VALUE_LENGTH",
    "PropagationScope",
    "propagate_attributes",
    "propagate",
    "get_propagation_scope",
    "read_from_context",
    "BAGGAGE_USER_ID",
    "BAGGAGE_SESSION_ID",
    "BAGGAGE_VERSION",
    "BAGGAGE_TAGS",
    "BAGGAGE_METADATA_PREFIX",
]

T = TypeVar("T")

MAX_PROPAGATED_VALUE_LENGTH = 200

BAGGAGE_USER_ID = "langfuse_user_id"
BAGGAGE_SESSION_ID = "langfuse_session_id"
BAGGAGE_VERSION = "langfuse_version"
BAGGAGE_TAGS = "langfuse_tags"
BAGGAGE_METADATA_PREFIX = "langfuse_metadata_"

_SCOPE_KEY = otel_context.create_key("langfuse_propagation_scope")

_PARAM_ALIASES = {
    "userId": "user_id",
    "sessionId": "session_id",
    "asBaggage": "as_baggage",
}
_PARAM_NAMES = {"user_id", "session_id", "version", "tags", "metadata", "as_baggage"}


def _validated(value: Any, attribute_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        logger.warning(
            "Propagated attribute '%s' must be a string (got %s). Dropping value.",
            attribute_name,
            type(value).__name__,
        )
        return None
    if len(value) > MAX_PROPAGATED_VALUE_LENGTH:
        logger.warning(
            "Propagated attribute '%s' value is over %d characters (%d chars). Dropping value.",
            attribute_name,
            MAX_PROPAGATED_VALUE_LENGTH,
            len(value),
        )
        return None
    return value


def _validated_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    valid: Dict[str, str] = {}
    if not metadata:
        return valid
    for key, value in metadata.items():
        if value is None:
            continue
        # Scalars are coerced; containers have no flat string form and are dropped.
        if isinstance(value, (bool, int, float)):
            value = str(value)
        checked = _validated(value, f"metadata.{key}")
        if checked is not None:
            valid[str(key)] = checked
    return valid


def _validated_tags(tags: Optional[Sequence[Any]]) -> Tuple[str, ...]:
    if not tags:
        return ()
    if isinstance(tags, str):
        tags = [tags]
    valid = [checked for checked in (_validated(tag, "tags") for tag in tags) if checked is not None]
    return tuple(dict.fromkeys(valid))


@dataclass(frozen=True)
class PropagationScope:
    """Resolved, validated trace attributes active for the current context."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    version: Optional[str] = None
    tags: Tuple[str, ...] = ()
    metadata: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    as_baggage: bool = False

    def merge(
        self,
        *,
        user_id: Any = None,
        session_id: Any = None,
        version: Any = None,
        tags: Optional[Sequence[Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        as_baggage: bool = False,
    ) -> "PropagationScope":
        """Return a new scope with the given attributes layered over this one."""
        merged_metadata = dict(self.metadata)
        merged_metadata.update(_validated_metadata(metadata))
        merged_tags = tuple(dict.fromkeys(self.tags + _validated_tags(tags)))
        return PropagationScope(
            user_id=_validated(user_id, "user_id") or self.user_id,
            session_id=_validated(session_id, "session_id") or self.session_id,
            version=_validated(version, "version") or self.version,
            tags=merged_tags,
            metadata=MappingProxyType(merged_metadata),
            as_baggage=self.as_baggage or bool(as_baggage),
        )

    def to_wire_attributes(self) -> Dict[str, Any]:
        attrs: Dict[str, Any] = {}
        if self.user_id is not None:
            attrs[LangfuseOtelSpanAttributes.TRACE_USER_ID] = self.user_id
        if self.session_id is not None:
            attrs[LangfuseOtelSpanAttributes.TRACE_SESSION_ID] = self.session_id
        if self.version is not None:
            attrs[LangfuseOtelSpanAttributes.VERSION] = self.version
        if self.tags:
            attrs[LangfuseOtelSpanAttributes.TRACE_TAGS] = list(self.tags)
        for key, value in self.metadata.items():
            attrs[f"{LangfuseOtelSpanAttributes.TRACE_METADATA}.{key}"] = value
        return attrs

    def to_baggage(self) -> Dict[str, str]:
        entries: Dict[str, str] = {}
        if self.user_id is not None:
            entries[BAGGAGE_USER_ID] = self.user_id
        if self.session_id is not None:
            entries[BAGGAGE_SESSION_ID] = self.session_id
        if self.version is not None:
            entries[BAGGAGE_VERSION] = self.version
        if self.tags:
            entries[BAGGAGE_TAGS] = ",".join(self.tags)
        for key, value in self.metadata.items():
            entries[f"{BAGGAGE_METADATA_PREFIX}{key}"] = value
        return entries


_EMPTY_SCOPE = PropagationScope()


def get_propagation_scope(ctx: Optional[Context] = None) -> Optional[PropagationScope]:
    scope = otel_context.get_value(_SCOPE_KEY, ctx)
    return scope if isinstance(scope, PropagationScope) else None


def _scoped_context(
    *,
    user_id: Any = None,
    session_id: Any = None,
    version: Any = None,
    tags: Optional[Sequence[Any]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    as_baggage: bool = False,
) -> Tuple[Context, PropagationScope]:
    ctx = otel_context.get_current()
    parent = get_propagation_scope(ctx) or _EMPTY_SCOPE
    scope = parent.merge(
        user_id=user_id,
        session_id=session_id,
        version=version,
        tags=tags,
        metadata=metadata,
        as_baggage=as_baggage,
    )
    ctx = otel_context.set_value(_SCOPE_KEY, scope, ctx)
    if scope.as_baggage:
        for key, value in scope.to_baggage().items():
            ctx = otel_baggage.set_baggage(key, value, ctx)

    span = otel_trace.get_current_span(ctx)
    if span.is_recording():
        span.set_attributes(scope.to_wire_attributes())
    return ctx, scope


@contextmanager
def propagate_attributes(
    *,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    version: Optional[str] = None,
    tags: Optional[Sequence[str]] = None,
    metadata: Optional[Mapping[str, str]] = None,
    as_baggage: bool = False,
) -> Iterator[PropagationScope]:
    """Merge the given attributes into the ambient scope for the ``with`` block.

    The currently recording span (if any) receives the merged attributes
    immediately; spans started inside the block receive them on start.

    Example:
        with propagate_attributes(user_id="user_123", tags=["checkout"]):
            with tracer.start_as_current_span("llm-call"):
                ...
    """
    ctx, scope = _scoped_context(
        user_id=user_id,
        session_id=session_id,
        version=version,
        tags=tags,
        metadata=metadata,
        as_baggage=as_baggage,
    )
    token = otel_context.attach(ctx)
    try:
        yield scope
    finally:
        otel_context.detach(token)


def _normalize_params(attributes: Any) -> Dict[str, Any]:
    if attributes is None:
        return {}
    if isinstance(attributes, BaseModel):
        attributes = attributes.model_dump(exclude_none=True)
    params: Dict[str, Any] = {}
    for key, value in dict(attributes).items():
        name = _PARAM_ALIASES.get(key, key)
        if name in _PARAM_NAMES:
            params[name] = value
    return params


async def _await_in_context(awaitable: Awaitable[T], ctx: Context) -> T:
    token = otel_context.attach(ctx)
    try:
        return await awaitable
    finally:
        otel_context.detach(token)


def propagate(attributes: Any, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn(*args, **kwargs)`` with `attributes` merged into the ambient scope.

    `attributes` is a mapping (snake_case or camelCase keys) or a
    `TraceAttributes` model. Async callables (and sync callables returning an
    awaitable) return an awaitable that keeps the scope across every
    suspension until it completes.
    """
    params = _normalize_params(attributes)
    if inspect.iscoroutinefunction(fn):
        ctx, _ = _scoped_context(**params)
        return _await_in_context(fn(*args, **kwargs), ctx)  # type: ignore[return-value]
    ctx, _ = _scoped_context(**params)
    token = otel_context.attach(ctx)
    try:
        result = fn(*args, **kwargs)
    finally:
        otel_context.detach(token)
    if inspect.isawaitable(result):
        return _await_in_context(result, ctx)  # type: ignore[return-value]
    return result


def _scope_from_baggage(ctx: Optional[Context]) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {}
    for key, value in otel_baggage.get_all(ctx).items():
        if not isinstance(value, str) or not key.startswith("langfuse_"):
            continue
        if len(value) > MAX_PROPAGATED_VALUE_LENGTH and key != BAGGAGE_TAGS:
            logger.debug("Ignoring oversized baggage entry %s (%d chars)", key, len(value))
            continue
        if key == BAGGAGE_USER_ID:
            attrs[LangfuseOtelSpanAttributes.TRACE_USER_ID] = value
        elif key == BAGGAGE_SESSION_ID:
            attrs[LangfuseOtelSpanAttributes.TRACE_SESSION_ID] = value
        elif key == BAGGAGE_VERSION:
            attrs[LangfuseOtelSpanAttributes.VERSION] = value
        elif key == BAGGAGE_TAGS:
            tags = _validated_tags([tag for tag in value.split(",") if tag])
            if tags:
                attrs[LangfuseOtelSpanAttributes.TRACE_TAGS] = list(tags)
        elif key.startswith(BAGGAGE_METADATA_PREFIX):
            metadata_key = key[len(BAGGAGE_METADATA_PREFIX):]
            if metadata_key:
                attrs[f"{LangfuseOtelSpanAttributes.TRACE_METADATA}.{metadata_key}"] = value
    return attrs


def read_from_context(ctx: Optional[Context] = None) -> Dict[str, Any]:
    """Return the propagated trace attributes for `ctx` as wire attributes.

    The in-process scope wins field by field; baggage fills in whatever the
    scope does not set (e.g. attributes received from an upstream service).
    """
    attrs = _scope_from_baggage(ctx)
    scope = get_propagation_scope(ctx)
    if scope is not None:
        attrs.update(scope.to_wire_attributes())
    return attrs

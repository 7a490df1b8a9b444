"""Attribute builder: typed Langfuse attribute models -> flat OTel wire attributes.

The functions here are pure. They take the pydantic attribute models from
`langfuse_pipeline.models.langfuse` (or equivalent plain mappings) and return
a flat ``dict`` ready for ``span.set_attributes``.

Serialization rules:
    - ``input`` / ``output`` / ``usage_details`` / ``cost_details`` /
      ``model_parameters`` / ``completion_start_time`` are JSON encoded unless
      already a string (callers may pass pre-serialized payloads).
    - Metadata that is a mapping flattens to ``<prefix>.<key>`` (strings raw,
      other values JSON); scalar or list metadata lands on ``<prefix>``.
    - Anything that resolves to ``None`` is omitted, never sent as "null".
    - A value that cannot be JSON encoded becomes ``"<failed to serialize>"``.
"""
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from .models.langfuse import (
    BaseObservationAttributes,
    GenerationAttributes,
    ObservationType,
    TraceAttributes,
    coerce_observation_attributes,
    coerce_trace_attributes,
)

__all__ = [
    "LangfuseOtelSpanAttributes",
    "FAILED_TO_SERIALIZE",
    "build_trace_attributes",
    "build_observation_attributes",
    "build_span_attributes",
    "build_generation_attributes",
    "build_event_attributes",
    "serialize",
    "flatten_metadata",
]

FAILED_TO_SERIALIZE = "<failed to serialize>"

WireAttributes = Dict[str, Any]


class LangfuseOtelSpanAttributes:
    """Wire attribute keys understood by the Langfuse OTLP endpoint."""

    # Trace
    TRACE_NAME = "langfuse.trace.name"
    TRACE_USER_ID = "langfuse.trace.user.id"
    TRACE_SESSION_ID = "langfuse.trace.session.id"
    TRACE_TAGS = "langfuse.trace.tags"
    TRACE_PUBLIC = "langfuse.trace.public"
    TRACE_METADATA = "langfuse.trace.metadata"
    TRACE_INPUT = "langfuse.trace.input"
    TRACE_OUTPUT = "langfuse.trace.output"

    # Observation
    OBSERVATION_TYPE = "langfuse.observation.type"
    OBSERVATION_METADATA = "langfuse.observation.metadata"
    OBSERVATION_LEVEL = "langfuse.observation.level"
    OBSERVATION_STATUS_MESSAGE = "langfuse.observation.status_message"
    OBSERVATION_INPUT = "langfuse.observation.input"
    OBSERVATION_OUTPUT = "langfuse.observation.output"

    # Generation
    OBSERVATION_COMPLETION_START_TIME = "langfuse.observation.completion_start_time"
    OBSERVATION_MODEL = "langfuse.observation.model"
    OBSERVATION_MODEL_PARAMETERS = "langfuse.observation.model_parameters"
    OBSERVATION_USAGE_DETAILS = "langfuse.observation.usage_details"
    OBSERVATION_COST_DETAILS = "langfuse.observation.cost_details"
    OBSERVATION_PROMPT_NAME = "langfuse.observation.prompt.name"
    OBSERVATION_PROMPT_VERSION = "langfuse.observation.prompt.version"

    # General
    ENVIRONMENT = "langfuse.environment"
    RELEASE = "langfuse.release"
    VERSION = "langfuse.version"


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def serialize(obj: Any) -> Optional[str]:
    """JSON encode `obj`; strings pass through, None stays None."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj
    try:
        return json.dumps(obj, default=_json_default, ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        return FAILED_TO_SERIALIZE


def flatten_metadata(metadata: Any, prefix: str) -> Dict[str, str]:
    """Flatten metadata under `prefix` following the rules in the module docstring."""
    if metadata is None:
        return {}
    if isinstance(metadata, BaseModel):
        metadata = metadata.model_dump(mode="python")
    if not isinstance(metadata, Mapping):
        serialized = serialize(metadata)
        return {prefix: serialized} if serialized is not None else {}
    flattened: Dict[str, str] = {}
    for key, value in metadata.items():
        serialized = value if isinstance(value, str) else serialize(value)
        if serialized is not None:
            flattened[f"{prefix}.{key}"] = serialized
    return flattened


def _drop_none(attributes: Mapping[str, Any]) -> WireAttributes:
    return {k: v for k, v in attributes.items() if v is not None}


def build_trace_attributes(
    attributes: Union[TraceAttributes, Mapping[str, Any], None] = None,
) -> WireAttributes:
    """Map trace attributes onto the flat `langfuse.trace.*` wire keys."""
    attrs = coerce_trace_attributes(attributes)  # type: ignore[arg-type]
    tags = list(dict.fromkeys(attrs.tags)) if attrs.tags else None
    wire = {
        LangfuseOtelSpanAttributes.TRACE_NAME: attrs.name,
        LangfuseOtelSpanAttributes.TRACE_USER_ID: attrs.user_id,
        LangfuseOtelSpanAttributes.TRACE_SESSION_ID: attrs.session_id,
        LangfuseOtelSpanAttributes.VERSION: attrs.version,
        LangfuseOtelSpanAttributes.RELEASE: attrs.release,
        LangfuseOtelSpanAttributes.TRACE_INPUT: serialize(attrs.input),
        LangfuseOtelSpanAttributes.TRACE_OUTPUT: serialize(attrs.output),
        LangfuseOtelSpanAttributes.TRACE_TAGS: tags,
        LangfuseOtelSpanAttributes.ENVIRONMENT: attrs.environment,
        LangfuseOtelSpanAttributes.TRACE_PUBLIC: attrs.public,
        **flatten_metadata(attrs.metadata, LangfuseOtelSpanAttributes.TRACE_METADATA),
    }
    return _drop_none(wire)


def _common_observation_attributes(kind: str, attrs: BaseObservationAttributes) -> WireAttributes:
    return {
        LangfuseOtelSpanAttributes.OBSERVATION_TYPE: kind,
        LangfuseOtelSpanAttributes.OBSERVATION_LEVEL: attrs.level,
        LangfuseOtelSpanAttributes.OBSERVATION_STATUS_MESSAGE: attrs.status_message,
        LangfuseOtelSpanAttributes.VERSION: attrs.version,
        LangfuseOtelSpanAttributes.OBSERVATION_INPUT: serialize(attrs.input),
        LangfuseOtelSpanAttributes.OBSERVATION_OUTPUT: serialize(attrs.output),
    }


def build_observation_attributes(
    kind: ObservationType,
    attributes: Union[BaseObservationAttributes, Mapping[str, Any], None] = None,
) -> WireAttributes:
    """Map observation attributes of the given kind onto `langfuse.observation.*` keys."""
    attrs = coerce_observation_attributes(kind, attributes)  # type: ignore[arg-type]
    wire = _common_observation_attributes(kind, attrs)
    if isinstance(attrs, GenerationAttributes):
        wire.update(
            {
                LangfuseOtelSpanAttributes.OBSERVATION_MODEL: attrs.model,
                LangfuseOtelSpanAttributes.OBSERVATION_MODEL_PARAMETERS: serialize(attrs.model_parameters),
                LangfuseOtelSpanAttributes.OBSERVATION_USAGE_DETAILS: serialize(attrs.usage_details),
                LangfuseOtelSpanAttributes.OBSERVATION_COST_DETAILS: serialize(attrs.cost_details),
                LangfuseOtelSpanAttributes.OBSERVATION_COMPLETION_START_TIME: serialize(
                    attrs.completion_start_time
                ),
            }
        )
        if attrs.prompt is not None and not attrs.prompt.is_fallback:
            wire[LangfuseOtelSpanAttributes.OBSERVATION_PROMPT_NAME] = attrs.prompt.name
            wire[LangfuseOtelSpanAttributes.OBSERVATION_PROMPT_VERSION] = attrs.prompt.version
    wire.update(flatten_metadata(attrs.metadata, LangfuseOtelSpanAttributes.OBSERVATION_METADATA))
    return _drop_none(wire)


def build_span_attributes(attributes=None) -> WireAttributes:
    return build_observation_attributes("span", attributes)


def build_generation_attributes(attributes=None) -> WireAttributes:
    return build_observation_attributes("generation", attributes)


def build_event_attributes(attributes=None) -> WireAttributes:
    return build_observation_attributes("event", attributes)

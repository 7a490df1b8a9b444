"""langfuse-pipeline: sanitize, batch and ship LLM observations to Langfuse over OTLP."""
from __future__ import annotations

from .attributes import (
    LangfuseOtelSpanAttributes,
    build_event_attributes,
    build_generation_attributes,
    build_observation_attributes,
    build_span_attributes,
    build_trace_attributes,
)
from .config import ExportMode, Settings, get_settings
from .export_strategy import (
    BatchExportStrategy,
    ExportStrategy,
    ImmediateExportStrategy,
    create_export_strategy,
)
from .media import LangfuseMedia, redact_media
from .propagation import PropagationScope, propagate, propagate_attributes, read_from_context
from .shipper import flush_tracing, init_tracing, shutdown_tracing
from .span_filter import is_default_export_span
from .span_processor import LangfuseSpanProcessor
from .tracing import (
    create_event,
    get_tracer,
    observe,
    start_active_observation,
    start_observation,
    update_active_observation,
    update_active_trace,
)

__all__ = [
    "LangfuseOtelSpanAttributes",
    "build_event_attributes",
    "build_generation_attributes",
    "build_observation_attributes",
    "build_span_attributes",
    "build_trace_attributes",
    "ExportMode",
    "Settings",
    "get_settings",
    "BatchExportStrategy",
    "ExportStrategy",
    "ImmediateExportStrategy",
    "create_export_strategy",
    "LangfuseMedia",
    "redact_media",
    "PropagationScope",
    "propagate",
    "propagate_attributes",
    "read_from_context",
    "flush_tracing",
    "init_tracing",
    "shutdown_tracing",
    "is_default_export_span",
    "LangfuseSpanProcessor",
    "create_event",
    "get_tracer",
    "observe",
    "start_active_observation",
    "start_observation",
    "update_active_observation",
    "update_active_trace",
]

"""OpenTelemetry span processor that filters, sanitizes and ships Langfuse spans.

`LangfuseSpanProcessor` plugs into a `TracerProvider` like any other
processor. Per span:

on_start
    Stamps ``langfuse.environment`` / ``langfuse.release`` from
    configuration and the ambient propagated attributes (user id, session
    id, version, tags, metadata) found in the parent context.

on_end
    1. Export predicate (default: `span_filter.is_default_export_span`).
       A predicate that raises drops the span.
    2. User mask on observation / trace input, output and metadata.
    3. Base64 media redaction on the same attributes; the decoded bytes are
       handed to the optional `MediaUploader`. A value that sanitizes to
       ``None`` is removed from the span.
    4. The sanitized span goes to the export strategy (batched or
       immediate).

``force_flush`` and ``shutdown`` wait for pending media uploads before
flushing the strategy.
"""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Union

from opentelemetry.context import Context
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor
from opentelemetry.sdk.trace.export import SpanExporter

from .attributes import LangfuseOtelSpanAttributes
from .config import DEFAULT_KNOWN_INSTRUMENTATION_SCOPES, ExportMode
from .export_strategy import (
    DEFAULT_FLUSH_AT,
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_FLUSH_TIMEOUT_MILLIS,
    ExportStrategy,
    create_export_strategy,
)
from .masking import MaskFunction, apply_mask
from .media import LangfuseMedia, redact_media
from .media_api import MediaUploader
from .propagation import read_from_context
from .span_filter import is_default_export_span

logger = logging.getLogger(__name__)

__all__ = [
    "LangfuseSpanProcessor",
    "ShouldExportSpan",
    "SANITIZED_ATTRIBUTES",
    "SANITIZED_ATTRIBUTE_PREFIXES",
]

ShouldExportSpan = Callable[[ReadableSpan], bool]

# attribute key -> Media API field name
SANITIZED_ATTRIBUTES: Dict[str, str] = {
    LangfuseOtelSpanAttributes.OBSERVATION_INPUT: "input",
    LangfuseOtelSpanAttributes.OBSERVATION_OUTPUT: "output",
    LangfuseOtelSpanAttributes.TRACE_INPUT: "input",
    LangfuseOtelSpanAttributes.TRACE_OUTPUT: "output",
}

# flattened metadata keys (`<prefix>.<key>`) are matched by prefix
SANITIZED_ATTRIBUTE_PREFIXES: Dict[str, str] = {
    LangfuseOtelSpanAttributes.OBSERVATION_METADATA: "metadata",
    LangfuseOtelSpanAttributes.TRACE_METADATA: "metadata",
}


def _scope_name(span: ReadableSpan) -> Optional[str]:
    scope = span.instrumentation_scope
    return scope.name if scope is not None else None


def _sanitized_field(key: str) -> Optional[str]:
    field = SANITIZED_ATTRIBUTES.get(key)
    if field is not None:
        return field
    for prefix, field in SANITIZED_ATTRIBUTE_PREFIXES.items():
        if key == prefix or key.startswith(prefix + "."):
            return field
    return None


class LangfuseSpanProcessor(SpanProcessor):
    """Span processor for exporting Langfuse observations.

    Args:
        exporter: Destination exporter (usually the OTLP HTTP exporter built
            by `shipper.build_exporter`).
        export_mode: ``"batched"`` (default) or ``"immediate"``.
        flush_at: Pending span count that triggers a flush (batched mode).
        flush_interval: Seconds between timer flushes (batched mode).
        mask: Optional ``mask(data=...)`` callable applied to input, output
            and metadata.
        should_export_span: Optional predicate replacing the default filter.
        environment: Stamped on every span as ``langfuse.environment``.
        release: Stamped on every span as ``langfuse.release``.
        known_scope_prefixes: Instrumentation scope prefixes accepted by the
            default predicate.
        media_uploader: Optional uploader receiving redacted media bytes.
        export_strategy: Prebuilt strategy; overrides the mode/threshold args.
    """

    def __init__(
        self,
        exporter: SpanExporter,
        *,
        export_mode: Union[ExportMode, str] = ExportMode.BATCHED,
        flush_at: int = DEFAULT_FLUSH_AT,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        mask: Optional[MaskFunction] = None,
        should_export_span: Optional[ShouldExportSpan] = None,
        environment: Optional[str] = None,
        release: Optional[str] = None,
        known_scope_prefixes: Iterable[str] = DEFAULT_KNOWN_INSTRUMENTATION_SCOPES,
        media_uploader: Optional[MediaUploader] = None,
        export_strategy: Optional[ExportStrategy] = None,
    ) -> None:
        self._strategy = export_strategy or create_export_strategy(
            export_mode, exporter, flush_at=flush_at, flush_interval=flush_interval
        )
        self._mask = mask
        self._should_export_span: ShouldExportSpan = should_export_span or functools.partial(
            is_default_export_span, prefixes=tuple(known_scope_prefixes)
        )
        self._environment = environment
        self._release = release
        self._media_uploader = media_uploader
        self._shutdown = False

    @property
    def export_strategy(self) -> ExportStrategy:
        return self._strategy

    def on_start(self, span: Span, parent_context: Optional[Context] = None) -> None:
        attributes: Dict[str, Any] = {}
        if self._environment:
            attributes[LangfuseOtelSpanAttributes.ENVIRONMENT] = self._environment
        if self._release:
            attributes[LangfuseOtelSpanAttributes.RELEASE] = self._release
        attributes.update(read_from_context(parent_context))
        if attributes:
            span.set_attributes(attributes)

    def on_end(self, span: ReadableSpan) -> None:
        if self._shutdown:
            logger.warning("Span processor is shut down; dropping span %r", span.name)
            return
        if not self._is_exportable(span):
            return
        self._strategy.on_end(self._sanitize(span))

    def _is_exportable(self, span: ReadableSpan) -> bool:
        try:
            keep = bool(self._should_export_span(span))
        except Exception:
            logger.error(
                "Export predicate failed for span %r (scope %r); dropping span",
                span.name,
                _scope_name(span),
                exc_info=True,
            )
            return False
        if not keep:
            logger.debug("Dropping span %r from scope %r", span.name, _scope_name(span))
        return keep

    def _sanitize(self, span: ReadableSpan) -> ReadableSpan:
        original = span.attributes or {}
        attributes = dict(original)
        changed = False
        for key, raw in original.items():
            field = _sanitized_field(key)
            if field is None:
                continue
            value = apply_mask(self._mask, raw)
            value = redact_media(value, on_media=self._media_callback(span, field))
            if value is None:
                # attribute values may not be null on the wire
                del attributes[key]
                changed = True
            elif value != raw:
                attributes[key] = value
                changed = True
        if not changed:
            return span
        return ReadableSpan(
            name=span.name,
            context=span.context,
            parent=span.parent,
            resource=span.resource,
            attributes=attributes,
            events=span.events,
            links=span.links,
            kind=span.kind,
            status=span.status,
            start_time=span.start_time,
            end_time=span.end_time,
            instrumentation_scope=span.instrumentation_scope,
        )

    def _media_callback(
        self, span: ReadableSpan, field: str
    ) -> Optional[Callable[[LangfuseMedia], None]]:
        uploader = self._media_uploader
        if uploader is None or span.context is None:
            return None
        trace_id = format(span.context.trace_id, "032x")
        observation_id = format(span.context.span_id, "016x")

        def _schedule(media: LangfuseMedia) -> None:
            uploader.schedule(media, trace_id=trace_id, observation_id=observation_id, field=field)

        return _schedule

    def force_flush(self, timeout_millis: int = DEFAULT_FLUSH_TIMEOUT_MILLIS) -> bool:
        media_ok = True
        if self._media_uploader is not None:
            media_ok = self._media_uploader.flush(timeout=timeout_millis / 1000)
            if not media_ok:
                logger.warning("Timed out waiting for %d media uploads", self._media_uploader.pending_count)
        return self._strategy.force_flush(timeout_millis) and media_ok

    def shutdown(self) -> None:
        self._shutdown = True
        if self._media_uploader is not None:
            self._media_uploader.shutdown()
        self._strategy.shutdown()

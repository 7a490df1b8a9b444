"""Pipeline setup: OTLP exporter, span processor and tracer provider.

This module wires the configured pieces together:

- `build_exporter` creates the OTLP HTTP exporter for the Langfuse endpoint,
  authenticating with a Basic auth header built from the public / secret
  key pair.
- `build_span_processor` creates the `LangfuseSpanProcessor` with the export
  mode, thresholds, environment / release and media upload from settings.
- `init_tracing` installs the processor on a new `TracerProvider` and
  registers it globally (once per process).
- `flush_tracing` / `shutdown_tracing` are the lifecycle hooks to call before
  exit so buffered spans are sent.
"""
from __future__ import annotations

import base64
import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SpanExporter

from .config import Settings, get_settings
from .masking import MaskFunction
from .media_api import MediaClient, MediaUploader
from .span_processor import LangfuseSpanProcessor, ShouldExportSpan

logger = logging.getLogger(__name__)

__all__ = [
    "build_exporter",
    "build_media_uploader",
    "build_span_processor",
    "init_tracing",
    "flush_tracing",
    "shutdown_tracing",
]

SERVICE_NAME = "langfuse-pipeline"
SERVICE_VERSION = "0.1.0"

_provider: Optional[TracerProvider] = None


def _basic_auth_header(settings: Settings) -> str:
    auth_raw = f"{settings.LANGFUSE_PUBLIC_KEY}:{settings.LANGFUSE_SECRET_KEY}".encode()
    return "Basic " + base64.b64encode(auth_raw).decode()


def build_exporter(settings: Settings) -> OTLPSpanExporter:
    """Create the OTLP HTTP exporter pointed at the Langfuse traces endpoint."""
    if not settings.has_credentials:
        logger.warning("Missing Langfuse keys; exports will be rejected by the server")
    endpoint = settings.otlp_traces_endpoint
    return OTLPSpanExporter(
        endpoint=endpoint,
        headers={"Authorization": _basic_auth_header(settings)},
        timeout=settings.LANGFUSE_TIMEOUT,
    )


def build_media_uploader(settings: Settings) -> Optional[MediaUploader]:
    if not settings.LANGFUSE_MEDIA_UPLOAD_ENABLED:
        return None
    if not settings.has_credentials:
        logger.info("Media upload disabled: Langfuse keys not configured")
        return None
    client = MediaClient(
        base_url=settings.LANGFUSE_BASE_URL,
        public_key=settings.LANGFUSE_PUBLIC_KEY,
        secret_key=settings.LANGFUSE_SECRET_KEY,
        timeout=settings.LANGFUSE_TIMEOUT,
    )
    return MediaUploader(client, max_bytes=settings.MEDIA_MAX_BYTES)


def build_span_processor(
    settings: Settings,
    exporter: Optional[SpanExporter] = None,
    *,
    mask: Optional[MaskFunction] = None,
    should_export_span: Optional[ShouldExportSpan] = None,
    media_uploader: Optional[MediaUploader] = None,
) -> LangfuseSpanProcessor:
    """Build the span processor from settings.

    An explicit `exporter` replaces the OTLP exporter (console exporter for
    dry runs, in-memory exporter in tests). Media upload is only wired when
    the default exporter is used or an uploader is passed in.
    """
    if exporter is None:
        exporter = build_exporter(settings)
        if media_uploader is None:
            media_uploader = build_media_uploader(settings)
    return LangfuseSpanProcessor(
        exporter,
        export_mode=settings.LANGFUSE_EXPORT_MODE,
        flush_at=settings.LANGFUSE_FLUSH_AT,
        flush_interval=settings.LANGFUSE_FLUSH_INTERVAL,
        mask=mask,
        should_export_span=should_export_span,
        environment=settings.LANGFUSE_TRACING_ENVIRONMENT,
        release=settings.LANGFUSE_RELEASE,
        known_scope_prefixes=settings.LANGFUSE_KNOWN_INSTRUMENTATION_SCOPES,
        media_uploader=media_uploader,
    )


def init_tracing(
    settings: Optional[Settings] = None,
    exporter: Optional[SpanExporter] = None,
    *,
    mask: Optional[MaskFunction] = None,
    should_export_span: Optional[ShouldExportSpan] = None,
    set_global: bool = True,
) -> TracerProvider:
    """Create a tracer provider running the Langfuse span processor.

    With ``set_global=True`` (default) the provider is registered as the
    global OpenTelemetry tracer provider. The global registration happens
    once per process; later calls return the already installed provider.

    Args:
        settings: Pipeline settings (defaults to `get_settings()`).
        exporter: Optional exporter replacing the OTLP exporter.
        mask: Optional mask applied to span input / output.
        should_export_span: Optional predicate replacing the default filter.
        set_global: Register the provider globally.

    Returns:
        The configured `TracerProvider`.
    """
    global _provider
    if set_global and _provider is not None:
        return _provider
    settings = settings or get_settings()
    resource = Resource.create(
        {
            "service.name": SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "telemetry.sdk.language": "python",
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        build_span_processor(
            settings, exporter, mask=mask, should_export_span=should_export_span
        )
    )
    if set_global:
        trace.set_tracer_provider(provider)
        _provider = provider
        logger.info(
            "Initialized Langfuse tracing endpoint=%s mode=%s",
            settings.otlp_traces_endpoint,
            settings.LANGFUSE_EXPORT_MODE.value,
        )
    return provider


def flush_tracing(timeout_millis: int = 30_000) -> bool:
    if _provider is None:
        return True
    return _provider.force_flush(timeout_millis)


def shutdown_tracing() -> None:
    """Flush any buffered spans and shut down the processor and exporter.

    Call at the end of the application's lifecycle so that all telemetry is
    sent before the process exits.
    """
    global _provider
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None

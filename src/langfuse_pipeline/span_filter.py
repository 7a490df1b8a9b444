"""Export predicates deciding which finished spans leave the process.

A host application usually runs several instrumentations at once (HTTP
clients, databases, web frameworks). Only the LLM related spans belong in
Langfuse, so the default predicate keeps a span when any of these hold:

    - it was created by the Langfuse tracer (scope ``langfuse-sdk``)
    - it carries at least one ``gen_ai.*`` attribute (OTel GenAI semconv)
    - its instrumentation scope is a known LLM instrumentor, matched exactly
      or as ``<prefix>.<anything>``
"""
from __future__ import annotations

from typing import Iterable, Optional

from opentelemetry.sdk.trace import ReadableSpan

from .config import DEFAULT_KNOWN_INSTRUMENTATION_SCOPES

__all__ = [
    "LANGFUSE_TRACER_NAME",
    "is_langfuse_span",
    "is_genai_span",
    "is_known_llm_instrumentor",
    "is_default_export_span",
]

LANGFUSE_TRACER_NAME = "langfuse-sdk"


def _scope_name(span: ReadableSpan) -> Optional[str]:
    scope = span.instrumentation_scope
    return scope.name if scope is not None else None


def is_langfuse_span(span: ReadableSpan) -> bool:
    return _scope_name(span) == LANGFUSE_TRACER_NAME


def is_genai_span(span: ReadableSpan) -> bool:
    attributes = span.attributes or {}
    return any(isinstance(key, str) and key.startswith("gen_ai.") for key in attributes)


def is_known_llm_instrumentor(
    span: ReadableSpan, prefixes: Iterable[str] = DEFAULT_KNOWN_INSTRUMENTATION_SCOPES
) -> bool:
    name = _scope_name(span)
    if not name:
        return False
    return any(name == prefix or name.startswith(f"{prefix}.") for prefix in prefixes)


def is_default_export_span(
    span: ReadableSpan, prefixes: Iterable[str] = DEFAULT_KNOWN_INSTRUMENTATION_SCOPES
) -> bool:
    """Default predicate: Langfuse spans, GenAI spans and known LLM instrumentors."""
    return is_langfuse_span(span) or is_genai_span(span) or is_known_llm_instrumentor(span, prefixes)

import sys
from pathlib import Path

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

# Ensure `src` is on sys.path for tests when the package is not installed editable.
ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from langfuse_pipeline.config import get_settings  # noqa: E402
from langfuse_pipeline.span_processor import LangfuseSpanProcessor  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def memory_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def make_provider(memory_exporter):
    """Build tracer providers running the Langfuse processor in immediate mode."""
    providers = []

    def _make(**processor_kwargs):
        processor_kwargs.setdefault("export_mode", "immediate")
        provider = TracerProvider()
        provider.add_span_processor(LangfuseSpanProcessor(memory_exporter, **processor_kwargs))
        providers.append(provider)
        return provider

    yield _make
    for provider in providers:
        provider.shutdown()


@pytest.fixture
def provider(make_provider):
    return make_provider()


@pytest.fixture
def tracer(provider):
    return provider.get_tracer("langfuse-sdk")

"""Application configuration management using Pydantic Settings.

This module defines the `Settings` class, which loads configuration parameters
from environment variables and a `.env` file. It centralizes the tunable
parameters of the span pipeline: Langfuse credentials and endpoint, export
mode and batching thresholds, environment / release tagging, media upload and
the instrumentation scope allow-list used by the default export predicate.

The `get_settings` function provides a cached, singleton instance of the
configuration, ensuring consistent settings throughout the application.
"""
from __future__ import annotations

import json
from enum import Enum
from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode
from pydantic_settings import SettingsConfigDict as _SettingsConfigDict

DEFAULT_BASE_URL = "https://cloud.langfuse.com"
OTLP_TRACES_PATH = "/api/public/otel/v1/traces"

# Instrumentation scopes whose spans are exported by default even without
# gen_ai.* attributes. Membership is a product decision; override through
# LANGFUSE_KNOWN_INSTRUMENTATION_SCOPES (comma separated or JSON list).
DEFAULT_KNOWN_INSTRUMENTATION_SCOPES: tuple[str, ...] = (
    "agent_framework",
    "ai",
    "haystack",
    "langsmith",
    "litellm",
    "openinference",
    "opentelemetry.instrumentation.anthropic",
    "strands-agents",
    "vllm",
)


class ExportMode(str, Enum):
    BATCHED = "batched"
    IMMEDIATE = "immediate"


class Settings(BaseSettings):
    """Defines all pipeline configuration parameters.

    Values come from environment variables or a `.env` file. Threshold
    validation happens here so that a bad `LANGFUSE_FLUSH_AT` or
    `LANGFUSE_FLUSH_INTERVAL` fails at setup instead of at the first flush.
    """

    model_config = _SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Langfuse / OTLP
    LANGFUSE_PUBLIC_KEY: str = Field(default="", description="Langfuse public key")
    LANGFUSE_SECRET_KEY: str = Field(default="", description="Langfuse secret key")
    LANGFUSE_BASE_URL: str = Field(
        default=DEFAULT_BASE_URL, description="Base URL for the Langfuse host"
    )
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = Field(
        default=None, description="Override OTLP endpoint (otherwise derived from LANGFUSE_BASE_URL)"
    )
    LANGFUSE_TIMEOUT: float = Field(
        default=5, description="Timeout (seconds) for each export / media request"
    )

    # Export strategy
    LANGFUSE_EXPORT_MODE: ExportMode = Field(
        default=ExportMode.BATCHED,
        description="'batched' queues spans and flushes by size/interval; 'immediate' exports each span on end",
    )
    LANGFUSE_FLUSH_AT: int = Field(
        default=512, description="Number of pending spans that triggers a flush (batched mode)"
    )
    LANGFUSE_FLUSH_INTERVAL: float = Field(
        default=5, description="Seconds between timer-triggered flushes (batched mode)"
    )

    # Tagging
    LANGFUSE_TRACING_ENVIRONMENT: Optional[str] = Field(
        default=None, description="Environment stamped on every span (langfuse.environment)"
    )
    LANGFUSE_RELEASE: Optional[str] = Field(
        default=None, description="Release stamped on every span (langfuse.release)"
    )

    # Media
    LANGFUSE_MEDIA_UPLOAD_ENABLED: bool = Field(
        default=True,
        description=(
            "Upload base64 media found in span payloads to the Langfuse Media API. "
            "Redaction to media tokens happens regardless."
        ),
    )
    MEDIA_MAX_BYTES: int = Field(
        default=25_000_000,
        description="Maximum decoded media size (bytes) allowed for upload (default 25MB)",
    )

    # Export predicate
    LANGFUSE_KNOWN_INSTRUMENTATION_SCOPES: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_KNOWN_INSTRUMENTATION_SCOPES),
        description="Instrumentation scope name prefixes exported by the default predicate",
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    @field_validator("LANGFUSE_KNOWN_INSTRUMENTATION_SCOPES", mode="before")
    @classmethod
    def _split_scopes(cls, value):  # type: ignore[no-untyped-def]
        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def validate_thresholds(self):  # type: ignore[override]
        """Reject export thresholds that would never flush or never time out."""
        if self.LANGFUSE_FLUSH_AT < 1:
            raise ValueError(f"LANGFUSE_FLUSH_AT must be >= 1 (got {self.LANGFUSE_FLUSH_AT})")
        if self.LANGFUSE_FLUSH_INTERVAL <= 0:
            raise ValueError(
                f"LANGFUSE_FLUSH_INTERVAL must be > 0 seconds (got {self.LANGFUSE_FLUSH_INTERVAL})"
            )
        if self.LANGFUSE_TIMEOUT <= 0:
            raise ValueError(f"LANGFUSE_TIMEOUT must be > 0 seconds (got {self.LANGFUSE_TIMEOUT})")
        return self

    @property
    def otlp_traces_endpoint(self) -> str:
        """Return the OTLP traces endpoint, deriving it from the base URL if needed."""
        if self.OTEL_EXPORTER_OTLP_ENDPOINT:
            return self.OTEL_EXPORTER_OTLP_ENDPOINT.rstrip("/")
        base = self.LANGFUSE_BASE_URL.rstrip("/")
        # If user already appended the OTLP path we won't duplicate it
        if base.endswith(OTLP_TRACES_PATH):
            return base
        if base.endswith("/api/public/otel"):
            return base + "/v1/traces"
        return base + OTLP_TRACES_PATH

    @property
    def has_credentials(self) -> bool:
        return bool(self.LANGFUSE_PUBLIC_KEY and self.LANGFUSE_SECRET_KEY)


@lru_cache(maxsize=1)
def get_settings() -> Settings:  # pragma: no cover - trivial
    """Return a cached, singleton instance of the application settings."""
    return Settings()

"""Command line entry point for langfuse-pipeline.

Two commands:

show-config
    Print the effective settings (environment + `.env`) with the secret key
    masked, plus the derived OTLP endpoint.
send-test-trace
    Emit a small demo trace (span, nested generation and event, propagated
    user / session / tags) through the full span pipeline and shut it down,
    which flushes everything. ``--dry-run`` swaps the OTLP exporter for the
    console exporter so nothing leaves the machine.
"""
from __future__ import annotations

import logging
import sys
from typing import Optional

import typer
from dotenv import find_dotenv, load_dotenv
from opentelemetry.sdk.trace.export import ConsoleSpanExporter
from pydantic import ValidationError

from .config import Settings, get_settings
from .propagation import propagate_attributes
from .shipper import init_tracing
from .tracing import create_event, start_active_observation

# Load .env file if present (before any config access)
_env_file = find_dotenv(usecwd=True)
if _env_file:
    load_dotenv(_env_file)

app = typer.Typer(help="Langfuse span pipeline CLI")


def _mask_secret(value: str) -> str:
    if not value:
        return ""
    return value[:4] + "*" * max(len(value) - 4, 4)


def _load_settings() -> Settings:
    try:
        settings = get_settings()
    except ValidationError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2) from e
    logging.basicConfig(level=settings.LOG_LEVEL)
    return settings


@app.callback()
def main() -> None:  # pragma: no cover - simple callback
    """langfuse-pipeline CLI.

    Use a subcommand like 'show-config' or 'send-test-trace'.
    """


@app.command("show-config", help="Print the effective configuration (secrets masked).")
def show_config() -> None:
    settings = _load_settings()
    for key, value in settings.model_dump(mode="json").items():
        if key == "LANGFUSE_SECRET_KEY":
            value = _mask_secret(value)
        typer.echo(f"{key}={value}")
    typer.echo(f"otlp_traces_endpoint={settings.otlp_traces_endpoint}")


@app.command("send-test-trace", help="Send a demo trace through the span pipeline.")
def send_test_trace(
    dry_run: bool = typer.Option(
        False, "--dry-run/--no-dry-run", help="Print spans to stdout instead of exporting them"
    ),
    user_id: Optional[str] = typer.Option("demo-user", help="User id propagated to all spans"),
    session_id: Optional[str] = typer.Option(None, help="Session id propagated to all spans"),
) -> None:
    settings = _load_settings()
    logger = logging.getLogger(__name__)
    if not dry_run and not settings.has_credentials:
        typer.echo("LANGFUSE_PUBLIC_KEY / LANGFUSE_SECRET_KEY are required unless --dry-run", err=True)
        raise typer.Exit(code=1)

    exporter = ConsoleSpanExporter(out=sys.stdout) if dry_run else None
    provider = init_tracing(settings, exporter, set_global=False)
    try:
        with propagate_attributes(user_id=user_id, session_id=session_id, tags=["test-trace"]):
            with start_active_observation(
                "langfuse-pipeline-test", tracer_provider=provider, input={"question": "ping?"}
            ) as root:
                root.update_trace(name="langfuse-pipeline-test")
                generation = root.start_observation(
                    "echo-model",
                    as_type="generation",
                    model="echo-1",
                    input=[{"role": "user", "content": "ping?"}],
                )
                generation.update(
                    output={"role": "assistant", "content": "pong"},
                    usage_details={"input": 2, "output": 1},
                )
                generation.end()
                create_event("test-event", tracer_provider=provider, metadata={"source": "cli"})
                root.update(output={"answer": "pong"})
        trace_id = root.trace_id
    finally:
        provider.shutdown()
    logger.info("Test trace %s finished", trace_id)
    typer.echo(f"Sent test trace {trace_id} dry_run={dry_run}")


if __name__ == "__main__":  # pragma: no cover
    app()

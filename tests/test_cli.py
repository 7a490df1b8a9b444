from __future__ import annotations

import pytest
from typer.testing import CliRunner

from langfuse_pipeline.__main__ import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LANGFUSE_PUBLIC_KEY", "pk-lf-1234")
    monkeypatch.setenv("LANGFUSE_SECRET_KEY", "sk-lf-secret-value")
    monkeypatch.setenv("LANGFUSE_EXPORT_MODE", "immediate")


def test_show_config_masks_secret():
    result = runner.invoke(app, ["show-config"])
    assert result.exit_code == 0, result.output
    assert "LANGFUSE_PUBLIC_KEY=pk-lf-1234" in result.output
    assert "sk-lf-secret-value" not in result.output
    assert "LANGFUSE_SECRET_KEY=sk-l*" in result.output
    assert "otlp_traces_endpoint=https://cloud.langfuse.com/api/public/otel/v1/traces" in result.output


def test_show_config_reports_invalid_settings(monkeypatch):
    monkeypatch.setenv("LANGFUSE_FLUSH_AT", "0")
    result = runner.invoke(app, ["show-config"])
    assert result.exit_code == 2


def test_send_test_trace_dry_run_prints_spans():
    result = runner.invoke(app, ["send-test-trace", "--dry-run", "--session-id", "sess-1"])
    assert result.exit_code == 0, result.output
    assert "Sent test trace" in result.output
    assert "dry_run=True" in result.output
    assert "langfuse-pipeline-test" in result.output
    assert "echo-model" in result.output
    assert "sess-1" in result.output


def test_send_test_trace_requires_credentials(monkeypatch):
    monkeypatch.delenv("LANGFUSE_PUBLIC_KEY")
    result = runner.invoke(app, ["send-test-trace"])
    assert result.exit_code == 1

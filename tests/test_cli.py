"""Tests for the eventrelay CLI."""

import pytest
from typer.testing import CliRunner

from eventrelay import __version__
from eventrelay.cli import _parse_duration_to_seconds, app
from eventrelay.config import clear_settings_cache

runner = CliRunner()


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("1d", 86400),
        ("6h", 21600),
        ("30m", 1800),
        ("90s", 90),
        ("2H", 7200),
        ("0h", None),
        ("h", None),
        ("1w", None),
        ("-1d", None),
        ("", None),
    ],
)
def test_parse_duration(value, expected):
    assert _parse_duration_to_seconds(value) == expected


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_show_config_masks_secrets():
    clear_settings_cache()
    result = runner.invoke(app, ["show-config"], env={"COLUMNS": "200"})

    assert result.exit_code == 0
    assert "webhook_max_attempts" in result.output
    assert "********" in result.output
    assert "test_root_api_key_12345" not in result.output
    assert "test-webhook-secret-key" not in result.output


def test_generate_secret_key():
    first = runner.invoke(app, ["generate-secret-key"])
    second = runner.invoke(app, ["generate-secret-key"])

    assert first.exit_code == 0
    assert len(first.output.strip()) >= 43
    assert first.output != second.output


def test_serve_rejects_conflicting_flags():
    result = runner.invoke(app, ["serve", "--api-only", "--worker-only"])
    assert result.exit_code == 1


def test_invalid_tenant_id():
    result = runner.invoke(app, ["jobs", "list", "not-a-uuid"])
    assert result.exit_code == 1
    assert "Invalid tenant id" in result.output


def test_cleanup_rejects_bad_duration():
    result = runner.invoke(app, ["cleanup", "--older-than", "soon"])
    assert result.exit_code == 1
    assert "Invalid duration format" in result.output

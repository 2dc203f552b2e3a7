"""Tests for the click entry point (offline subcommands and config checks)."""

import logging
import sys
from pathlib import Path

import orjson
import pytest
from click.testing import CliRunner

from spaces_traxmate_bridge import cli

from conftest import AUSTIN_FLOOR, make_event

ENV_VARS = (
    "BRIDGE_CONFIG",
    "BRIDGE_LOG_LEVEL",
    "CISCO_SPACES_ACCESS_TOKEN",
    "CISCO_SPACES_FIREHOSE_URL",
    "TRAXMATE_API_KEY",
    "TRAXMATE_INGESTION_URL",
    "PORT",
)


@pytest.fixture(autouse=True)
def quiet(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "_setup_logging", lambda *args, **kwargs: None)


def _config(tmp_path: Path, **spaces) -> Path:
    data = {
        "spaces": {"access_token": "tok-abcd", "firehose_url": "https://spaces.test/fh", **spaces},
        "traxmate": {"api_key": "key-abcd"},
        "floors": [
            {"location_hierarchy": "HQ>Floor1", "origin_lat": 51.5, "origin_lng": -0.12},
        ],
    }
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps(data))
    return path


def test_floors_lists_table(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli.main, ["-c", str(_config(tmp_path)), "floors"])
    assert result.exit_code == 0, result.output
    assert "HQ>Floor1\torigin=(51.5, -0.12)\tscale=1e-05" in result.output
    # an explicit table replaces the built-in default
    assert AUSTIN_FLOOR not in result.output


def test_transform_writes_ndjson(tmp_path: Path) -> None:
    events = tmp_path / "events.json"
    events.write_bytes(orjson.dumps([
        make_event(locationHierarchy="HQ>Floor1"),
        make_event(lastSeen="yesterday"),
    ]))
    result = CliRunner().invoke(
        cli.main, ["-c", str(_config(tmp_path)), "transform", str(events)],
    )
    assert result.exit_code == 0, result.output
    lines = [orjson.loads(line) for line in result.stdout.splitlines() if line.strip()]
    assert len(lines) == 2
    assert lines[0]["valid"] is True
    assert lines[0]["record"]["latitude"] == pytest.approx(51.502)
    assert lines[1] == {
        "error": {"code": "invalid_timestamp", "message": lines[1]["error"]["message"]},
        "valid": False,
    }


def test_validate_config_ok(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli.main, ["-c", str(_config(tmp_path)), "--validate-config"])
    assert result.exit_code == 0
    assert "Configuration is valid." in result.output


def test_validate_config_missing_token(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cli.main, ["-c", str(_config(tmp_path, access_token="")), "--validate-config"],
    )
    assert result.exit_code == 1
    assert "CISCO_SPACES_ACCESS_TOKEN" in result.output


def test_overrides_fill_environment_config() -> None:
    result = CliRunner().invoke(cli.main, [
        "--access-token", "tok-abcd",
        "--firehose-url", "https://spaces.test/fh",
        "--api-key", "key-abcd",
        "--validate-config",
    ])
    assert result.exit_code == 0, result.output


def test_schema_violation_exits(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_bytes(orjson.dumps({"status": {"port": 70000}}))
    result = CliRunner().invoke(cli.main, ["-c", str(path), "floors"])
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_json_formatter_skips_empty_exc_info() -> None:
    """A record whose exc_info holds no exception carries no exception field."""
    record = logging.LogRecord(
        "spaces_traxmate_bridge", logging.ERROR, __file__, 1, "boom", None, (None, None, None)
    )
    entry = orjson.loads(cli._JsonFormatter().format(record))
    assert entry["event"] == "boom"
    assert entry["service"] == "traxmate-bridge"
    assert "exception" not in entry


def test_json_formatter_includes_traceback() -> None:
    try:
        raise ValueError("bad frame")
    except ValueError:
        record = logging.LogRecord(
            "spaces_traxmate_bridge", logging.ERROR, __file__, 1, "failed", None,
            sys.exc_info(),
        )
    entry = orjson.loads(cli._JsonFormatter().format(record))
    assert "ValueError: bad frame" in entry["exception"]

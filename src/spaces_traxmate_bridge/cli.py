"""Click CLI for the Spaces → Traxmate bridge.

Entry point registered in ``pyproject.toml`` as ``spaces-traxmate-bridge``.

Subcommands::

    spaces-traxmate-bridge                      # run the bridge
    spaces-traxmate-bridge transform EVENTS     # transform events offline (NDJSON out)
    spaces-traxmate-bridge floors               # list the calibration table
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import jsonschema
import orjson

from spaces_traxmate_bridge import __version__
from spaces_traxmate_bridge.calibration import FloorCalibrationTable
from spaces_traxmate_bridge.config import AppConfig, LogFileConfig, load_config, require_settings
from spaces_traxmate_bridge.connection import SpacesConnection
from spaces_traxmate_bridge.delivery import TraxmateClient
from spaces_traxmate_bridge.errors import BridgeError, TransformError
from spaces_traxmate_bridge.pipeline import EventPipeline
from spaces_traxmate_bridge.redactor import SecretRedactingFilter, secrets_from_config
from spaces_traxmate_bridge.status import create_app, start_status_server, stop_status_server
from spaces_traxmate_bridge.transform import CoordinateTransformer, validate

logger = logging.getLogger("spaces_traxmate_bridge")

DEFAULT_CONFIG = "/etc/spaces-traxmate-bridge/config.json"
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the service name."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "service": "traxmate-bridge",
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(entry).decode()


def _file_handler(file_cfg: LogFileConfig) -> logging.Handler:
    path = Path(file_cfg.path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        path, maxBytes=file_cfg.max_size_bytes, backupCount=file_cfg.backup_count
    )


def _setup_logging(
    level: str,
    fmt: str = "json",
    secret_values: Optional[list[str]] = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Send every record to stderr (and the rotating file, if enabled) with secrets scrubbed."""
    # "warn" is accepted on the command line and in config files
    numeric = logging.getLevelName("WARNING" if level.lower() == "warn" else level.upper())
    root = logging.getLogger()
    root.setLevel(numeric if isinstance(numeric, int) else logging.INFO)

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file_config is not None and log_file_config.enabled:
        handlers.append(_file_handler(log_file_config))

    formatter = _JsonFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT)
    redactor = SecretRedactingFilter(secret_values or ())
    # filters on handlers also apply to records propagated from child loggers
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        root.addHandler(handler)


def _load(config_path: Optional[str], overrides: dict[str, str]) -> AppConfig:
    """Load config or exit with status 1."""
    cfg_path = config_path or os.environ.get("BRIDGE_CONFIG")
    if cfg_path is None and Path(DEFAULT_CONFIG).exists():
        cfg_path = DEFAULT_CONFIG
    try:
        return load_config(cfg_path, overrides=overrides)
    except (BridgeError, jsonschema.ValidationError) as exc:
        click.echo(f"Config error: {getattr(exc, 'message', exc)}", err=True)
        raise SystemExit(1) from exc


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path (default: environment variables only).")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--access-token", default=None, help="Override the Cisco Spaces access token.")
@click.option("--firehose-url", default=None, help="Override the Cisco Spaces firehose URL.")
@click.option("--api-key", default=None, help="Override the Traxmate API key.")
@click.option("--status-port", type=int, default=None, help="Override the status server port.")
@click.option("--no-status", is_flag=True, help="Do not start the status server.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    validate_only: bool,
    access_token: Optional[str],
    firehose_url: Optional[str],
    api_key: Optional[str],
    status_port: Optional[int],
    no_status: bool,
) -> None:
    """Cisco Spaces BLE firehose → Traxmate ingestion bridge."""
    overrides: dict[str, str] = {}
    if access_token:
        overrides["CISCO_SPACES_ACCESS_TOKEN"] = access_token
    if firehose_url:
        overrides["CISCO_SPACES_FIREHOSE_URL"] = firehose_url
    if api_key:
        overrides["TRAXMATE_API_KEY"] = api_key

    cfg = _load(config_path, overrides)
    effective_level = log_level or os.environ.get("BRIDGE_LOG_LEVEL") or cfg.logging.level
    secret_values = secrets_from_config(cfg, cfg.logging.redact_patterns)
    _setup_logging(effective_level, cfg.logging.format, secret_values, cfg.logging.file)

    ctx.obj = cfg
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    try:
        require_settings(cfg)
    except BridgeError as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    if status_port is not None:
        cfg.status.port = status_port
    if no_status:
        cfg.status.enabled = False

    logger.info("Starting spaces-traxmate-bridge %s", __version__)
    try:
        asyncio.run(_run_bridge(cfg))
    except (BridgeError, OSError) as exc:
        logger.error("Failed to initialize data pipeline: %s", exc)
        click.echo(f"Startup failed: {exc}", err=True)
        raise SystemExit(1) from exc


# ── async bridge ────────────────────────────────────────────────────


async def _run_bridge(cfg: AppConfig) -> None:
    """Build the components, connect, and run until SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    table = FloorCalibrationTable.from_config(cfg.floors)
    transformer = CoordinateTransformer(table)
    client = TraxmateClient(cfg.traxmate)
    pipeline = EventPipeline(transformer, client)
    conn = SpacesConnection(cfg.spaces, on_event=pipeline.handle)
    stop = asyncio.Event()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    runner = None
    try:
        if cfg.status.enabled:
            app = create_app(conn, client, pipeline, table)
            runner = await start_status_server(app, cfg.status.host, cfg.status.port)

        await conn.initialize()
        logger.info("Data pipeline initialized (%d floor mappings)", len(table))
        await stop.wait()
    finally:
        await conn.close()
        await conn.wait_idle()
        await client.close()
        await stop_status_server(runner)
        logger.info("Bridge shut down (%s)", pipeline.stats())


# ── offline tools ───────────────────────────────────────────────────


@main.command("transform")
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def transform_cmd(cfg: AppConfig, events_file: str) -> None:
    """Transform a JSON event (or list of events) and print NDJSON records.

    Each output line carries the record (or the error) and whether the
    record would pass validation.  Nothing is sent to Traxmate.
    """
    try:
        data = orjson.loads(Path(events_file).read_bytes())
    except orjson.JSONDecodeError as exc:
        click.echo(f"Invalid JSON in {events_file}: {exc}", err=True)
        raise SystemExit(1) from exc

    events = data if isinstance(data, list) else [data]
    transformer = CoordinateTransformer(FloorCalibrationTable.from_config(cfg.floors))
    out = sys.stdout.buffer
    for raw in events:
        try:
            record = transformer.transform(raw)
        except TransformError as exc:
            line = {"error": {"code": exc.code, "message": exc.message}, "valid": False}
        else:
            line = {"record": record.to_payload(), "valid": validate(record)}
        out.write(orjson.dumps(line, option=orjson.OPT_APPEND_NEWLINE))
    out.flush()


@main.command("floors")
@click.pass_obj
def floors_cmd(cfg: AppConfig) -> None:
    """List the configured floor calibration table."""
    table = FloorCalibrationTable.from_config(cfg.floors)
    for key, entry in sorted(table.snapshot().items()):
        click.echo(
            f"{key}\torigin=({entry.origin_lat}, {entry.origin_lng})\tscale={entry.scale_factor}"
        )

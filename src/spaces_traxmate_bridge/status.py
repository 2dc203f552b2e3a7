"""Read-only HTTP status surface (``/``, ``/health``, ``/status``).

Served by :mod:`aiohttp.web` on the same event loop as the bridge.  Handlers
only call the read accessors of the components they report on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

import orjson
from aiohttp import web

from spaces_traxmate_bridge import __version__
from spaces_traxmate_bridge.calibration import FloorCalibrationTable
from spaces_traxmate_bridge.connection import SpacesConnection
from spaces_traxmate_bridge.delivery import TraxmateClient
from spaces_traxmate_bridge.pipeline import EventPipeline

logger = logging.getLogger(__name__)

SERVICE_NAME = "Cisco Spaces to Traxmate Middleware Server"

CONNECTION_KEY = web.AppKey("connection", SpacesConnection)
CLIENT_KEY = web.AppKey("client", TraxmateClient)
PIPELINE_KEY = web.AppKey("pipeline", EventPipeline)
TABLE_KEY = web.AppKey("table", FloorCalibrationTable)
STARTED_KEY = web.AppKey("started", float)


def _dumps(obj) -> str:
    return orjson.dumps(obj).decode()


def _json(data: dict, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


async def index(request: web.Request) -> web.Response:
    return _json({
        "message": SERVICE_NAME,
        "version": __version__,
        "status": "running",
        "endpoints": {"health": "/health", "status": "/status"},
    })


async def health(request: web.Request) -> web.Response:
    app = request.app
    return _json({
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - app[STARTED_KEY], 3),
        "services": {
            "cisco": asdict(app[CONNECTION_KEY].status()),
            "traxmate": app[CLIENT_KEY].status(),
        },
    })


async def status(request: web.Request) -> web.Response:
    app = request.app
    floors = {
        key: asdict(entry) for key, entry in app[TABLE_KEY].snapshot().items()
    }
    return _json({
        "cisco": asdict(app[CONNECTION_KEY].status()),
        "traxmate": app[CLIENT_KEY].status(),
        "pipeline": app[PIPELINE_KEY].stats(),
        "floorMappings": floors,
    })


def create_app(
    connection: SpacesConnection,
    client: TraxmateClient,
    pipeline: EventPipeline,
    table: FloorCalibrationTable,
) -> web.Application:
    """Build the status application around the running components."""
    app = web.Application()
    app[CONNECTION_KEY] = connection
    app[CLIENT_KEY] = client
    app[PIPELINE_KEY] = pipeline
    app[TABLE_KEY] = table
    app[STARTED_KEY] = time.monotonic()
    app.router.add_get("/", index)
    app.router.add_get("/health", health)
    app.router.add_get("/status", status)
    return app


async def start_status_server(
    app: web.Application,
    host: str = "0.0.0.0",
    port: int = 8080,
) -> web.AppRunner:
    """Start serving *app*; the caller must ``await runner.cleanup()``."""
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Status server listening on %s:%d", host, port)
    return runner


async def stop_status_server(runner: Optional[web.AppRunner]) -> None:
    if runner is not None:
        await runner.cleanup()

"""Tests for the HTTP status surface."""

import asyncio

import orjson
from aiohttp.test_utils import make_mocked_request

from spaces_traxmate_bridge import __version__
from spaces_traxmate_bridge.calibration import FloorCalibrationTable
from spaces_traxmate_bridge.config import SpacesConfig, TraxmateConfig
from spaces_traxmate_bridge.connection import SpacesConnection
from spaces_traxmate_bridge.delivery import TraxmateClient
from spaces_traxmate_bridge.pipeline import EventPipeline
from spaces_traxmate_bridge.status import create_app, health, index, status
from spaces_traxmate_bridge.transform import CoordinateTransformer

from conftest import AUSTIN_FLOOR


async def _ignore(event: dict) -> None:
    return None


def _call(handler, path: str) -> dict:
    async def scenario():
        table = FloorCalibrationTable.from_config([])
        client = TraxmateClient(TraxmateConfig(api_key="k", ingestion_url="https://trx.test"))
        pipeline = EventPipeline(CoordinateTransformer(table), client)
        conn = SpacesConnection(SpacesConfig(access_token="t", firehose_url="https://fh"), _ignore)
        app = create_app(conn, client, pipeline, table)
        request = make_mocked_request("GET", path, app=app)
        response = await handler(request)
        assert response.status == 200
        assert response.content_type == "application/json"
        return orjson.loads(response.body)

    return asyncio.run(scenario())


def test_index() -> None:
    body = _call(index, "/")
    assert body["version"] == __version__
    assert body["endpoints"] == {"health": "/health", "status": "/status"}


def test_health_reports_connection() -> None:
    body = _call(health, "/health")
    assert body["status"] == "OK"
    assert body["uptime"] >= 0
    assert body["services"]["cisco"] == {
        "is_connected": False,
        "state": "DISCONNECTED",
        "reconnect_attempts": 0,
        "max_reconnect_attempts": 10,
        "max_attempts_reached": False,
    }
    assert body["services"]["traxmate"]["has_api_key"] is True


def test_status_includes_floors_and_counters() -> None:
    body = _call(status, "/status")
    assert body["floorMappings"][AUSTIN_FLOOR]["origin_lat"] == 30.2672
    assert body["pipeline"]["received"] == 0
    assert body["traxmate"]["base_url"] == "https://trx.test"


def test_routes_registered() -> None:
    table = FloorCalibrationTable.from_config([])
    client = TraxmateClient(TraxmateConfig())
    pipeline = EventPipeline(CoordinateTransformer(table), client)
    conn = SpacesConnection(SpacesConfig(), _ignore)
    app = create_app(conn, client, pipeline, table)
    paths = {route.resource.canonical for route in app.router.routes()}
    assert {"/", "/health", "/status"} <= paths

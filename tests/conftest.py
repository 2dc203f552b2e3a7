"""Shared fakes for the HTTP and WebSocket collaborators."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

import orjson
import pytest

from spaces_traxmate_bridge.calibration import FloorCalibrationTable
from spaces_traxmate_bridge.models import TransformedRecord

AUSTIN_FLOOR = "USA>Texas>Austin>Building1>Floor2"


class FakeResponse:
    """Stands in for an ``aiohttp.ClientResponse`` used as a context manager."""

    def __init__(
        self,
        status: int,
        body: bytes | dict = b"",
        read_error: Exception | None = None,
    ) -> None:
        self.status = status
        self.reason = "Fake"
        self._body = orjson.dumps(body) if isinstance(body, dict) else body
        self._read_error = read_error

    async def read(self) -> bytes:
        if self._read_error is not None:
            raise self._read_error
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class FakeSession:
    """Replays scripted responses; the last one repeats once the script runs out.

    Script items are an HTTP status, a :class:`FakeResponse`, or an exception
    instance to raise from the request call.
    """

    def __init__(self, script: Iterable[Any]) -> None:
        self._script = list(script)
        self.calls: list[tuple[str, str, dict]] = []
        self.closed = False

    def _next(self, method: str, url: str, kwargs: dict) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, int):
            return FakeResponse(item)
        return item

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("POST", url, kwargs)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, kwargs)

    async def close(self) -> None:
        self.closed = True


class SleepRecorder:
    """Async ``sleep`` replacement that records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeWebSocket:
    """Yields *frames*, then either ends (peer closed) or waits for :meth:`close`."""

    def __init__(self, frames: Iterable[str | bytes] = (), stay_open: bool = True) -> None:
        self._frames = list(frames)
        self._stay_open = stay_open
        self._closed = asyncio.Event()
        self.close_calls = 0
        self.close_code = None
        self.close_reason = None

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self._frames:
            yield frame
        if self._stay_open:
            await self._closed.wait()
        else:
            self.close_code = 1001
            self.close_reason = "going away"

    async def close(self) -> None:
        self.close_calls += 1
        self.close_code = 1000
        self._closed.set()


async def run_until(predicate, max_ticks: int = 200) -> None:
    """Yield to the event loop until *predicate()* is true."""
    for _ in range(max_ticks):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_event(**overrides: Any) -> dict:
    """A fully calibrated ``BLE_DEVICES`` event."""
    event = {
        "eventType": "BLE_DEVICES",
        "deviceId": "ble-00:11:22:33:44:55",
        "lastSeen": "2025-02-15T18:32:01.123Z",
        "rssi": -67,
        "locationHierarchy": AUSTIN_FLOOR,
        "locationCoordinate": {"x": 100, "y": 200, "unit": "FEET"},
    }
    event.update(overrides)
    return event


def make_record(**overrides: Any) -> TransformedRecord:
    fields = dict(
        identifier="ble-00:11:22:33:44:55",
        timestamp=1739644321,
        latitude=30.2692,
        longitude=-97.7421,
        properties={"rssi": -67, "locationHierarchy": AUSTIN_FLOOR, "unit": "FEET"},
    )
    fields.update(overrides)
    return TransformedRecord(**fields)


@pytest.fixture
def table() -> FloorCalibrationTable:
    return FloorCalibrationTable.from_config([])

"""Tests for the per-event pipeline."""

import asyncio

import pytest

from spaces_traxmate_bridge.calibration import FloorCalibrationTable
from spaces_traxmate_bridge.models import DeliveryResult, TransformedRecord
from spaces_traxmate_bridge.pipeline import EventPipeline
from spaces_traxmate_bridge.transform import CoordinateTransformer

from conftest import make_event


class FakeClient:
    """Records sent records and answers with a fixed outcome."""

    def __init__(self, success: bool = True, raises: Exception | None = None) -> None:
        self.sent: list[TransformedRecord] = []
        self._success = success
        self._raises = raises

    async def send(self, record: TransformedRecord) -> DeliveryResult:
        self.sent.append(record)
        if self._raises is not None:
            raise self._raises
        if self._success:
            return DeliveryResult(success=True, identifier=record.identifier, status=200)
        return DeliveryResult(
            success=False, identifier=record.identifier, status=503, error="HTTP 503", retry_count=3
        )


def _pipeline(table: FloorCalibrationTable, **client_kwargs) -> tuple[EventPipeline, FakeClient]:
    client = FakeClient(**client_kwargs)
    return EventPipeline(CoordinateTransformer(table), client), client


def test_valid_event_delivered_once(table: FloorCalibrationTable) -> None:
    """A calibrated event is transformed, validated and sent exactly once."""
    pipeline, client = _pipeline(table)
    result = asyncio.run(pipeline.handle(make_event()))

    assert result.success is True
    assert len(client.sent) == 1
    assert client.sent[0].latitude == pytest.approx(30.2692)
    assert pipeline.stats()["delivered"] == 1


@pytest.mark.parametrize("field", ["eventType", "deviceId", "lastSeen"])
def test_invalid_input_never_sent(table: FloorCalibrationTable, field: str) -> None:
    pipeline, client = _pipeline(table)
    event = make_event()
    del event[field]

    assert asyncio.run(pipeline.handle(event)) is None
    assert client.sent == []
    assert pipeline.stats()["transform_errors"] == 1


def test_unmapped_floor_never_sent(table: FloorCalibrationTable) -> None:
    """Soft-failed coordinates are caught by validation before delivery."""
    pipeline, client = _pipeline(table)
    result = asyncio.run(pipeline.handle(make_event(locationHierarchy="Nowhere>Floor0")))

    assert result is None
    assert client.sent == []
    assert pipeline.stats()["validation_errors"] == 1


def test_delivery_failure_is_reported_not_raised(table: FloorCalibrationTable) -> None:
    pipeline, client = _pipeline(table, success=False)
    result = asyncio.run(pipeline.handle(make_event()))

    assert result.success is False
    assert result.retry_count == 3
    assert pipeline.stats()["delivery_failures"] == 1


def test_unexpected_error_is_contained(table: FloorCalibrationTable) -> None:
    pipeline, client = _pipeline(table, raises=RuntimeError("socket exploded"))
    assert asyncio.run(pipeline.handle(make_event())) is None
    assert pipeline.stats()["delivery_failures"] == 1


class _BrokenTransformer:
    def transform(self, raw):
        raise RuntimeError("calibration table corrupted")


def test_transform_crash_is_not_a_delivery_failure() -> None:
    """An unexpected error before delivery is counted apart from delivery outcomes."""
    client = FakeClient()
    pipeline = EventPipeline(_BrokenTransformer(), client)

    assert asyncio.run(pipeline.handle(make_event())) is None
    assert client.sent == []
    stats = pipeline.stats()
    assert stats["processing_errors"] == 1
    assert stats["delivery_failures"] == 0
    assert stats["transform_errors"] == 0


def test_events_are_isolated(table: FloorCalibrationTable) -> None:
    """A bad event in between does not stop the good ones."""
    pipeline, client = _pipeline(table)

    async def scenario():
        return await asyncio.gather(
            pipeline.handle(make_event(deviceId="a")),
            pipeline.handle({"eventType": "BLE_DEVICES"}),
            pipeline.handle(make_event(deviceId="b", lastSeen="not-a-date")),
            pipeline.handle(make_event(deviceId="c")),
        )

    results = asyncio.run(scenario())
    assert [r is not None for r in results] == [True, False, False, True]
    assert sorted(r.identifier for r in client.sent) == ["a", "c"]
    assert pipeline.stats() == {
        "received": 4,
        "transform_errors": 2,
        "validation_errors": 0,
        "processing_errors": 0,
        "delivered": 2,
        "delivery_failures": 0,
    }

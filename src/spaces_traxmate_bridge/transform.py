"""Transform Cisco Spaces ``BLE_DEVICES`` events into Traxmate records.

Floor X/Y coordinates are mapped to latitude/longitude with the linear
calibration registered for the event's ``locationHierarchy``.  An unmapped
floor or a missing coordinate is *not* an error: the record is still built
with ``None`` coordinates and is later rejected by :func:`validate`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from spaces_traxmate_bridge.calibration import FloorCalibrationTable
from spaces_traxmate_bridge.errors import INVALID_INPUT, INVALID_TIMESTAMP, TransformError
from spaces_traxmate_bridge.models import (
    BLE_DEVICES,
    DEFAULT_UNIT,
    SOURCE_NAME,
    FloorCalibration,
    RawEvent,
    TransformedRecord,
)

logger = logging.getLogger(__name__)

REQUIRED_EVENT_FIELDS = ("eventType", "deviceId", "lastSeen")
REQUIRED_RECORD_FIELDS = ("identifier", "timestamp", "latitude", "longitude", "source")


@dataclass
class BatchTransformResult:
    """Records that passed validation and the errors for those that did not."""

    records: list[TransformedRecord] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


class CoordinateTransformer:
    """Stateless transform: raw event mapping → :class:`TransformedRecord`.

    Parameters
    ----------
    table:
        Floor calibration lookups.
    source:
        Value for the record's ``source`` field.
    log:
        Logger to report soft failures on (defaults to the module logger).
    """

    def __init__(
        self,
        table: FloorCalibrationTable,
        source: str = SOURCE_NAME,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._table = table
        self._source = source
        self._log = log or logger

    @property
    def table(self) -> FloorCalibrationTable:
        return self._table

    def transform(self, raw: Mapping[str, Any]) -> TransformedRecord:
        """Convert one firehose event into a Traxmate record.

        Raises
        ------
        TransformError
            ``invalid_input`` when required fields are missing or the event
            type is not ``BLE_DEVICES``; ``invalid_timestamp`` when
            ``lastSeen`` is not a usable ISO-8601 timestamp.
        """
        if not isinstance(raw, Mapping):
            raise TransformError(INVALID_INPUT, f"expected an object, got {type(raw).__name__}")

        missing = [name for name in REQUIRED_EVENT_FIELDS if not raw.get(name)]
        if missing:
            raise TransformError(
                INVALID_INPUT, f"missing required fields: {', '.join(missing)}"
            )
        if raw["eventType"] != BLE_DEVICES:
            raise TransformError(INVALID_INPUT, f"unexpected event type {raw['eventType']!r}")

        event = RawEvent.from_mapping(raw)
        timestamp = to_unix_seconds(event.last_seen)
        latitude, longitude = self._geolocate(event)

        coord = event.location_coordinate
        record = TransformedRecord(
            identifier=event.device_id,
            timestamp=timestamp,
            latitude=latitude,
            longitude=longitude,
            source=self._source,
            properties={
                "rssi": event.rssi,
                "locationHierarchy": event.location_hierarchy,
                "unit": coord.unit if coord is not None else DEFAULT_UNIT,
            },
        )
        self._log.debug("Transformed %s → %s", event.device_id, record)
        return record

    def transform_batch(self, raw_events: Iterable[Mapping[str, Any]]) -> BatchTransformResult:
        """Transform and validate many events, collecting per-event errors."""
        result = BatchTransformResult()
        total = 0
        for raw in raw_events:
            total += 1
            try:
                record = self.transform(raw)
            except TransformError as exc:
                result.errors.append({
                    "type": "transformation_error",
                    "data": raw,
                    "message": str(exc),
                })
                continue

            if validate(record, log=self._log):
                result.records.append(record)
            else:
                result.errors.append({
                    "type": "validation_error",
                    "data": raw,
                    "message": "Transformed data failed validation",
                })

        self._log.info(
            "Batch transformation completed: total=%d successful=%d errors=%d",
            total,
            len(result.records),
            len(result.errors),
        )
        return result

    # ── internal ────────────────────────────────────────────────────

    def _geolocate(self, event: RawEvent) -> tuple[Optional[float], Optional[float]]:
        coord = event.location_coordinate
        if coord is None:
            self._log.warning(
                "No locationCoordinate for %s on %s", event.device_id, event.location_hierarchy
            )
            return None, None

        calibration = self._table.lookup(event.location_hierarchy)
        if calibration is None:
            self._log.warning("No floor mapping found for %r", event.location_hierarchy)
            return None, None

        latitude = _project(calibration.origin_lat, coord.y, calibration)
        longitude = _project(calibration.origin_lng, coord.x, calibration)
        if latitude is None or longitude is None:
            self._log.warning(
                "Coordinate conversion failed for %s (x=%r, y=%r)",
                event.device_id,
                coord.x,
                coord.y,
            )
        return latitude, longitude


def to_unix_seconds(value: Any) -> int:
    """Parse an ISO-8601 string to whole Unix seconds (floored).

    A trailing ``Z`` is accepted and a value without an offset is read as UTC.

    Raises
    ------
    TransformError
        ``invalid_timestamp`` if *value* cannot be parsed.
    """
    if not isinstance(value, str):
        raise TransformError(INVALID_TIMESTAMP, f"not a timestamp string: {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise TransformError(INVALID_TIMESTAMP, f"invalid timestamp {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    seconds = parsed.timestamp()
    if not math.isfinite(seconds):
        raise TransformError(INVALID_TIMESTAMP, f"invalid timestamp {value!r}")
    return math.floor(seconds)


def validate(record: Optional[TransformedRecord], log: Optional[logging.Logger] = None) -> bool:
    """Return True when *record* may be sent to Traxmate."""
    log = log or logger
    if record is None:
        return False

    missing = [
        name for name in REQUIRED_RECORD_FIELDS
        if getattr(record, name, None) in (None, "")
    ]
    if missing:
        log.warning("Record %s missing required fields: %s", record.identifier, ", ".join(missing))
        return False

    if not _is_number(record.timestamp) or record.timestamp <= 0:
        log.warning("Invalid timestamp for %s: %r", record.identifier, record.timestamp)
        return False

    if not (_is_number(record.latitude) and _is_number(record.longitude)):
        log.warning(
            "Invalid coordinates for %s: latitude=%r longitude=%r",
            record.identifier,
            record.latitude,
            record.longitude,
        )
        return False

    return True


# ── helpers ─────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:  # int too large for a float
        return False


def _project(origin: float, offset: Any, calibration: FloorCalibration) -> Optional[float]:
    """``origin + offset * scale``, or None when the result is not finite."""
    if not _is_number(offset):
        return None
    value = origin + offset * calibration.scale_factor
    return value if math.isfinite(value) else None

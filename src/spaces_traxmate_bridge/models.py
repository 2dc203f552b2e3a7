"""Dataclass models for the bridge.

Records sent downstream are serialised via ``dataclasses.asdict()``
followed by ``orjson.dumps()``.
"""

from __future__ import annotations

import enum
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

BLE_DEVICES = "BLE_DEVICES"
DEFAULT_UNIT = "FEET"
SOURCE_NAME = "Cisco Spaces Middleware"


@dataclass
class LocationCoordinate:
    """Facility-local position of a sighting on its floor."""

    x: Any = None
    y: Any = None
    unit: str = DEFAULT_UNIT

    @classmethod
    def from_mapping(cls, raw: Any) -> Optional["LocationCoordinate"]:
        if not isinstance(raw, Mapping):
            return None
        return cls(x=raw.get("x"), y=raw.get("y"), unit=raw.get("unit") or DEFAULT_UNIT)


@dataclass
class RawEvent:
    """A ``BLE_DEVICES`` sighting as received from the firehose."""

    event_type: str
    device_id: str
    last_seen: str
    rssi: Optional[int] = None
    location_hierarchy: Optional[str] = None
    location_coordinate: Optional[LocationCoordinate] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "RawEvent":
        """Build from the camelCase wire mapping (no validation)."""
        return cls(
            event_type=raw.get("eventType"),
            device_id=raw.get("deviceId"),
            last_seen=raw.get("lastSeen"),
            rssi=raw.get("rssi"),
            location_hierarchy=raw.get("locationHierarchy"),
            location_coordinate=LocationCoordinate.from_mapping(
                raw.get("locationCoordinate")
            ),
        )


@dataclass(frozen=True)
class FloorCalibration:
    """Linear mapping from floor X/Y units to degrees.

    ``latitude = origin_lat + y * scale_factor`` and
    ``longitude = origin_lng + x * scale_factor``.
    """

    location_hierarchy: str
    origin_lat: float
    origin_lng: float
    scale_factor: float

    def __post_init__(self) -> None:
        if not self.location_hierarchy:
            raise ValueError("location_hierarchy must be non-empty")
        for name in ("origin_lat", "origin_lng", "scale_factor"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value!r}")


@dataclass
class TransformedRecord:
    """A geo-tagged sighting in the Traxmate ingestion format."""

    identifier: str
    timestamp: int
    latitude: Optional[float]
    longitude: Optional[float]
    source: str = SOURCE_NAME
    properties: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return asdict(self)


@dataclass
class DeliveryResult:
    """Outcome of sending one record to Traxmate."""

    success: bool
    identifier: Optional[str] = None
    status: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0


@dataclass
class BatchDeliveryResult:
    """Per-record outcomes plus aggregate counts for a batch send."""

    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return self.total - self.success_count


class ConnectionState(enum.Enum):
    """States of the firehose connection."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


@dataclass
class ConnectionStatus:
    """Read-only view of the firehose connection for health reporting."""

    is_connected: bool
    state: str
    reconnect_attempts: int
    max_reconnect_attempts: int
    max_attempts_reached: bool = False

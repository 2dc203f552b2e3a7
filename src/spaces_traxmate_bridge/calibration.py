"""Per-floor calibration table keyed by Cisco Spaces location hierarchy.

The table is copy-on-write: :meth:`FloorCalibrationTable.add` builds a new
dict under a lock and swaps the reference, so lookups on the event path
never lock and never observe a half-applied update.  Entries are never
removed.
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from spaces_traxmate_bridge.models import FloorCalibration

logger = logging.getLogger(__name__)

DEFAULT_SCALE_FACTOR = 0.00001

# Shipped sample floor; deployments configure their own under ``floors``.
DEFAULT_FLOORS = (
    FloorCalibration(
        location_hierarchy="USA>Texas>Austin>Building1>Floor2",
        origin_lat=30.2672,
        origin_lng=-97.7431,
        scale_factor=DEFAULT_SCALE_FACTOR,
    ),
)


class FloorCalibrationTable:
    """Append-only ``location_hierarchy → FloorCalibration`` store."""

    def __init__(
        self,
        entries: Iterable[FloorCalibration] = (),
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._log = log or logger
        self._write_lock = threading.Lock()
        self._entries: Mapping[str, FloorCalibration] = MappingProxyType(
            {e.location_hierarchy: e for e in entries}
        )

    @classmethod
    def from_config(cls, floors, log: Optional[logging.Logger] = None) -> "FloorCalibrationTable":
        """Build a table from configured floor entries.

        Falls back to :data:`DEFAULT_FLOORS` when *floors* is empty.
        """
        if not floors:
            return cls(DEFAULT_FLOORS, log=log)
        return cls(
            (
                FloorCalibration(
                    location_hierarchy=f.location_hierarchy,
                    origin_lat=f.origin_lat,
                    origin_lng=f.origin_lng,
                    scale_factor=f.scale_factor,
                )
                for f in floors
            ),
            log=log,
        )

    def lookup(self, location_hierarchy: Optional[str]) -> Optional[FloorCalibration]:
        if not location_hierarchy:
            return None
        return self._entries.get(location_hierarchy)

    def add(
        self,
        location_hierarchy: str,
        origin_lat: float,
        origin_lng: float,
        scale_factor: float = DEFAULT_SCALE_FACTOR,
    ) -> FloorCalibration:
        """Insert or overwrite the calibration for *location_hierarchy*.

        Raises
        ------
        ValueError
            If the key is empty or any value is not a finite number.
        """
        entry = FloorCalibration(
            location_hierarchy=location_hierarchy,
            origin_lat=origin_lat,
            origin_lng=origin_lng,
            scale_factor=scale_factor,
        )
        with self._write_lock:
            updated = dict(self._entries)
            updated[location_hierarchy] = entry
            self._entries = MappingProxyType(updated)

        self._log.info(
            "Added floor mapping %s (origin=%.6f,%.6f scale=%g)",
            location_hierarchy,
            origin_lat,
            origin_lng,
            scale_factor,
        )
        return entry

    def snapshot(self) -> dict[str, FloorCalibration]:
        """Return a point-in-time copy of every entry."""
        return dict(self._entries)

    def __contains__(self, location_hierarchy: object) -> bool:
        return location_hierarchy in self._entries

    def __len__(self) -> int:
        return len(self._entries)

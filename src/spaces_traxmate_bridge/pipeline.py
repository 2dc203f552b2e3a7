"""Per-event pipeline: transform → validate → deliver.

:meth:`EventPipeline.handle` is the ``on_event`` callback of
:class:`~spaces_traxmate_bridge.connection.SpacesConnection`.  It never
raises: a bad or undeliverable event is logged and dropped without touching
the connection or any other event.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from spaces_traxmate_bridge.delivery import TraxmateClient
from spaces_traxmate_bridge.errors import TransformError
from spaces_traxmate_bridge.models import DeliveryResult
from spaces_traxmate_bridge.transform import CoordinateTransformer, validate

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Running counters exposed on the status endpoint."""

    received: int = 0
    transform_errors: int = 0
    validation_errors: int = 0
    processing_errors: int = 0
    delivered: int = 0
    delivery_failures: int = 0


class EventPipeline:
    """Wires the transformer and the Traxmate client together."""

    def __init__(
        self,
        transformer: CoordinateTransformer,
        client: TraxmateClient,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._transformer = transformer
        self._client = client
        self._log = log or logger
        self._stats = PipelineStats()

    async def handle(self, raw: Mapping[str, Any]) -> Optional[DeliveryResult]:
        """Process one ``BLE_DEVICES`` event.

        Returns the :class:`DeliveryResult`, or None when the event was
        dropped before delivery.
        """
        self._stats.received += 1
        device_id = raw.get("deviceId") if isinstance(raw, Mapping) else None
        try:
            record = self._transformer.transform(raw)
            valid = validate(record, log=self._log)
        except TransformError as exc:
            self._stats.transform_errors += 1
            self._log.warning("Dropping event from %s: %s", device_id, exc)
            return None
        except Exception:
            self._stats.processing_errors += 1
            self._log.exception("Error processing BLE data from %s", device_id)
            return None

        if not valid:
            self._stats.validation_errors += 1
            self._log.warning("Transformed data validation failed for %s", device_id)
            return None

        try:
            result = await self._client.send(record)
        except Exception:
            self._stats.delivery_failures += 1
            self._log.exception("Error sending BLE data from %s", device_id)
            return None

        if result.success:
            self._stats.delivered += 1
            self._log.debug(
                "Data sent to Traxmate for %s (status=%s, retries=%d)",
                result.identifier,
                result.status,
                result.retry_count,
            )
        else:
            self._stats.delivery_failures += 1
            self._log.error(
                "Failed to send data to Traxmate for %s: status=%s error=%s retries=%d",
                result.identifier,
                result.status,
                result.error,
                result.retry_count,
            )
        return result

    def stats(self) -> dict:
        return asdict(self._stats)

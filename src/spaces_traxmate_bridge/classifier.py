"""Classify raw firehose frames before they reach the pipeline.

Classification pipeline::

    raw frame
      │
      ├─ JSON parse failure       → MALFORMED  (logged, discarded)
      ├─ not an object            → MALFORMED
      ├─ eventType ≠ monitored    → IGNORED    (debug only)
      └─ eventType == monitored   → EVENT      (dispatched)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import orjson

from spaces_traxmate_bridge.models import BLE_DEVICES

# Maximum bytes of a bad frame kept for the log line.
MAX_RAW_PAYLOAD_BYTES = 1024

EVENT = "event"
IGNORED = "ignored"
MALFORMED = "malformed"


@dataclass
class Classification:
    """Result of :func:`classify`."""

    kind: str
    event: Optional[dict] = None
    event_type: Optional[str] = None
    error: Optional[str] = None
    raw_excerpt: Optional[str] = None


def classify(raw: str | bytes, event_type: str = BLE_DEVICES) -> Classification:
    """Classify a single raw WebSocket frame.

    Parameters
    ----------
    raw:
        The frame as received (text or bytes).
    event_type:
        The ``eventType`` tag that is forwarded to the pipeline.
    """
    try:
        msg = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        return Classification(kind=MALFORMED, error=str(exc), raw_excerpt=_excerpt(raw))

    if not isinstance(msg, dict):
        return Classification(
            kind=MALFORMED,
            error=f"expected a JSON object, got {type(msg).__name__}",
            raw_excerpt=_excerpt(raw),
        )

    tag = msg.get("eventType")
    if tag != event_type:
        return Classification(kind=IGNORED, event_type=tag)

    return Classification(kind=EVENT, event=msg, event_type=tag)


def _excerpt(raw: str | bytes) -> str:
    """Decode and truncate *raw* for logging."""
    raw_str = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
    if len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES:
        raw_str = raw_str[:MAX_RAW_PAYLOAD_BYTES] + "…"
    return raw_str

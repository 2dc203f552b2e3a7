"""Exception hierarchy for the bridge.

Only :class:`ConfigError` and :class:`FirehoseError` raised from
startup are allowed to terminate the process; everything raised on the
per-event path is caught and logged by the pipeline.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """A required configuration value is missing or invalid."""


class FirehoseError(BridgeError):
    """The firehose credential exchange or stream URL lookup failed."""


INVALID_INPUT = "invalid_input"
INVALID_TIMESTAMP = "invalid_timestamp"


class TransformError(BridgeError):
    """A raw event could not be turned into a Traxmate record.

    Attributes
    ----------
    code:
        ``"invalid_input"`` or ``"invalid_timestamp"``.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

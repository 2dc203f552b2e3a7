"""Logging filter that keeps credentials out of log output.

The Cisco Spaces access token and the Traxmate API key travel in request
headers and can surface in exception messages.  At startup the resolved
:class:`~spaces_traxmate_bridge.config.AppConfig` is scanned for fields whose
*names* match ``logging.redact_patterns``; their values are replaced with
``[REDACTED]`` in every record that passes through the filter.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import asdict, is_dataclass
from typing import Any, Iterable

REDACTED = "[REDACTED]"

# Values shorter than this are too likely to collide with ordinary text.
MIN_SECRET_LENGTH = 4


class SecretRedactingFilter(logging.Filter):
    """Scrub known secret values from a record's message and arguments."""

    def __init__(self, secret_values: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        for value in secret_values:
            self.add_secret(value)

    def add_secret(self, value: str) -> None:
        if isinstance(value, str) and len(value) >= MIN_SECRET_LENGTH:
            self._secrets.add(value)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        if record.args:
            # Render first so secrets split across msg/args are still caught.
            record.msg = self.redact(record.getMessage())
            record.args = None
        else:
            record.msg = self.redact(record.msg)
        return True

    def redact(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        # longest first so a secret containing another is replaced whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            value = value.replace(secret, REDACTED)
        return value


def secrets_from_config(config: Any, patterns: Iterable[str]) -> list[str]:
    """Collect string values whose field names match any glob in *patterns*.

    *config* may be a dataclass instance or a plain nested dict.  Matching
    is case-insensitive.
    """
    patterns = [p.lower() for p in patterns]
    if not patterns:
        return []
    tree = asdict(config) if is_dataclass(config) else config
    found: list[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for key, val in node.items():
                if isinstance(val, str) and val and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in patterns
                ):
                    found.append(val)
                walk(val)
        elif isinstance(node, (list, tuple)):
            for item in node:
                walk(item)

    walk(tree)
    return found

"""Spaces → Traxmate bridge: BLE firehose events forwarded as geo-tagged records."""

__version__ = "1.0.0"

"""Base definitions for metric sinks"""
from datetime import datetime
from typing import Any, Protocol


class MetricWriter(Protocol):
    """
    Egress for metric points (InfluxDB line protocol, ...).

    write() dispatches and returns immediately. It is never awaited, so
    delivery is best effort: no retry, no acknowledgment.
    """

    def write(self, timestamp: datetime, fields: dict[str, Any]) -> None:
        ...

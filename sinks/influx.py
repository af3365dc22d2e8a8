"""InfluxDB egress module - encodes metric points as line protocol and posts them via HTTP"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

logger = logging.getLogger(__name__)

INFLUX_PORT = 8086
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def escape_key(name: str) -> str:
    """Escape a field name. Backslash first, so later escapes are not doubled."""
    return (
        name.replace("\\", "\\\\")
        .replace(" ", "\\ ")
        .replace(",", "\\,")
        .replace("=", "\\=")
    )


def format_value(value: Any) -> str:
    """
    Render a field value.

    Integers get the "i" suffix, floats are fixed-point with six decimals
    (format() ignores the locale, so the separator is always "."), anything
    else becomes a quoted string.
    """
    # bool subclasses int, but is not an integer field
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value}i"
    if isinstance(value, float):
        return f"{value:f}"
    text = str(value).replace('"', '\\"')
    return f'"{text}"'


def epoch_millis(timestamp: datetime) -> int:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (timestamp - EPOCH) // timedelta(milliseconds=1)


def encode_line(measurement: str, timestamp: datetime, fields: dict[str, Any]) -> str:
    """
    Serialize one point: <measurement> <field>=<value>[,...] <epoch-ms>

    Raises:
        ValueError: when there are no fields (InfluxDB rejects such a line).
    """
    if not fields:
        raise ValueError("A line protocol point needs at least one field")
    field_set = ",".join(f"{escape_key(k)}={format_value(v)}" for k, v in fields.items())
    return f"{measurement} {field_set} {epoch_millis(timestamp)}"


class InfluxWriter:
    """
    InfluxDB 1.x line protocol writer.

    Every write is handed to a worker thread and not awaited: failures are
    dropped, nothing is retried.
    """

    def __init__(self, host: str, database: str, measurement: str, timeout: float = 5.0):
        """
        Args:
            host: InfluxDB host name or IP
            database: Target database
            measurement: Measurement name for every point
            timeout: HTTP timeout per write in seconds
        """
        self.measurement = measurement
        self.timeout = timeout
        self.url = f"http://{host}:{INFLUX_PORT}/write"
        self.params = {"db": database, "precision": "ms"}
        self._pending: set[asyncio.Task] = set()

    def _perform_http_request(self, line: str) -> None:
        """Runs in a thread to not block the main loop."""
        try:
            r = requests.post(
                self.url,
                params=self.params,
                data=line.encode("utf-8"),
                timeout=self.timeout
            )
            r.raise_for_status()
        except requests.RequestException as e:
            logger.debug(f"InfluxDB: Dropped point, HTTP POST failed: {e}")

    def write(self, timestamp: datetime, fields: dict[str, Any]) -> None:
        """
        Encode and dispatch one point without waiting for the result.

        Must be called from inside the running event loop.
        """
        line = encode_line(self.measurement, timestamp, fields)
        task = asyncio.get_running_loop().create_task(
            asyncio.to_thread(self._perform_http_request, line)
        )
        # Keep a reference until done, the loop only holds weak ones
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

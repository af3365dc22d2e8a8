"""Sample codec - turns graphql-ws envelopes into control messages or measurements"""
import json
from datetime import datetime, timezone
from typing import Any

from sources.base import METRIC_FIELDS, ControlEnvelope, DecodeError, MeasurementRecord

# Fields requested from the feed
QUERY_FIELDS = ("timestamp", "power", *(name for name, _ in METRIC_FIELDS))


def subscription_query(home_id: str) -> str:
    """GraphQL subscription for every liveMeasurement field we know how to store"""
    return (
        f'subscription {{ liveMeasurement(homeId: "{home_id}") '
        f'{{ {" ".join(QUERY_FIELDS)} }} }}'
    )


def _number(key: str, value: Any) -> float:
    # bool is an int subclass, but never a valid reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"liveMeasurement.{key} is not numeric: {value!r}")
    return float(value)


def _timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise DecodeError(f"liveMeasurement.timestamp missing or not a string: {value!r}")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise DecodeError(f"Unparseable timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_measurement(measurement: Any) -> MeasurementRecord:
    """Map a liveMeasurement object onto a MeasurementRecord"""
    if not isinstance(measurement, dict):
        raise DecodeError("data envelope without liveMeasurement")

    power = measurement.get("power")
    if power is None:
        raise DecodeError("liveMeasurement without power (consumption)")

    optional = {}
    for key, attribute in METRIC_FIELDS:
        value = measurement.get(key)
        if value is not None:
            optional[attribute] = _number(key, value)

    return MeasurementRecord(
        timestamp=_timestamp(measurement.get("timestamp")),
        consumption_power=_number("power", power),
        **optional
    )


def decode_envelope(raw: str) -> ControlEnvelope:
    """
    Decode one inbound message.

    Classifies by the "type" tag first. For a "data" envelope the payload
    is replaced by the decoded MeasurementRecord; other envelopes keep
    their raw payload.

    Raises:
        DecodeError: invalid JSON, missing type tag, or a data envelope
            that cannot produce a valid measurement.
    """
    try:
        message = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError is a ValueError; deep nesting exhausts the recursion limit
        raise DecodeError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise DecodeError("Envelope without a type tag")

    msg_type = message["type"]
    msg_id = message.get("id")
    payload = message.get("payload")

    if msg_type != "data":
        return ControlEnvelope(type=msg_type, id=msg_id, payload=payload)

    if not isinstance(payload, dict):
        raise DecodeError("data envelope without payload")
    data = payload.get("data")
    if not isinstance(data, dict) or not data:
        raise DecodeError(f"data envelope without data: {payload.get('errors')}")

    record = decode_measurement(data.get("liveMeasurement"))
    return ControlEnvelope(type=msg_type, id=msg_id, payload=record)


def encode_envelope(msg_type: str, msg_id: int | None = None, payload: Any = None) -> str:
    """Build an outbound envelope. Ids travel as strings."""
    message: dict[str, Any] = {"type": msg_type}
    if msg_id is not None:
        message["id"] = str(msg_id)
    if payload is not None:
        message["payload"] = payload
    return json.dumps(message)

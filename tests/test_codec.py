import json
from datetime import datetime, timezone

import pytest

from sources.base import ControlEnvelope, DecodeError, MeasurementRecord
from sources.codec import decode_envelope, encode_envelope, subscription_query


def data_envelope(measurement, subscription_id="1"):
    return json.dumps({
        "type": "data",
        "id": subscription_id,
        "payload": {"data": {"liveMeasurement": measurement}}
    })


def test_decode_full_measurement():
    """Test that every reading maps onto the record"""
    raw = data_envelope({
        "timestamp": "2025-12-26T18:00:00.000+01:00",
        "power": 1500,
        "powerProduction": 0,
        "accumulatedConsumption": 12.345,
        "accumulatedProduction": 1.5,
        "lastMeterConsumption": 23456.78,
        "lastMeterProduction": 345.6,
        "powerFactor": 0.98,
        "voltagePhase1": 231.1,
        "voltagePhase2": 232.2,
        "voltagePhase3": 233.3,
        "currentPhase1": 2.1,
        "currentPhase2": 2.2,
        "currentPhase3": 2.3,
    })

    envelope = decode_envelope(raw)

    assert envelope.type == "data"
    assert envelope.id == "1"
    record = envelope.payload
    assert isinstance(record, MeasurementRecord)
    assert record.timestamp == datetime(2025, 12, 26, 17, 0, tzinfo=timezone.utc)
    assert record.consumption_power == 1500.0
    # Integers from the feed become floats, so field types stay stable
    assert isinstance(record.consumption_power, float)
    assert isinstance(record.production_power, float)
    assert record.last_meter_consumption == 23456.78
    assert record.current_phase3 == 2.3


def test_decode_optional_readings_absent():
    """Test that missing and null readings stay None"""
    raw = data_envelope({
        "timestamp": "2025-12-26T18:00:00+01:00",
        "power": 800.5,
        "powerProduction": None,
    })

    record = decode_envelope(raw).payload

    assert record.consumption_power == 800.5
    assert record.production_power is None
    assert record.voltage_phase1 is None


def test_decode_naive_timestamp_is_utc():
    raw = data_envelope({"timestamp": "2025-12-26T18:00:00", "power": 1})

    record = decode_envelope(raw).payload

    assert record.timestamp == datetime(2025, 12, 26, 18, 0, tzinfo=timezone.utc)


def test_decode_missing_power_fails():
    """Test that a measurement without consumption power is invalid"""
    raw = data_envelope({"timestamp": "2025-12-26T18:00:00Z", "powerProduction": 10})

    with pytest.raises(DecodeError):
        decode_envelope(raw)


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    '{"id": "1"}',
    '{"type": "data", "id": "1"}',
    '{"type": "data", "id": "1", "payload": {"data": null, "errors": [{"message": "denied"}]}}',
    '{"type": "data", "id": "1", "payload": {"data": {"liveMeasurement": null}}}',
])
def test_decode_malformed_envelopes(raw):
    with pytest.raises(DecodeError):
        decode_envelope(raw)


def test_decode_bad_values_fail():
    with pytest.raises(DecodeError):
        decode_envelope(data_envelope({"timestamp": "2025-12-26T18:00:00Z", "power": "lots"}))
    with pytest.raises(DecodeError):
        decode_envelope(data_envelope({"timestamp": "yesterday", "power": 1}))
    with pytest.raises(DecodeError):
        decode_envelope(data_envelope({"power": 1}))


def test_decode_control_envelopes():
    """Test that non-data envelopes are classified by type and keep their id"""
    assert decode_envelope('{"type": "connection_ack"}') == ControlEnvelope(type="connection_ack")
    assert decode_envelope('{"type": "complete", "id": "3"}') == ControlEnvelope(type="complete", id="3")

    error = decode_envelope('{"type": "error", "id": "2", "payload": {"message": "boom"}}')
    assert error.type == "error"
    assert error.payload == {"message": "boom"}


def test_encode_envelope():
    assert json.loads(encode_envelope("connection_init")) == {"type": "connection_init"}
    assert json.loads(encode_envelope("stop", 4)) == {"type": "stop", "id": "4"}
    assert json.loads(encode_envelope("start", 5, {"query": "q"})) == {
        "type": "start",
        "id": "5",
        "payload": {"query": "q"},
    }


def test_subscription_query_requests_all_fields():
    query = subscription_query("home-1")

    assert query.startswith('subscription { liveMeasurement(homeId: "home-1") {')
    for name in ("timestamp", "power", "powerProduction", "lastMeterProduction",
                 "powerFactor", "voltagePhase3", "currentPhase1"):
        assert f" {name} " in query


def test_decode_deeply_nested_json_fails():
    """Test that nesting beyond the recursion limit is a decode error"""
    raw = "[" * 200000 + "]" * 200000

    with pytest.raises(DecodeError):
        decode_envelope(raw)

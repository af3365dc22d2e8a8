"""Base definitions for the live feed - data contracts, errors and protocols"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


class ChannelError(Exception):
    """Transport-level fault on the subscription channel (error or abnormal closure)."""


class DecodeError(ValueError):
    """Inbound envelope could not be decoded into something actionable."""


@dataclass
class ControlEnvelope:
    """
    Message exchanged on the subscription channel.

    Attributes:
        type: Protocol tag, e.g. "connection_ack", "data", "complete", "error", "ka".
        id: Correlation id (string with a numeric value), if the message has one.
        payload: Tag dependent payload. For decoded "data" envelopes this is
            the MeasurementRecord.
    """
    type: str
    id: str | None = None
    payload: Any = None


@dataclass
class MeasurementRecord:
    """
    One liveMeasurement sample from the Tibber Pulse feed.

    Only consumption_power is mandatory; every other reading is
    independently present or absent (None).
    """
    timestamp: datetime
    consumption_power: float
    production_power: float | None = None
    accumulated_consumption: float | None = None
    accumulated_production: float | None = None
    last_meter_consumption: float | None = None
    last_meter_production: float | None = None
    power_factor: float | None = None
    voltage_phase1: float | None = None
    voltage_phase2: float | None = None
    voltage_phase3: float | None = None
    current_phase1: float | None = None
    current_phase2: float | None = None
    current_phase3: float | None = None

    def estimated_power(self) -> float | None:
        """
        Power derived from the phase readings: sum(V * I) * powerFactor.

        Returns None unless all three phases and the power factor are present.
        """
        phases = [
            (self.voltage_phase1, self.current_phase1),
            (self.voltage_phase2, self.current_phase2),
            (self.voltage_phase3, self.current_phase3),
        ]
        if self.power_factor is None or any(v is None or i is None for v, i in phases):
            return None
        return sum(v * i for v, i in phases) * self.power_factor


# Optional reading -> MeasurementRecord attribute, in emission order.
# The feed and the metric point use the same names for these.
METRIC_FIELDS = (
    ("powerProduction", "production_power"),
    ("accumulatedConsumption", "accumulated_consumption"),
    ("accumulatedProduction", "accumulated_production"),
    ("lastMeterConsumption", "last_meter_consumption"),
    ("lastMeterProduction", "last_meter_production"),
    ("powerFactor", "power_factor"),
    ("voltagePhase1", "voltage_phase1"),
    ("voltagePhase2", "voltage_phase2"),
    ("voltagePhase3", "voltage_phase3"),
    ("currentPhase1", "current_phase1"),
    ("currentPhase2", "current_phase2"),
    ("currentPhase3", "current_phase3"),
)


@dataclass
class MetricPoint:
    """
    Timestamped field set ready for the line protocol.

    Attributes:
        timestamp: Absolute instant of the sample.
        fields: Ordered field name -> value. Never contains None values.
    """
    timestamp: datetime
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: MeasurementRecord) -> "MetricPoint":
        fields = {"powerConsumption": record.consumption_power}
        for name, attribute in METRIC_FIELDS:
            value = getattr(record, attribute)
            if value is not None:
                fields[name] = value
        return cls(timestamp=record.timestamp, fields=fields)


class MessageChannel(Protocol):
    """
    Bidirectional text message channel (the subscription WebSocket).

    Implementations raise ChannelError for transport faults, including a
    remote closure while recv() is waiting.
    """

    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> str:
        ...

    async def close(self) -> None:
        ...


class ChannelConnector(Protocol):
    """
    Opens a MessageChannel.

    Should raise ChannelError if the connection cannot be established.
    """

    async def __call__(
        self,
        url: str,
        subprotocol: str,
        headers: dict[str, str]
    ) -> MessageChannel:
        ...

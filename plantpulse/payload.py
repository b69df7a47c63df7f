"""The packed sensor payload sent to the broker."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from plantpulse.modbus import crc16

SENSOR_COUNT = 20
DEVICE_ID_SIZE = 6
TOPIC_SIZE = 20
RESERVED_SIZE = 4

_HEADER = struct.Struct("<Q6s20sH")
_SENSOR = struct.Struct("<HHhHHHH")
_TRAILER = struct.Struct("<4sH")

SENSOR_SIZE = _SENSOR.size
SIZE = _HEADER.size + SENSOR_COUNT * _SENSOR.size + _TRAILER.size


@dataclass
class SensorReading:
    """One soil sensor's seven register values."""

    ph: int = 0
    moisture: int = 0
    temperature: int = 0
    conductivity: int = 0
    nitrogen: int = 0
    phosphorus: int = 0
    potassium: int = 0

    @classmethod
    def failed(cls) -> SensorReading:
        """A reading whose bytes are all 0xFF, marking a sensor that did not answer."""
        return cls.unpack(b"\xff" * SENSOR_SIZE)

    def pack(self) -> bytes:
        try:
            return _SENSOR.pack(
                self.ph,
                self.moisture,
                self.temperature,
                self.conductivity,
                self.nitrogen,
                self.phosphorus,
                self.potassium,
            )
        except struct.error as exc:
            raise ValueError(f"sensor value out of range: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes) -> SensorReading:
        if len(data) != SENSOR_SIZE:
            raise ValueError(f"sensor block must be {SENSOR_SIZE} bytes, got {len(data)}")
        return cls(*_SENSOR.unpack(data))


def _default_sensors() -> list[SensorReading]:
    return [SensorReading() for _ in range(SENSOR_COUNT)]


@dataclass
class Payload:
    """Timestamp, device identity, topic, battery level and all sensor readings."""

    timestamp: int = 0
    device_id: bytes = bytes(DEVICE_ID_SIZE)
    topic: str = ""
    battery_mv: int = 0
    sensor_data: list[SensorReading] = field(default_factory=_default_sensors)
    reserved: bytes = b"\xff" * RESERVED_SIZE
    crc: int = 0

    def _topic_bytes(self) -> bytes:
        raw = self.topic.encode("utf-8")
        if len(raw) > TOPIC_SIZE:
            raise ValueError(f"topic longer than {TOPIC_SIZE} bytes")
        return raw

    def pack(self) -> bytes:
        if len(self.device_id) != DEVICE_ID_SIZE:
            raise ValueError(f"device_id must be {DEVICE_ID_SIZE} bytes")
        if len(self.reserved) != RESERVED_SIZE:
            raise ValueError(f"reserved must be {RESERVED_SIZE} bytes")
        if len(self.sensor_data) != SENSOR_COUNT:
            raise ValueError(f"expected {SENSOR_COUNT} sensor readings")
        try:
            header = _HEADER.pack(
                self.timestamp, bytes(self.device_id), self._topic_bytes(), self.battery_mv
            )
            trailer = _TRAILER.pack(bytes(self.reserved), self.crc)
        except struct.error as exc:
            raise ValueError(f"payload value out of range: {exc}") from exc
        sensors = b"".join(reading.pack() for reading in self.sensor_data)
        return header + sensors + trailer

    @classmethod
    def unpack(cls, data: bytes) -> Payload:
        if len(data) != SIZE:
            raise ValueError(f"payload must be {SIZE} bytes, got {len(data)}")
        timestamp, device_id, topic, battery_mv = _HEADER.unpack_from(data, 0)
        offset = _HEADER.size
        sensors = []
        for _ in range(SENSOR_COUNT):
            sensors.append(SensorReading.unpack(data[offset : offset + SENSOR_SIZE]))
            offset += SENSOR_SIZE
        reserved, crc = _TRAILER.unpack_from(data, offset)
        return cls(
            timestamp=timestamp,
            device_id=device_id,
            topic=topic.split(b"\0", 1)[0].decode("utf-8", errors="replace"),
            battery_mv=battery_mv,
            sensor_data=sensors,
            reserved=reserved,
            crc=crc,
        )

    def compute_crc(self) -> int:
        """CRC over every packed byte except the CRC field itself."""
        return crc16(self.pack()[:-2])

    def seal(self) -> Payload:
        """Store the computed CRC and return this payload."""
        self.crc = self.compute_crc()
        return self
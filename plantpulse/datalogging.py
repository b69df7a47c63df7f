"""Collecting soil-sensor readings from the Modbus bus into a payload."""

from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from plantpulse.modbus import ModbusError, frame_crc_ok
from plantpulse.payload import RESERVED_SIZE, SENSOR_COUNT, Payload, SensorReading

SENSOR_SLAVE_START = 1
SENSOR_FUNC_CODE = 0x03
SENSOR_REG_ADDR = 0x0000
SENSOR_REG_COUNT = 7
READ_ATTEMPTS = 5
RECEIVE_BUFFER_SIZE = 64
RETRY_DELAY_S = 0.1

# address, function, byte count, two bytes per register, two CRC bytes
EXPECTED_RESPONSE_LEN = 5 + SENSOR_REG_COUNT * 2

DUMMY_DEVICE_ID = bytes.fromhex("aabbcc112233")
DUMMY_TOPIC = "soil/sensor"
DUMMY_BATTERY_MV = 3700

logger = logging.getLogger(__name__)


class _Bus(Protocol):
    def send(
        self,
        slave_address: int,
        function_code: int,
        start_address: int,
        quantity: int,
        data: bytes = b"",
    ) -> bytes: ...

    def receive(self, buffer_size: int | None = None) -> bytes: ...


def parse_sensor_response(frame: bytes) -> SensorReading:
    """Decode the seven register values of a sensor's read-holding-registers reply."""
    if len(frame) < EXPECTED_RESPONSE_LEN:
        raise ModbusError(
            f"response too short: {len(frame)} bytes, need {EXPECTED_RESPONSE_LEN}"
        )
    if not frame_crc_ok(frame):
        raise ModbusError("CRC mismatch in sensor response")
    words = [
        int.from_bytes(frame[offset : offset + 2], "big")
        for offset in range(3, 3 + SENSOR_REG_COUNT * 2, 2)
    ]
    ph, moisture, temperature, conductivity, nitrogen, phosphorus, potassium = words
    if temperature >= 0x8000:
        temperature -= 0x10000
    return SensorReading(
        ph=ph,
        moisture=moisture,
        temperature=temperature,
        conductivity=conductivity,
        nitrogen=nitrogen,
        phosphorus=phosphorus,
        potassium=potassium,
    )


def read_sensor(
    bus: _Bus,
    slave_id: int,
    attempts: int = READ_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> SensorReading:
    """Poll one sensor, retrying; a reading of all 0xFF bytes when it never answers."""
    for attempt in range(1, attempts + 1):
        bus.send(slave_id, SENSOR_FUNC_CODE, SENSOR_REG_ADDR, SENSOR_REG_COUNT)
        try:
            frame = bus.receive(RECEIVE_BUFFER_SIZE)
        except ModbusError:
            logger.warning("CRC mismatch from sensor ID %d (attempt %d)", slave_id, attempt)
            continue
        if len(frame) >= EXPECTED_RESPONSE_LEN:
            try:
                return parse_sensor_response(frame)
            except ModbusError:
                logger.warning(
                    "CRC mismatch from sensor ID %d (attempt %d)", slave_id, attempt
                )
                continue
        logger.warning("Sensor ID %d response error (attempt %d)", slave_id, attempt)
        sleep(RETRY_DELAY_S)
    logger.warning("Sensor ID %d failed after %d attempts", slave_id, attempts)
    return SensorReading.failed()


def build_modbus_payload(
    bus: _Bus, sleep: Callable[[float], None] = time.sleep
) -> Payload:
    """Read every sensor on the bus into a sealed payload."""
    readings = [
        read_sensor(bus, SENSOR_SLAVE_START + index, sleep=sleep)
        for index in range(SENSOR_COUNT)
    ]
    payload = Payload(sensor_data=readings, reserved=b"\xff" * RESERVED_SIZE)
    return payload.seal()


def dummy_payload(timestamp_us: int | None = None) -> Payload:
    """A sealed payload with fixed sample values, for exercising the uplink."""
    if timestamp_us is None:
        timestamp_us = time.monotonic_ns() // 1000
    payload = Payload(
        timestamp=timestamp_us,
        device_id=DUMMY_DEVICE_ID,
        topic=DUMMY_TOPIC,
        battery_mv=DUMMY_BATTERY_MV,
        reserved=b"\xff" * RESERVED_SIZE,
    )
    payload.sensor_data[0] = SensorReading(
        ph=700,
        moisture=350,
        temperature=250,
        conductivity=500,
        nitrogen=20,
        phosphorus=10,
        potassium=30,
    )
    return payload.seal()
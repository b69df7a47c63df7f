"""Modbus RTU framing and a small serial-bus master."""

from __future__ import annotations

from typing import Protocol

import serial

BAUD_RATE = 9600
BUFFER_SIZE = 256
READ_TIMEOUT_S = 0.1
MAX_FRAME_SIZE = 256


class ModbusError(Exception):
    """Raised when a frame received from the bus is malformed."""


class _Port(Protocol):
    def write(self, data: bytes) -> int | None: ...

    def read(self, size: int) -> bytes: ...


def crc16(data: bytes) -> int:
    """Return the Modbus CRC-16 of ``data``."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def _require_range(name: str, value: int, bits: int) -> None:
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{name} out of range: {value}")


def build_request(
    slave_address: int,
    function_code: int,
    start_address: int,
    quantity: int,
    data: bytes = b"",
) -> bytes:
    """Build a request frame: header, optional data and a little-endian CRC."""
    _require_range("slave_address", slave_address, 8)
    _require_range("function_code", function_code, 8)
    _require_range("start_address", start_address, 16)
    _require_range("quantity", quantity, 16)
    body = (
        bytes((slave_address, function_code))
        + start_address.to_bytes(2, "big")
        + quantity.to_bytes(2, "big")
        + bytes(data)
    )
    if len(body) + 2 > MAX_FRAME_SIZE:
        raise ValueError(f"frame longer than {MAX_FRAME_SIZE} bytes")
    return body + crc16(body).to_bytes(2, "little")


def frame_crc_ok(frame: bytes) -> bool:
    """Tell whether the trailing two bytes of ``frame`` are its valid CRC."""
    if len(frame) < 2:
        return False
    return int.from_bytes(frame[-2:], "little") == crc16(frame[:-2])


class ModbusRTU:
    """Modbus RTU master over a serial port or any object with read/write."""

    def __init__(self, port: _Port | str, read_size: int = BUFFER_SIZE) -> None:
        if isinstance(port, str):
            port = serial.Serial(
                port,
                baudrate=BAUD_RATE,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=READ_TIMEOUT_S,
            )
        if read_size <= 0:
            raise ValueError("read_size must be positive")
        self.port = port
        self.read_size = read_size

    def send(
        self,
        slave_address: int,
        function_code: int,
        start_address: int,
        quantity: int,
        data: bytes = b"",
    ) -> bytes:
        """Write one request frame to the bus and return it."""
        frame = build_request(slave_address, function_code, start_address, quantity, data)
        self.port.write(frame)
        return frame

    def receive(self, buffer_size: int | None = None) -> bytes:
        """Read one response; empty bytes when nothing arrived.

        Raises ModbusError when the received frame fails its CRC check.
        """
        size = self.read_size if buffer_size is None else buffer_size
        frame = bytes(self.port.read(size))
        if not frame:
            return b""
        if not frame_crc_ok(frame):
            raise ModbusError(f"CRC mismatch in {len(frame)}-byte frame")
        return frame

    def close(self) -> None:
        close = getattr(self.port, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> ModbusRTU:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
"""AT-command driver for a GSM modem providing a TCP link."""

from __future__ import annotations

import logging
import re
import time
from enum import IntEnum
from typing import Callable, Iterable, Protocol

import serial

BAUD_RATE = 115200
RESPONSE_LIMIT = 255
TCP_BUFFER_SIZE = 512
SEND_ATTEMPTS = 5
BYTE_TIMEOUT_MS = 10
RESET_HOLD_S = 0.5
DEFAULT_RESET_WAIT_S = 10
GPRS_REGISTRATION_TRIES = 3

_RXGET_AVAILABLE = b"+CIPRXGET: 4,"
_RXGET_DATA = b"+CIPRXGET: 2,"
_LEADING_INT = re.compile(rb"\s*([+-]?\d+)")

logger = logging.getLogger(__name__)


class NetworkState(IntEnum):
    """Progress of the modem and broker link, ordered from off to subscribed."""

    OFF = 0
    SIM_READY = 1
    GPRS_ATTACHED = 2
    GPRS_ERROR = 3
    DISCONNECTED = 4
    TCP_CONNECTED = 5
    MQTT_CONNECTED = 6
    SUBSCRIBED = 7
    ERROR = 8


class _Port(Protocol):
    def write(self, data: bytes) -> int | None: ...

    def read(self, size: int) -> bytes: ...


def _atoi(text: bytes) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def _default_clock() -> float:
    return time.monotonic() * 1000.0


class Modem:
    """Talks to the modem over a serial port and keeps track of the link state."""

    def __init__(
        self,
        port: _Port | str,
        reset_line: Callable[[int], None] | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
        on_link_lost: Callable[[], None] | None = None,
    ) -> None:
        if isinstance(port, str):
            port = serial.Serial(port, baudrate=BAUD_RATE, timeout=BYTE_TIMEOUT_MS / 1000)
        self.port = port
        self._reset_line = reset_line or (lambda _level: None)
        self._clock = clock or _default_clock
        self._sleep = sleep or time.sleep
        self.on_link_lost = on_link_lost
        self.state = NetworkState.OFF
        self._reset_line(1)

    def _read(self, size: int, timeout_ms: float) -> bytes:
        if hasattr(self.port, "timeout"):
            self.port.timeout = timeout_ms / 1000
        return bytes(self.port.read(size))

    def _drain(self) -> None:
        while self._read(1, BYTE_TIMEOUT_MS):
            pass

    def _await(self, expectations: Iterable[bytes | None], timeout_ms: float) -> int:
        """Collect bytes until one expectation appears; its 1-based index, else 0."""
        needles = list(expectations)
        response = bytearray()
        start = self._clock()
        while self._clock() - start < timeout_ms and len(response) < RESPONSE_LIMIT:
            byte = self._read(1, BYTE_TIMEOUT_MS)
            if not byte:
                continue
            response += byte
            for index, needle in enumerate(needles, start=1):
                if needle is not None and needle in response:
                    return index
        logger.debug("response: %r", bytes(response))
        return 0

    def send_raw(self, command: str) -> None:
        """Write a command line without waiting for an answer."""
        self.port.write(command.encode("latin-1") + b"\r\n")

    def send_command(self, command: str, expected: str, timeout_ms: float = 1000) -> bool:
        """Send a command and tell whether ``expected`` arrived before the timeout."""
        self._drain()
        self.send_raw(command)
        return self._await((expected.encode("latin-1"),), timeout_ms) == 1

    def send_command_either(
        self,
        command: str,
        expected1: str | None,
        expected2: str | None,
        timeout_ms: float = 1000,
    ) -> int:
        """Send a command; 1 or 2 for whichever answer came first, 0 on timeout."""
        self._drain()
        self.send_raw(command)
        needles = [
            None if text is None else text.encode("latin-1")
            for text in (expected1, expected2)
        ]
        return self._await(needles, timeout_ms)

    def read_response(self, max_len: int = 128, timeout_ms: float = 500) -> bytes:
        """Read whatever the modem sends, at most ``max_len - 1`` bytes."""
        if max_len < 2:
            raise ValueError("max_len must be at least 2")
        return self._read(max_len - 1, timeout_ms)

    def hard_reset(self, wait_seconds: float = DEFAULT_RESET_WAIT_S) -> None:
        """Pulse the reset line low and wait for the modem to come back."""
        self._reset_line(0)
        self.state = NetworkState.OFF
        self._sleep(RESET_HOLD_S)
        self._reset_line(1)
        self.state = NetworkState.GPRS_ERROR
        self._sleep(wait_seconds)

    def init_gprs(self, apn: str) -> bool:
        """Check the SIM and network registration after a reset."""
        if not self.send_command("ATE0", "OK", 500):
            logger.error("disableEcho command failed")
            return False
        if not self.send_command("AT+GSN", "OK", 1000):
            return False
        if not self.send_command("AT+CSMINS?", "+CSMINS: 0,1", 1000):
            return False
        self.state = NetworkState.SIM_READY
        if not self.send_command_either("AT+CREG?", "+CREG: 0,1", "+CREG: 0,2", 1000):
            return False
        self.state = NetworkState.GPRS_ATTACHED
        return True

    def setup_gprs(self, apn: str) -> bool:
        """Wait for registration, resetting and reinitialising the modem if it fails."""
        tries = GPRS_REGISTRATION_TRIES
        while (
            self.send_command_either("AT+CREG?", "+CREG: 0,1", "+CREG: 0,2", 1000) == 0
            and tries > 0
        ):
            tries -= 1
        if tries == 0:
            self.state = NetworkState.GPRS_ERROR
            self.hard_reset(DEFAULT_RESET_WAIT_S)
            return self.init_gprs(apn)
        self.state = NetworkState.GPRS_ATTACHED
        return True

    def connect_tcp(self, host: str, port: int) -> bool:
        """Open a single plain TCP connection with manual receive mode."""
        if not self.send_command("AT+CIPSSL=0", "OK", 5000):
            logger.error("Failed to disable SSL")
            return False
        if not self.send_command("AT+CIPSHUT", "SHUT OK", 3000):
            logger.warning("CIPSHUT failed, retrying...")
            self._sleep(1.0)
            if not self.send_command("AT+CIPSHUT", "SHUT OK", 3000):
                logger.error("CIPSHUT failed after retry")
                return False
        self.send_command("AT+CIPSTATUS", "STATE", 1000)
        if not self.send_command("AT+CIPMUX=0", "OK", 1000):
            logger.error("Failed to set CIPMUX")
            return False
        if not self.send_command("AT+CIPRXGET=1", "OK", 1000):
            logger.error("Failed to enable manual TCP read")
            return False
        if not self.send_command(f'AT+CIPSTART="TCP","{host}","{port}"', "CONNECT OK", 8000):
            logger.error("TCP Connect failed")
            return False
        logger.info("TCP connection established successfully")
        return True

    def disconnect_tcp(self) -> None:
        self.send_command("AT+CIPCLOSE", "CLOSE OK", 3000)

    def is_connected(self) -> bool:
        if not self.send_command("AT+CIPSTATUS", "OK", 1000):
            return False
        return self.send_command("", "STATE: CONNECT OK", 2000)

    def send_tcp(self, data: bytes) -> bool:
        """Send bytes over the TCP link, retrying; reports a lost link on failure."""
        data = bytes(data)
        for _ in range(SEND_ATTEMPTS):
            if not self.send_command(f"AT+CIPSEND={len(data)}", ">", 2000):
                self._sleep(0.05)
                continue
            self.port.write(data)
            if not self.send_command("", "SEND OK", 5000):
                self._sleep(0.05)
                continue
            return True
        logger.error("send_tcp failed after %d attempts", SEND_ATTEMPTS)
        if self.on_link_lost is not None:
            self.on_link_lost()
        return False

    def read_tcp_payload(self, timeout_ms: float = 1000) -> bytes:
        """Fetch pending TCP bytes from the modem; empty bytes on timeout."""
        start = self._clock()
        while self._clock() - start < timeout_ms:
            self.send_raw("AT+CIPRXGET=4")
            status = self.read_response(128, 500)
            marker = status.find(_RXGET_AVAILABLE)
            if marker < 0:
                continue
            available = _atoi(status[marker + len(_RXGET_AVAILABLE) :])
            if available <= 0:
                continue
            available = min(available, TCP_BUFFER_SIZE)

            self.send_raw(f"AT+CIPRXGET=2,{available}")
            reply = self.read_response(TCP_BUFFER_SIZE, 2000)
            if not reply:
                continue
            marker = reply.find(_RXGET_DATA)
            if marker < 0:
                continue
            line_end = reply.find(b"\r\n", marker)
            if line_end < 0:
                continue
            begin = line_end + 2
            return reply[begin : begin + available]
        return b""

    def close(self) -> None:
        close = getattr(self.port, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> Modem:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
"""MQTT 3.1.1 packet encoding and a small client running over the modem's TCP link."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from plantpulse.modem import NetworkState

CONNECT = 0x10
CONNACK = 0x20
PUBLISH = 0x30
PUBACK = 0x40
SUBSCRIBE = 0x82
PINGREQ = 0xC0
PINGRESP = 0xD0
QOS1 = 0x02

PROTOCOL_NAME = b"\x00\x04MQTT"
PROTOCOL_LEVEL = 0x04
CLEAN_SESSION = 0x02
USERNAME_FLAG = 0x80
PASSWORD_FLAG = 0x40

DEFAULT_KEEPALIVE_S = 15
PING_GRACE_MS = 5000
CONNACK_TIMEOUT_MS = 5000
RECEIVE_TIMEOUT_MS = 1000
MESSAGE_LOG_LIMIT = 255
MAX_REMAINING_LENGTH = 268_435_455

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], object]


class _Link(Protocol):
    state: NetworkState

    def send_tcp(self, data: bytes) -> bool: ...

    def read_tcp_payload(self, timeout_ms: float = 1000) -> bytes: ...

    def connect_tcp(self, host: str, port: int) -> bool: ...

    def disconnect_tcp(self) -> None: ...


@dataclass(frozen=True)
class PublishMessage:
    """A PUBLISH packet received from the broker."""

    topic: str
    payload: bytes
    qos: int = 0
    packet_id: Optional[int] = None


def encode_remaining_length(length: int) -> bytes:
    """Encode the remaining-length field as MQTT's variable-length integer."""
    if not 0 <= length <= MAX_REMAINING_LENGTH:
        raise ValueError(f"remaining length out of range: {length}")
    out = bytearray()
    while True:
        byte = length % 128
        length //= 128
        if length > 0:
            byte |= 0x80
        out.append(byte)
        if length == 0:
            return bytes(out)


def encode_string(text: str | bytes) -> bytes:
    """Prefix a UTF-8 string with its two-byte big-endian length."""
    raw = text.encode("utf-8") if isinstance(text, str) else bytes(text)
    if len(raw) > 0xFFFF:
        raise ValueError("string longer than 65535 bytes")
    return len(raw).to_bytes(2, "big") + raw


def connect_packet(
    client_id: str,
    username: str | None = None,
    password: str | None = None,
    keepalive: int = DEFAULT_KEEPALIVE_S,
) -> bytes:
    """Build a CONNECT packet with a clean session."""
    if not 0 <= keepalive <= 0xFFFF:
        raise ValueError(f"keepalive out of range: {keepalive}")
    flags = CLEAN_SESSION
    if username is not None:
        flags |= USERNAME_FLAG
    if password is not None:
        flags |= PASSWORD_FLAG
    body = bytearray(PROTOCOL_NAME)
    body.append(PROTOCOL_LEVEL)
    body.append(flags)
    body += keepalive.to_bytes(2, "big")
    body += encode_string(client_id)
    if username is not None:
        body += encode_string(username)
    if password is not None:
        body += encode_string(password)
    return bytes((CONNECT,)) + encode_remaining_length(len(body)) + bytes(body)


def subscribe_packet(packet_id: int, topic: str) -> bytes:
    """Build a SUBSCRIBE packet for one topic at QoS 0."""
    if not 0 <= packet_id <= 0xFFFF:
        raise ValueError(f"packet id out of range: {packet_id}")
    body = packet_id.to_bytes(2, "big") + encode_string(topic) + b"\x00"
    return bytes((SUBSCRIBE,)) + encode_remaining_length(len(body)) + body


def publish_packet(
    topic: str, data: bytes, qos: int = 0, packet_id: int | None = None
) -> bytes:
    """Build a PUBLISH packet; QoS above 0 needs a packet id."""
    if qos not in (0, 1, 2):
        raise ValueError(f"invalid QoS: {qos}")
    variable = encode_string(topic)
    if qos > 0:
        if packet_id is None or not 0 < packet_id <= 0xFFFF:
            raise ValueError("QoS above 0 needs a packet id between 1 and 65535")
        variable += packet_id.to_bytes(2, "big")
    body = variable + bytes(data)
    return bytes((PUBLISH | (qos << 1),)) + encode_remaining_length(len(body)) + body


def parse_publish(packet: bytes) -> PublishMessage:
    """Decode a PUBLISH packet received from the broker."""
    packet = bytes(packet)
    if not packet or packet[0] & 0xF0 != PUBLISH:
        raise ValueError("not a PUBLISH packet")
    qos = (packet[0] >> 1) & 0x03
    remaining = 0
    multiplier = 1
    index = 1
    while True:
        if index >= len(packet):
            raise ValueError("truncated remaining length")
        byte = packet[index]
        index += 1
        remaining += (byte & 0x7F) * multiplier
        multiplier *= 128
        if not byte & 0x80:
            break
        if index > 4:
            raise ValueError("remaining length too long")
    end = index + remaining
    if end > len(packet):
        raise ValueError("truncated PUBLISH packet")
    if remaining < 2:
        raise ValueError("PUBLISH packet without topic")
    topic_len = int.from_bytes(packet[index : index + 2], "big")
    cursor = index + 2 + topic_len
    if cursor > end:
        raise ValueError("topic longer than packet")
    topic = packet[index + 2 : cursor].decode("utf-8", errors="replace")
    packet_id = None
    if qos > 0:
        if cursor + 2 > end:
            raise ValueError("missing packet id")
        packet_id = int.from_bytes(packet[cursor : cursor + 2], "big")
        cursor += 2
    return PublishMessage(topic, packet[cursor:end], qos, packet_id)


def log_message(topic: str, payload: bytes) -> str:
    """Log a received message and return its text, cut to 255 bytes."""
    text = bytes(payload[:MESSAGE_LOG_LIMIT]).decode("utf-8", errors="replace")
    logger.info("Received on topic: %s", topic)
    logger.info("Message: %s", text)
    return text


def _default_clock() -> float:
    return time.monotonic() * 1000.0


class MqttClient:
    """MQTT client speaking through the modem's TCP link."""

    def __init__(
        self,
        modem: _Link,
        keepalive: int = DEFAULT_KEEPALIVE_S,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.modem = modem
        self.keepalive = keepalive
        self._clock = clock or _default_clock
        now = self._clock()
        self.last_in_activity = now
        self.last_out_activity = now
        self.ping_outstanding = False
        self._next_packet_id = 1

    def connect(
        self, client_id: str, username: str | None = None, password: str | None = None
    ) -> bool:
        """Send CONNECT and tell whether the broker accepted it."""
        packet = connect_packet(client_id, username, password, self.keepalive)
        if not self.modem.send_tcp(packet):
            return False
        port = getattr(self.modem, "port", None)
        flush = getattr(port, "reset_input_buffer", None)
        if flush is not None:
            flush()
        reply = self.modem.read_tcp_payload(CONNACK_TIMEOUT_MS)
        if len(reply) < 4:
            logger.debug("no CONNACK or short packet")
            return False
        if reply[0] != CONNACK or reply[1] != 0x02:
            logger.debug("invalid CONNACK format")
            return False
        if reply[3] != 0x00:
            logger.debug("CONNECT refused, return code 0x%02X", reply[3])
            return False
        return True

    def connect_broker(
        self,
        host: str,
        port: int,
        client_id: str,
        username: str | None = None,
        password: str | None = None,
    ) -> bool:
        """Open the TCP link and connect to the broker over it."""
        if not self.modem.connect_tcp(host, port):
            logger.error("Failed to connect to TCP broker")
            return False
        self.modem.state = NetworkState.TCP_CONNECTED
        if not self.connect(client_id, username, password):
            logger.error("Failed to connect to MQTT broker")
            return False
        self.modem.state = NetworkState.MQTT_CONNECTED
        logger.info("Successfully connected to MQTT broker")
        return True

    def subscribe(self, packet_id: int, topic: str) -> bool:
        """Subscribe to a topic; closes the TCP link when sending fails."""
        if not self.modem.send_tcp(subscribe_packet(packet_id, topic)):
            logger.error("MQTT SUBSCRIBE failed")
            self.modem.disconnect_tcp()
            return False
        return True

    def _take_packet_id(self) -> int:
        packet_id = self._next_packet_id
        self._next_packet_id = packet_id % 0xFFFF + 1
        return packet_id

    def publish(self, topic: str, data: bytes, qos: int = 0) -> bool:
        """Publish data on a topic, numbering the packet when QoS is above 0."""
        packet_id = self._take_packet_id() if qos > 0 else None
        return self.modem.send_tcp(publish_packet(topic, data, qos, packet_id))

    def check_subscription(self, callback: MessageCallback | None = log_message) -> bool:
        """Keep the session alive and handle one incoming packet.

        Returns False when the link should be treated as lost.
        """
        now = self._clock()
        keepalive_ms = self.keepalive * 1000
        if (
            now - self.last_in_activity > keepalive_ms
            or now - self.last_out_activity > keepalive_ms
        ):
            if self.ping_outstanding and (
                now - self.last_out_activity > keepalive_ms + PING_GRACE_MS
            ):
                self.ping_outstanding = False
                self.last_in_activity = self.last_out_activity = now
                logger.error("Ping timeout (no PINGRESP within 5 sec)")
                on_link_lost = getattr(self.modem, "on_link_lost", None)
                if on_link_lost is not None:
                    on_link_lost()
                return False
            if not self.ping_outstanding:
                if not self.modem.send_tcp(bytes((PINGREQ, 0x00))):
                    logger.error("Failed to send PINGREQ")
                    return False
                logger.info("Sent PINGREQ")
                self.last_out_activity = now
                self.ping_outstanding = True

        packet = self.modem.read_tcp_payload(RECEIVE_TIMEOUT_MS)
        if not packet:
            return True

        packet_type = packet[0] & 0xF0
        if packet_type == PINGRESP:
            logger.info("Received PINGRESP")
            self.ping_outstanding = False
            self.last_in_activity = now
        elif packet_type == PUBLISH:
            self.ping_outstanding = False
            self.last_in_activity = now
            try:
                message = parse_publish(packet)
            except ValueError as exc:
                logger.warning("Malformed PUBLISH packet: %s", exc)
                return True
            if callback is not None:
                callback(message.topic, message.payload)
            if packet[0] & 0x06 == QOS1 and message.packet_id is not None:
                puback = bytes((PUBACK, 0x02)) + message.packet_id.to_bytes(2, "big")
                self.modem.send_tcp(puback)
                logger.info("Sent PUBACK for msg_id=%d", message.packet_id)
        return True
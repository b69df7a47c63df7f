"""The running device: sensor logging, publishing, and keeping the broker link up."""

from __future__ import annotations

import argparse
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable

from plantpulse.datalogging import dummy_payload
from plantpulse.modem import Modem, NetworkState
from plantpulse.mqtt import MqttClient, log_message
from plantpulse.payload import Payload

QUEUE_SIZE = 5
QUEUE_TIMEOUT_S = 0.1
SUBSCRIBE_PACKET_ID = 10
LOG_INTERVAL_S = 10.0
_POLL_S = 0.1

logger = logging.getLogger(__name__)


@dataclass
class ServiceConfig:
    """Where to connect and how often to collect readings."""

    apn: str
    host: str
    port: int
    client_id: str
    topic: str
    username: str | None = None
    password: str | None = None
    subscribe_packet_id: int = SUBSCRIBE_PACKET_ID
    queue_size: int = QUEUE_SIZE
    log_interval: float | None = LOG_INTERVAL_S


def _log_payload(payload: Payload) -> None:
    logger.info("Payload received:")
    logger.info("  Timestamp: %d", payload.timestamp)
    logger.info("  Device ID: %s", bytes(payload.device_id).hex())
    logger.info("  Topic: %s", payload.topic)
    logger.info("  Battery (mV): %d", payload.battery_mv)
    for index, reading in enumerate(payload.sensor_data):
        logger.info(
            "  Sensor %02d: pH=%d, Moisture=%d, Temp=%d, EC=%d, N=%d, P=%d, K=%d",
            index,
            reading.ph,
            reading.moisture,
            reading.temperature,
            reading.conductivity,
            reading.nitrogen,
            reading.phosphorus,
            reading.potassium,
        )
    logger.info("  Reserved: %s", bytes(payload.reserved).hex())
    logger.info("  CRC: 0x%04X", payload.crc)


class PlantPulseService:
    """Collects payloads, publishes them and keeps the MQTT session alive."""

    def __init__(
        self,
        client: MqttClient,
        config: ServiceConfig,
        collect: Callable[[], Payload] | None = None,
    ) -> None:
        if config.queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self.client = client
        self.modem = client.modem
        self.config = config
        self.collect = collect or dummy_payload
        self.queue: queue.Queue[Payload] = queue.Queue(maxsize=config.queue_size)
        self._reconnect = threading.Event()
        self._subscribed = threading.Event()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []
        self.modem.on_link_lost = self._request_reconnect

    def _request_reconnect(self) -> None:
        self._reconnect.set()

    def establish(self) -> bool:
        """Bring up GPRS, connect to the broker and subscribe; True on success."""
        cfg = self.config
        logger.info("Resetting and reinitializing modem...")
        if not self.modem.setup_gprs(cfg.apn):
            return False
        if not self.client.connect_broker(
            cfg.host, cfg.port, cfg.client_id, cfg.username, cfg.password
        ):
            logger.error("MQTT CONNECT failed")
            self.modem.disconnect_tcp()
            return False
        if not self.client.subscribe(cfg.subscribe_packet_id, cfg.topic):
            return False
        self.modem.state = NetworkState.SUBSCRIBED
        self._subscribed.set()
        logger.info("MQTT Connected and Subscribed")
        return True

    def log_once(self) -> bool:
        """Collect one payload and queue it for publishing; False if the queue is full."""
        logger.info("Collecting Modbus data...")
        payload = self.collect()
        try:
            self.queue.put(payload, timeout=QUEUE_TIMEOUT_S)
        except queue.Full:
            logger.warning("Failed to queue Modbus payload")
            return False
        logger.info("Modbus payload queued for MQTT")
        return True

    def publish_next(self, timeout: float | None = None) -> bool:
        """Publish the next queued payload; True only when it was sent."""
        try:
            payload = self.queue.get(timeout=timeout)
        except queue.Empty:
            return False
        _log_payload(payload)
        if self.modem.state < NetworkState.MQTT_CONNECTED:
            logger.error("Failed to publish, queue to nvs")
            return False
        if not self.client.publish(payload.topic, payload.pack(), 0):
            logger.error("Failed to publish, notifying reconnect")
            logger.error("Failed to publish, queue to nvs")
            self.modem.state = NetworkState.DISCONNECTED
            self._request_reconnect()
            return False
        logger.warning("Published sensor data")
        return True

    def receive_until_disconnected(self) -> bool:
        """Serve incoming packets while subscribed; False if not subscribed at the start."""
        if self.modem.state != NetworkState.SUBSCRIBED:
            logger.warning("Not yet subscribed. Waiting...")
            return False
        logger.info("Starting MQTT receive loop")
        while (
            self.modem.state in (NetworkState.SUBSCRIBED, NetworkState.MQTT_CONNECTED)
            and not self._stopping.is_set()
        ):
            if not self.client.check_subscription(log_message):
                break
        logger.warning("Disconnected. Waiting for reconnect...")
        return True

    def _connection_loop(self) -> None:
        while not self._stopping.is_set():
            if not self.establish():
                continue
            while not self._reconnect.wait(_POLL_S):
                if self._stopping.is_set():
                    return
            self._reconnect.clear()

    def _receive_loop(self) -> None:
        while not self._stopping.is_set():
            if not self._subscribed.wait(_POLL_S):
                continue
            self._subscribed.clear()
            self.receive_until_disconnected()

    def _publish_loop(self) -> None:
        while not self._stopping.is_set():
            self.publish_next(timeout=_POLL_S)

    def _logging_loop(self, interval: float) -> None:
        while not self._stopping.wait(interval):
            self.log_once()

    def start(self) -> None:
        """Start the connection, receive, publish and logging threads."""
        if any(thread.is_alive() for thread in self._threads):
            raise RuntimeError("service already running")
        self._stopping.clear()
        targets: list[tuple[str, Callable[..., None], tuple]] = [
            ("connection", self._connection_loop, ()),
            ("receive", self._receive_loop, ()),
            ("publish", self._publish_loop, ()),
        ]
        if self.config.log_interval is not None:
            targets.append(("logging", self._logging_loop, (self.config.log_interval,)))
        self._threads = [
            threading.Thread(target=target, args=args, name=name, daemon=True)
            for name, target, args in targets
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Ask every thread to finish and wait for them."""
        self._stopping.set()
        self._reconnect.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def __enter__(self) -> PlantPulseService:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="plantpulse", description="Publish soil-sensor payloads over a GSM modem."
    )
    parser.add_argument("device", help="serial device of the modem")
    parser.add_argument("--apn", required=True, help="GPRS access point name")
    parser.add_argument("--host", required=True, help="MQTT broker host")
    parser.add_argument("--port", type=int, required=True, help="MQTT broker port")
    parser.add_argument("--client-id", required=True, help="MQTT client identifier")
    parser.add_argument("--topic", required=True, help="topic to subscribe to")
    parser.add_argument("--username", default=None)
    parser.add_argument("--password", default=None)
    parser.add_argument(
        "--log-interval",
        type=float,
        default=LOG_INTERVAL_S,
        help="seconds between sensor collections",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    config = ServiceConfig(
        apn=args.apn,
        host=args.host,
        port=args.port,
        client_id=args.client_id,
        topic=args.topic,
        username=args.username,
        password=args.password,
        log_interval=args.log_interval,
    )
    with Modem(args.device) as modem:
        service = PlantPulseService(MqttClient(modem), config)
        service.start()
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            pass
        finally:
            service.stop()
    return 0
import pytest

from plantpulse.datalogging import dummy_payload
from plantpulse.modem import NetworkState
from plantpulse.mqtt import (
    MqttClient,
    PublishMessage,
    connect_packet,
    encode_remaining_length,
    encode_string,
    log_message,
    parse_publish,
    publish_packet,
    subscribe_packet,
)


class Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeModem:
    def __init__(self, responses=(), send_ok=True, tcp_ok=True):
        self.sent = []
        self.responses = list(responses)
        self.send_ok = send_ok
        self.tcp_ok = tcp_ok
        self.tcp_calls = []
        self.state = NetworkState.OFF
        self.disconnects = 0
        self.links_lost = 0
        self.reads = 0
        self.on_link_lost = self._lost

    def _lost(self):
        self.links_lost += 1

    def send_tcp(self, data):
        self.sent.append(bytes(data))
        return self.send_ok

    def read_tcp_payload(self, timeout_ms=1000):
        self.reads += 1
        return self.responses.pop(0) if self.responses else b""

    def connect_tcp(self, host, port):
        self.tcp_calls.append((host, port))
        return self.tcp_ok

    def disconnect_tcp(self):
        self.disconnects += 1


def test_remaining_length_small_values_are_one_byte():
    assert encode_remaining_length(0) == b"\x00"
    assert encode_remaining_length(127) == b"\x7f"


def test_remaining_length_multi_byte():
    assert encode_remaining_length(128) == b"\x80\x01"
    assert len(encode_remaining_length(16383)) == 2
    assert len(encode_remaining_length(16384)) == 3


@pytest.mark.parametrize("value", [-1, 268_435_456])
def test_remaining_length_out_of_range(value):
    with pytest.raises(ValueError):
        encode_remaining_length(value)


def test_encode_string_prefixes_length():
    assert encode_string("ab") == b"\x00\x02ab"
    assert encode_string("") == b"\x00\x00"


def test_connect_packet_without_credentials():
    packet = connect_packet("node", keepalive=15)
    assert packet[0] == 0x10
    assert packet[1] == len(packet) - 2
    assert packet[2:9] == b"\x00\x04MQTT\x04"
    assert packet[9] == 0x02
    assert packet[10:12] == (15).to_bytes(2, "big")
    assert packet.endswith(encode_string("node"))


def test_connect_packet_with_credentials():
    password = "password"
    packet = connect_packet("node", "user", password, 15)
    flags = packet[9]
    assert flags & 0x80 and flags & 0x40 and flags & 0x02
    assert packet.endswith(encode_string("node") + encode_string("user") + encode_string(password))


def test_subscribe_packet_layout():
    packet = subscribe_packet(10, "soil/cmd")
    assert packet[0] == 0x82
    assert packet[1] == len(packet) - 2
    assert packet[2:4] == (10).to_bytes(2, "big")
    assert packet[4:] == encode_string("soil/cmd") + b"\x00"


def test_publish_round_trip_qos0():
    packet = publish_packet("soil/sensor", b"hello")
    assert packet[0] == 0x30
    assert parse_publish(packet) == PublishMessage("soil/sensor", b"hello", 0, None)


def test_publish_round_trip_qos1():
    packet = publish_packet("t", b"data", qos=1, packet_id=7)
    assert packet[0] & 0x06 == 0x02
    assert parse_publish(packet) == PublishMessage("t", b"data", 1, 7)


def test_publish_round_trip_full_payload():
    body = dummy_payload(1).pack()
    packet = publish_packet("soil/sensor", body)
    assert parse_publish(packet).payload == body


def test_publish_qos1_requires_packet_id():
    with pytest.raises(ValueError):
        publish_packet("t", b"x", qos=1)


def test_publish_rejects_bad_qos():
    with pytest.raises(ValueError):
        publish_packet("t", b"x", qos=3)


def test_parse_publish_rejects_other_types():
    with pytest.raises(ValueError):
        parse_publish(b"\xd0\x00")


def test_parse_publish_rejects_truncated_packet():
    packet = publish_packet("topic", b"payload")
    with pytest.raises(ValueError):
        parse_publish(packet[:-3])


def test_log_message_returns_text_and_truncates():
    assert log_message("t", b"on") == "on"
    assert len(log_message("t", b"x" * 400)) == 255


def test_connect_accepted():
    modem = FakeModem(responses=[b"\x20\x02\x00\x00"])
    client = MqttClient(modem, clock=Clock())
    assert client.connect("node") is True
    assert modem.sent[0] == connect_packet("node", keepalive=15)


def test_connect_refused():
    modem = FakeModem(responses=[b"\x20\x02\x00\x05"])
    assert MqttClient(modem, clock=Clock()).connect("node") is False


def test_connect_short_reply():
    modem = FakeModem(responses=[b"\x20\x02"])
    assert MqttClient(modem, clock=Clock()).connect("node") is False


def test_connect_send_failure_skips_read():
    modem = FakeModem(send_ok=False)
    assert MqttClient(modem, clock=Clock()).connect("node") is False
    assert modem.reads == 0


def test_connect_broker_sets_state():
    modem = FakeModem(responses=[b"\x20\x02\x00\x00"])
    client = MqttClient(modem, clock=Clock())
    assert client.connect_broker("broker.example.com", 1883, "node") is True
    assert modem.tcp_calls == [("broker.example.com", 1883)]
    assert modem.state == NetworkState.MQTT_CONNECTED


def test_connect_broker_tcp_failure():
    modem = FakeModem(tcp_ok=False)
    client = MqttClient(modem, clock=Clock())
    assert client.connect_broker("broker.example.com", 1883, "node") is False
    assert modem.state == NetworkState.OFF
    assert modem.sent == []


def test_connect_broker_mqtt_failure_leaves_tcp_state():
    modem = FakeModem(responses=[b"\x20\x02\x00\x05"])
    client = MqttClient(modem, clock=Clock())
    assert client.connect_broker("broker.example.com", 1883, "node") is False
    assert modem.state == NetworkState.TCP_CONNECTED


def test_subscribe_failure_disconnects():
    modem = FakeModem(send_ok=False)
    assert MqttClient(modem, clock=Clock()).subscribe(10, "soil/cmd") is False
    assert modem.disconnects == 1


def test_subscribe_success_sends_packet():
    modem = FakeModem()
    assert MqttClient(modem, clock=Clock()).subscribe(10, "soil/cmd") is True
    assert modem.sent == [subscribe_packet(10, "soil/cmd")]
    assert modem.disconnects == 0


def test_publish_qos1_numbers_packets():
    modem = FakeModem()
    client = MqttClient(modem, clock=Clock())
    assert client.publish("t", b"a", qos=1)
    assert client.publish("t", b"b", qos=1)
    ids = [parse_publish(packet).packet_id for packet in modem.sent]
    assert ids == [1, 2]


def test_publish_qos0_sends_plain_packet():
    modem = FakeModem()
    MqttClient(modem, clock=Clock()).publish("t", b"a")
    assert modem.sent == [publish_packet("t", b"a")]


def test_no_ping_within_keepalive():
    modem = FakeModem()
    clock = Clock()
    client = MqttClient(modem, keepalive=15, clock=clock)
    clock.now = 1000
    assert client.check_subscription() is True
    assert modem.sent == []


def test_ping_sent_after_keepalive_and_cleared_by_pingresp():
    modem = FakeModem(responses=[b"\xd0\x00"])
    clock = Clock()
    client = MqttClient(modem, keepalive=15, clock=clock)
    clock.now = 15001
    assert client.check_subscription() is True
    assert modem.sent == [b"\xc0\x00"]
    assert client.ping_outstanding is False
    assert client.last_in_activity == 15001


def test_ping_timeout_reports_lost_link():
    modem = FakeModem()
    clock = Clock()
    client = MqttClient(modem, keepalive=15, clock=clock)
    clock.now = 15001
    assert client.check_subscription() is True
    assert client.ping_outstanding is True
    clock.now = 15001 + 20001
    assert client.check_subscription() is False
    assert modem.links_lost == 1
    assert client.ping_outstanding is False


def test_ping_send_failure_returns_false():
    modem = FakeModem(send_ok=False)
    clock = Clock()
    client = MqttClient(modem, keepalive=15, clock=clock)
    clock.now = 15001
    assert client.check_subscription() is False


def test_incoming_publish_reaches_callback():
    modem = FakeModem(responses=[publish_packet("soil/cmd", b"on")])
    received = []
    client = MqttClient(modem, clock=Clock())
    assert client.check_subscription(lambda topic, data: received.append((topic, data)))
    assert received == [("soil/cmd", b"on")]
    assert modem.sent == []


def test_incoming_qos1_publish_is_acknowledged():
    modem = FakeModem(responses=[publish_packet("soil/cmd", b"on", qos=1, packet_id=42)])
    received = []
    client = MqttClient(modem, clock=Clock())
    assert client.check_subscription(lambda topic, data: received.append(data))
    assert received == [b"on"]
    assert modem.sent == [b"\x40\x02" + (42).to_bytes(2, "big")]


def test_malformed_publish_is_ignored():
    modem = FakeModem(responses=[b"\x30\x20\x00"])
    received = []
    client = MqttClient(modem, clock=Clock())
    assert client.check_subscription(lambda topic, data: received.append(data)) is True
    assert received == []
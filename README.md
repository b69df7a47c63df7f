# plantpulse

plantpulse reads soil sensors on an RS-485 Modbus RTU bus, packs their
readings into a fixed-size binary payload, and publishes that payload to
an MQTT broker through a GSM modem driven with AT commands
(`AT+CIPSTART`, `AT+CIPSEND`, `AT+CIPRXGET` and friends) over a serial
port.

Each sensor reading carries pH, moisture, temperature, conductivity and
the nitrogen, phosphorus and potassium levels. Twenty readings (slave
addresses 1 to 20), a timestamp, a device id, a topic, the battery
voltage, four reserved bytes and a CRC make up one payload, which is
sent as the body of an MQTT PUBLISH.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running the service

```
plantpulse /dev/ttyUSB0 --apn internet --host broker.example.com --port 1883 \
    --client-id plantpulse-01 --topic soil/commands
```

Arguments:

- `device` – serial device the modem is attached to (115200 baud).
- `--apn`, `--host`, `--port`, `--client-id`, `--topic` – required: the
  GPRS access point name, the broker address, and the client id and
  topic to subscribe to.
- `--username`, `--password` – optional broker credentials.
- `--log-interval` – seconds between payload collections (default 10).

The command checks network registration, connects to the broker,
subscribes to the topic and then runs four threads: one keeping the link
up (reconnecting when a send fails or a PINGREQ goes unanswered), one
reading incoming packets, one publishing queued payloads, and one
collecting a payload every `--log-interval` seconds. Stop it with
Ctrl+C.

## What the command does not do

- It does not poll the Modbus bus. The collection thread queues the
  fixed sample payload from `plantpulse.datalogging.dummy_payload`;
  real sensor polling is available as a library function
  (`build_modbus_payload`) but is not wired into the command.
- It keeps nothing on disk. A payload that cannot be published, because
  the broker link is down or the send fails, is logged and dropped.
- It has no control over a modem reset pin. `Modem.hard_reset` drives
  whatever `reset_line` callable it was given; the command gives none,
  so a "reset" only waits.
- Incoming messages are only logged; no commands are acted upon.
- The TCP link is plain: TLS is switched off with `AT+CIPSSL=0`.

## Library use

### Modbus RTU — `plantpulse.modbus`

```python
from plantpulse.modbus import build_request, crc16, frame_crc_ok

request = build_request(1, 0x03, 0x0000, 1, b"")
assert request == bytes.fromhex("010300000001840a")
assert frame_crc_ok(request)
```

`crc16(data)` is the Modbus CRC-16. `build_request` checks its field
ranges and raises `ValueError` for values that do not fit or for frames
longer than 256 bytes.

`ModbusRTU(port, read_size=256)` takes a serial device name (opened at
9600 baud, 8N1) or any object with `read` and `write`. `send(...)`
writes a request and returns it; `receive(buffer_size=None)` returns the
reply, empty bytes when nothing arrived, and raises `ModbusError` when
the reply fails its CRC check. It can be used as a context manager.

### The payload — `plantpulse.payload`

`Payload` packs to and unpacks from a 322-byte little-endian layout:
8-byte timestamp, 6-byte device id, 20-byte topic, 2-byte battery
voltage, twenty 14-byte `SensorReading` blocks, 4 reserved bytes and a
2-byte CRC.

```python
from plantpulse.datalogging import dummy_payload
from plantpulse.payload import Payload

payload = dummy_payload(1_000_000)   # already sealed
raw = payload.pack()
assert len(raw) == 322
assert Payload.unpack(raw) == payload
assert payload.crc == payload.compute_crc()
```

`compute_crc()` covers every byte but the CRC field; `seal()` stores it
and returns the payload. `SensorReading.failed()` is the all-0xFF reading
stored for a sensor that never answered. Out-of-range values and
wrongly sized fields raise `ValueError` when packing.

### Collecting readings — `plantpulse.datalogging`

- `parse_sensor_response(frame)` decodes a read-holding-registers reply
  of seven registers (temperature is signed); it raises `ModbusError` for
  a short frame or a bad CRC.
- `read_sensor(bus, slave_id, attempts=5, sleep=time.sleep)` polls one
  sensor, retrying, and returns `SensorReading.failed()` if it never
  answers properly.
- `build_modbus_payload(bus, sleep=time.sleep)` reads all twenty sensors
  into a sealed `Payload`.
- `dummy_payload(timestamp_us=None)` returns a sealed payload with fixed
  sample values in the first sensor slot.

### Modem — `plantpulse.modem`

`Modem(port, reset_line=None, clock=None, sleep=None, on_link_lost=None)`
sends AT commands (`send_raw`, `send_command`, `send_command_either`,
`read_response`), brings up the network (`init_gprs`, `setup_gprs`,
`hard_reset`), and handles a single TCP connection (`connect_tcp`,
`disconnect_tcp`, `is_connected`, `send_tcp`, `read_tcp_payload`).
`send_tcp` retries five times and calls `on_link_lost` if all fail. Its
progress is kept in `state`, a `NetworkState`.

### MQTT — `plantpulse.mqtt`

Packet helpers for MQTT 3.1.1: `encode_remaining_length`,
`encode_string`, `connect_packet`, `subscribe_packet`, `publish_packet`
and `parse_publish` (which returns a `PublishMessage`).

`MqttClient(modem, keepalive=15, clock=None)` provides `connect`,
`connect_broker`, `subscribe`, `publish` and
`check_subscription(callback=log_message)`, which sends PINGREQ when the
keep-alive runs out, handles one incoming packet, passes PUBLISH
messages to the callback, answers QoS 1 messages with PUBACK, and
returns False when the link should be treated as lost.

### The service — `plantpulse.service`

`PlantPulseService(client, config, collect=None)` is configured by a
`ServiceConfig`. `start()` runs the background threads and `stop()`
ends them; it also works as a context manager. `establish()`,
`log_once()`, `publish_next(timeout=None)` and
`receive_until_disconnected()` are the single steps the threads repeat.
Pass `collect` (for example a function calling `build_modbus_payload`)
to queue real readings instead of the sample payload.
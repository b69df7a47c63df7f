"""Soil sensor payloads from Modbus RTU, published over MQTT through a GSM modem."""

__version__ = "0.1.0"
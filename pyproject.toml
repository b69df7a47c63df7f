[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "plantpulse"
version = "0.1.0"
description = "Soil sensor logger: Modbus RTU sensor polling and MQTT publishing over a GSM modem's TCP link"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = [
    "modbus",
    "modbus-rtu",
    "rs485",
    "mqtt",
    "gsm",
    "gprs",
    "at-commands",
    "soil-sensor",
    "telemetry",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Interface Engine/Protocol Translator",
    "Topic :: Communications",
    "Topic :: Terminals :: Serial",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
plantpulse = "plantpulse.service:main"

[tool.hatch.build.targets.wheel]
packages = ["plantpulse"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

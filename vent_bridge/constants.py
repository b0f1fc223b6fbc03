"""Constants used across the vent-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "vent-bridge"
CONFIG_ENV_VAR = "VENT_BRIDGE_CONFIG"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_CERTS_DIR = Path.home() / ".config" / APP_NAME / "certs"

DEFAULT_THING_NAME = "BEC016-Thing-Group5"
DEFAULT_BROKER_ENDPOINT = "localhost"
DEFAULT_BROKER_PORT = 8883

DEFAULT_DATA_TOPIC = f"devices/{DEFAULT_THING_NAME}/data"
DEFAULT_COMMAND_TOPIC = f"devices/{DEFAULT_THING_NAME}/commands"
DEFAULT_INGEST_CLIENT_PREFIX = f"{DEFAULT_THING_NAME}-Server-"
DEFAULT_RELAY_CLIENT_PREFIX = f"{DEFAULT_THING_NAME}-Proxy-"

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8080
DEFAULT_POLL_INTERVAL_SECONDS = 3.0

DATA_ROUTE = "/api/iot-data"
PROXY_ROUTE = "/api/iot-proxy"
HEALTH_ROUTE = "/healthz"

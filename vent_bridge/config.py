"""Configuration loader for vent-bridge."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class BrokerConfig:
    endpoint: str = constants.DEFAULT_BROKER_ENDPOINT
    port: int = constants.DEFAULT_BROKER_PORT
    ca_path: Optional[Path] = None
    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None
    keepalive_seconds: int = 30
    connect_timeout_seconds: float = 30.0

    @property
    def address(self) -> str:
        return f"{self.endpoint}:{self.port}"


@dataclass(slots=True)
class IngestConfig:
    client_id_prefix: str = constants.DEFAULT_INGEST_CLIENT_PREFIX
    topic: str = constants.DEFAULT_DATA_TOPIC
    qos: int = 1
    subscribe_grace_seconds: float = 2.0
    connect_wait_seconds: float = 35.0
    connect_on_startup: bool = True


@dataclass(slots=True)
class RelayConfig:
    client_id_prefix: str = constants.DEFAULT_RELAY_CLIENT_PREFIX
    command_topic: str = constants.DEFAULT_COMMAND_TOPIC
    qos: int = 1
    publish_timeout_seconds: float = 10.0
    connect_wait_seconds: float = 35.0


@dataclass(slots=True)
class HttpConfig:
    host: str = constants.DEFAULT_HTTP_HOST
    port: int = constants.DEFAULT_HTTP_PORT
    poll_interval_seconds: float = constants.DEFAULT_POLL_INTERVAL_SECONDS


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class BridgeConfig:
    broker: BrokerConfig
    ingest: IngestConfig
    relay: RelayConfig
    http: HttpConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _optional_path(parser: ConfigParser, section: str, key: str) -> Optional[Path]:
    value = parser.get(section, key, fallback="").strip()
    if not value:
        return None
    return Path(value).expanduser()


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Pick the config path from the argument, the environment, or the default."""

    if path is not None:
        return path
    env_value = os.environ.get(constants.CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    return constants.DEFAULT_CONFIG_PATH


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = resolve_config_path(path)
    certs = constants.DEFAULT_CERTS_DIR
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "endpoint": constants.DEFAULT_BROKER_ENDPOINT,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "ca_path": str(certs / "AmazonRootCA1.pem"),
                "cert_path": str(certs / "certificate.pem.crt"),
                "key_path": str(certs / "private.pem.key"),
                "keepalive_seconds": "30",
                "connect_timeout_seconds": "30.0",
            },
            "ingest": {
                "client_id_prefix": constants.DEFAULT_INGEST_CLIENT_PREFIX,
                "topic": constants.DEFAULT_DATA_TOPIC,
                "qos": "1",
                "subscribe_grace_seconds": "2.0",
                "connect_wait_seconds": "35.0",
                "connect_on_startup": "true",
            },
            "relay": {
                "client_id_prefix": constants.DEFAULT_RELAY_CLIENT_PREFIX,
                "command_topic": constants.DEFAULT_COMMAND_TOPIC,
                "qos": "1",
                "publish_timeout_seconds": "10.0",
                "connect_wait_seconds": "35.0",
            },
            "http": {
                "host": constants.DEFAULT_HTTP_HOST,
                "port": str(constants.DEFAULT_HTTP_PORT),
                "poll_interval_seconds": str(constants.DEFAULT_POLL_INTERVAL_SECONDS),
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    endpoint_value = parser.get("broker", "endpoint")
    port_value = parser.getint(
        "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in endpoint_value:
        host_part, port_part = endpoint_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            endpoint_value = host_part
            port_value = parsed_port
            parser.set("broker", "endpoint", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        endpoint=endpoint_value,
        port=port_value,
        ca_path=_optional_path(parser, "broker", "ca_path"),
        cert_path=_optional_path(parser, "broker", "cert_path"),
        key_path=_optional_path(parser, "broker", "key_path"),
        keepalive_seconds=max(
            5, parser.getint("broker", "keepalive_seconds", fallback=30)
        ),
        connect_timeout_seconds=max(
            0.1,
            parser.getfloat("broker", "connect_timeout_seconds", fallback=30.0),
        ),
    )

    ingest = IngestConfig(
        client_id_prefix=parser.get("ingest", "client_id_prefix"),
        topic=parser.get("ingest", "topic"),
        qos=min(2, max(0, parser.getint("ingest", "qos", fallback=1))),
        subscribe_grace_seconds=max(
            0.0,
            parser.getfloat("ingest", "subscribe_grace_seconds", fallback=2.0),
        ),
        connect_wait_seconds=max(
            0.1, parser.getfloat("ingest", "connect_wait_seconds", fallback=35.0)
        ),
        connect_on_startup=parser.getboolean(
            "ingest", "connect_on_startup", fallback=True
        ),
    )

    relay = RelayConfig(
        client_id_prefix=parser.get("relay", "client_id_prefix"),
        command_topic=parser.get("relay", "command_topic"),
        qos=min(2, max(0, parser.getint("relay", "qos", fallback=1))),
        publish_timeout_seconds=max(
            0.1,
            parser.getfloat("relay", "publish_timeout_seconds", fallback=10.0),
        ),
        connect_wait_seconds=max(
            0.1, parser.getfloat("relay", "connect_wait_seconds", fallback=35.0)
        ),
    )

    http = HttpConfig(
        host=parser.get("http", "host"),
        port=parser.getint("http", "port", fallback=constants.DEFAULT_HTTP_PORT),
        poll_interval_seconds=max(
            0.5,
            parser.getfloat(
                "http",
                "poll_interval_seconds",
                fallback=constants.DEFAULT_POLL_INTERVAL_SECONDS,
            ),
        ),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_optional_path(parser, "logging", "path"),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return BridgeConfig(
        broker=broker,
        ingest=ingest,
        relay=relay,
        http=http,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: BridgeConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)

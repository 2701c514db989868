"""Configuration loading for Tabular."""

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

MOVE_STRATEGIES = ("overwrite", "rerank")


@dataclass
class DeviceConfig:
    # Originator id stamped on every mutation this process sends
    id: str = ""


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 4000
    url: str = "http://localhost:4000"
    request_timeout_seconds: float = 10.0
    retry_max_attempts: int = 3


@dataclass
class StoreConfig:
    """Configuration for the ordered SQLite store."""

    db_path: str = "~/.tabular/database.sqlite"
    timeout_seconds: float = 5.0
    move_strategy: str = "overwrite"  # "overwrite" or "rerank"


@dataclass
class MQTTConfig:
    enabled: bool = True
    broker: str = "localhost"
    port: int = 1883
    topic: str = "tabular/userslist"
    username: str | None = None
    password: str | None = None
    connect_timeout_seconds: float = 5.0


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with TABULAR_ prefix."""
    return os.environ.get(f"TABULAR_{key}", default)


def _is_truthy(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if device_id := _get_env("DEVICE_ID"):
        config.device.id = device_id

    # Server overrides
    if url := _get_env("SERVER_URL"):
        config.server.url = url
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path
    if strategy := _get_env("MOVE_STRATEGY"):
        config.store.move_strategy = strategy

    # MQTT overrides
    if enabled := _get_env("MQTT_ENABLED"):
        config.mqtt.enabled = _is_truthy(enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.mqtt.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.mqtt.password = password
    if topic := _get_env("MQTT_TOPIC"):
        config.mqtt.topic = topic

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ValueError: If the configured move strategy is unknown.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "device" in data:
                config.device = DeviceConfig(
                    id=str(data["device"].get("id", config.device.id) or "")
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    url=server_data.get("url", config.server.url),
                    request_timeout_seconds=server_data.get(
                        "request_timeout_seconds",
                        config.server.request_timeout_seconds,
                    ),
                    retry_max_attempts=server_data.get(
                        "retry_max_attempts", config.server.retry_max_attempts
                    ),
                )

            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    timeout_seconds=store_data.get(
                        "timeout_seconds", config.store.timeout_seconds
                    ),
                    move_strategy=store_data.get(
                        "move_strategy", config.store.move_strategy
                    ),
                )

            if "mqtt" in data:
                mqtt_data = data["mqtt"]
                config.mqtt = MQTTConfig(
                    enabled=mqtt_data.get("enabled", config.mqtt.enabled),
                    broker=mqtt_data.get("broker", config.mqtt.broker),
                    port=mqtt_data.get("port", config.mqtt.port),
                    topic=mqtt_data.get("topic", config.mqtt.topic),
                    username=mqtt_data.get("username"),
                    password=mqtt_data.get("password"),
                    connect_timeout_seconds=mqtt_data.get(
                        "connect_timeout_seconds",
                        config.mqtt.connect_timeout_seconds,
                    ),
                )

    config = _apply_env_overrides(config)

    if config.store.move_strategy not in MOVE_STRATEGIES:
        raise ValueError(
            f"Unknown move strategy {config.store.move_strategy!r}, "
            f"expected one of {', '.join(MOVE_STRATEGIES)}"
        )

    # Every process needs a stable originator id for echo suppression
    if not config.device.id:
        config.device.id = str(uuid.uuid4())

    return config

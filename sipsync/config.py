"""Configuration loading for SipSync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


@dataclass
class DeviceConfig:
    name: str = "phone"
    peer: str = "watch"
    premium: bool = False  # entitlement declared to the peer
    timezone: str | None = None  # IANA name, e.g. "America/New_York"; system offset if unset

    def zone(self) -> ZoneInfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


@dataclass
class StorageConfig:
    """Where the replica and small flags live."""

    db_path: str = "~/.sipsync/shared.db"
    namespace: str = "group.sipsync.shared"
    entries_key: str = "drink_entries"


@dataclass
class RateLimitConfig:
    minimum_interval_seconds: float = 120


@dataclass
class SyncConfig:
    """Configuration for device-to-device sync."""

    enabled: bool = True
    transport: str = "mqtt"  # "mqtt" or "none"
    request_timeout_seconds: float = 10.0


@dataclass
class MQTTConfig:
    broker: str = "localhost"
    port: int = 1883
    topic_prefix: str = "sipsync"
    username: str | None = None
    password: str | None = None
    keepalive: int = 60
    session_expiry_seconds: int = 7 * 24 * 3600


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)


VALID_TRANSPORTS = ("mqtt", "none")


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with SIPSYNC_ prefix."""
    return os.environ.get(f"SIPSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Device overrides
    if name := _get_env("DEVICE_NAME"):
        config.device.name = name
    if peer := _get_env("DEVICE_PEER"):
        config.device.peer = peer
    if premium := _get_env("DEVICE_PREMIUM"):
        config.device.premium = _is_true(premium)
    if tz_name := _get_env("DEVICE_TIMEZONE"):
        config.device.timezone = tz_name

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path
    if namespace := _get_env("STORAGE_NAMESPACE"):
        config.storage.namespace = namespace

    # Rate limit
    if interval := _get_env("RATE_LIMIT_SECONDS"):
        config.rate_limit.minimum_interval_seconds = float(interval)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if transport := _get_env("SYNC_TRANSPORT"):
        config.sync.transport = transport.lower()
    if timeout := _get_env("SYNC_TIMEOUT"):
        config.sync.request_timeout_seconds = float(timeout)

    # MQTT overrides
    if broker := _get_env("MQTT_BROKER"):
        config.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.mqtt.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.mqtt.password = password
    if prefix := _get_env("MQTT_TOPIC_PREFIX"):
        config.mqtt.topic_prefix = prefix

    return config


def _validate(config: Config) -> None:
    if config.sync.transport not in VALID_TRANSPORTS:
        raise ValueError(
            f"Unknown sync transport {config.sync.transport!r}, "
            f"expected one of {', '.join(VALID_TRANSPORTS)}"
        )
    if config.device.name == config.device.peer:
        raise ValueError("device.name and device.peer must differ")
    if config.rate_limit.minimum_interval_seconds < 0:
        raise ValueError("rate_limit.minimum_interval_seconds cannot be negative")
    if config.device.timezone:
        try:
            ZoneInfo(config.device.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {config.device.timezone!r}") from e


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ValueError: If a setting has an invalid value.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse device config
            if "device" in data:
                device_data = data["device"]
                config.device = DeviceConfig(
                    name=device_data.get("name", config.device.name),
                    peer=device_data.get("peer", config.device.peer),
                    premium=device_data.get("premium", config.device.premium),
                    timezone=device_data.get("timezone", config.device.timezone),
                )

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    namespace=storage_data.get("namespace", config.storage.namespace),
                    entries_key=storage_data.get(
                        "entries_key", config.storage.entries_key
                    ),
                )

            # Parse rate limit config
            if "rate_limit" in data:
                config.rate_limit = RateLimitConfig(
                    minimum_interval_seconds=data["rate_limit"].get(
                        "minimum_interval_seconds",
                        config.rate_limit.minimum_interval_seconds,
                    )
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    transport=sync_data.get("transport", config.sync.transport),
                    request_timeout_seconds=sync_data.get(
                        "request_timeout_seconds", config.sync.request_timeout_seconds
                    ),
                )

            # Parse MQTT config
            if "mqtt" in data:
                mqtt_data = data["mqtt"]
                config.mqtt = MQTTConfig(
                    broker=mqtt_data.get("broker", config.mqtt.broker),
                    port=mqtt_data.get("port", config.mqtt.port),
                    topic_prefix=mqtt_data.get("topic_prefix", config.mqtt.topic_prefix),
                    username=mqtt_data.get("username"),
                    password=mqtt_data.get("password"),
                    keepalive=mqtt_data.get("keepalive", config.mqtt.keepalive),
                    session_expiry_seconds=mqtt_data.get(
                        "session_expiry_seconds", config.mqtt.session_expiry_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    _validate(config)
    return config

"""Configuration loading for routinesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .models import DEFAULT_COLLECTIONS


@dataclass
class AccountConfig:
    account_id: str = "demo"
    device_id: str = ""  # Generated and persisted on first use when empty


@dataclass
class RemoteConfig:
    base_url: str = ""
    app_key: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass
class SyncConfig:
    """Configuration for pull/push coordination."""

    collections: list[str] = field(default_factory=lambda: list(DEFAULT_COLLECTIONS))
    poll_interval_seconds: int = 30
    backfill_margin_minutes: int = 5
    verify_after_push: bool = True
    stream: bool = True  # Follow the change stream beside the poll loop


@dataclass
class StoreConfig:
    db_path: str = "~/.routinesync/state.db"


@dataclass
class MQTTConfig:
    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    topic: str = "routinesync/signals"
    username: str | None = None
    password: str | None = None


@dataclass
class NotifierConfig:
    """Which signal transports to bind."""

    local: bool = True
    storage: bool = True
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)


@dataclass
class RunsConfig:
    idle_gap_minutes: int = 15
    timezone: str = "UTC"


@dataclass
class LoggingConfig:
    level: str = "info"  # "warning", "info" or "debug"
    json: bool = False


@dataclass
class Config:
    account: AccountConfig = field(default_factory=AccountConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    runs: RunsConfig = field(default_factory=RunsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with ROUTINESYNC_ prefix."""
    return os.environ.get(f"ROUTINESYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Account overrides
    if account_id := _get_env("ACCOUNT_ID"):
        config.account.account_id = account_id
    if device_id := _get_env("DEVICE_ID"):
        config.account.device_id = device_id

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if app_key := _get_env("APP_KEY"):
        config.remote.app_key = app_key
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)

    # Sync overrides
    if poll_interval := _get_env("POLL_INTERVAL"):
        config.sync.poll_interval_seconds = int(poll_interval)
    if margin := _get_env("BACKFILL_MARGIN"):
        config.sync.backfill_margin_minutes = int(margin)
    if stream := _get_env("STREAM"):
        config.sync.stream = _as_bool(stream)

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Notifier overrides
    if mqtt_enabled := _get_env("MQTT_ENABLED"):
        config.notifier.mqtt.enabled = _as_bool(mqtt_enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.notifier.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.notifier.mqtt.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.notifier.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.notifier.mqtt.password = password

    # Runs overrides
    if idle_gap := _get_env("IDLE_GAP_MINUTES"):
        config.runs.idle_gap_minutes = int(idle_gap)
    if timezone := _get_env("TIMEZONE"):
        config.runs.timezone = timezone

    # Logging overrides
    if log_level := _get_env("LOG_LEVEL"):
        config.logging.level = log_level.lower()
    if log_json := _get_env("LOG_JSON"):
        config.logging.json = _as_bool(log_json)

    return config


def _parse_mqtt(data: dict) -> MQTTConfig:
    """Parse MQTT transport configuration."""
    defaults = MQTTConfig()
    return MQTTConfig(
        enabled=data.get("enabled", defaults.enabled),
        broker=data.get("broker", defaults.broker),
        port=data.get("port", defaults.port),
        topic=data.get("topic", defaults.topic),
        username=data.get("username"),
        password=data.get("password"),
    )


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.

    Raises:
        ConfigError: If the file exists but is not a valid YAML mapping.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

            if not isinstance(data, dict):
                raise ConfigError(f"Config file {path} must contain a mapping")

            # Parse account config
            if "account" in data:
                account_data = data["account"]
                config.account = AccountConfig(
                    account_id=account_data.get("account_id", config.account.account_id),
                    device_id=account_data.get("device_id", config.account.device_id),
                )

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    app_key=remote_data.get("app_key", config.remote.app_key),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    max_retries=remote_data.get("max_retries", config.remote.max_retries),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    collections=list(
                        sync_data.get("collections", config.sync.collections)
                    ),
                    poll_interval_seconds=sync_data.get(
                        "poll_interval_seconds", config.sync.poll_interval_seconds
                    ),
                    backfill_margin_minutes=sync_data.get(
                        "backfill_margin_minutes", config.sync.backfill_margin_minutes
                    ),
                    verify_after_push=sync_data.get(
                        "verify_after_push", config.sync.verify_after_push
                    ),
                    stream=sync_data.get("stream", config.sync.stream),
                )

            # Parse store config
            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            # Parse notifier config
            if "notifier" in data:
                notifier_data = data["notifier"]
                config.notifier = NotifierConfig(
                    local=notifier_data.get("local", config.notifier.local),
                    storage=notifier_data.get("storage", config.notifier.storage),
                    mqtt=_parse_mqtt(notifier_data.get("mqtt") or {}),
                )

            # Parse runs config
            if "runs" in data:
                runs_data = data["runs"]
                config.runs = RunsConfig(
                    idle_gap_minutes=runs_data.get(
                        "idle_gap_minutes", config.runs.idle_gap_minutes
                    ),
                    timezone=runs_data.get("timezone", config.runs.timezone),
                )

            # Parse logging config
            if "logging" in data:
                log_data = data["logging"]
                config.logging = LoggingConfig(
                    level=str(log_data.get("level", config.logging.level)).lower(),
                    json=log_data.get("json", config.logging.json),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config

"""Configuration loading and persistence helpers."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # type: ignore[import]

from wsprmux_core.config_layering import load_layered_config

try:  # Optional dependency for secure credential storage
    import keyring as _keyring  # type: ignore[import]
    from keyring.errors import KeyringError  # type: ignore[import]
except ImportError:  # pragma: no cover - keyring not installed
    _keyring = None
    KeyringError = Exception

CONFIG_VERSION = 1
CONFIG_ENV_VAR = "WSPRMUX_CONFIG_PATH"
DATA_DIR_ENV_VAR = "WSPRMUX_DATA_DIR"
CONFIG_DIR_NAME = "wsprmux"
CONFIG_FILENAME = "config.toml"
KEYRING_SERVICE = "wsprmux"
KEYRING_SENTINEL = "__KEYRING__"

DEFAULT_PROGRAM_NAME = "wsprmux"
DEFAULT_WSPRNET_ENDPOINT = "http://wsprnet.org/meptspots.php"
DEFAULT_RETENTION_HOURS = 24


def _xdg_path(env_var: str, default: Path) -> Path:
    value = os.environ.get(env_var)
    if value:
        return Path(value).expanduser()
    return default


def get_config_dir() -> Path:
    """Return the directory containing configuration files."""
    default = Path.home() / ".config"
    return _xdg_path("XDG_CONFIG_HOME", default) / CONFIG_DIR_NAME


def get_data_dir() -> Path:
    """Return the directory for runtime data/log files.

    ``WSPRMUX_DATA_DIR`` takes precedence over the XDG location.
    """
    override = os.environ.get(DATA_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    default = Path.home() / ".local" / "share"
    return _xdg_path("XDG_DATA_HOME", default) / CONFIG_DIR_NAME


def get_logs_dir() -> Path:
    return get_data_dir() / "logs"


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Resolve the configuration file path, honouring overrides."""
    if path is not None:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return get_config_dir() / CONFIG_FILENAME


@dataclass(slots=True)
class ReceiverConfig:
    """Identity reported to WSPRNet for every uploaded spot."""

    callsign: str
    locator: str


@dataclass(slots=True)
class InstanceConfig:
    """One upstream receiver publishing decodes under ``topic_prefix``."""

    name: str
    topic_prefix: str


@dataclass(slots=True)
class MqttConfig:
    broker: str
    port: int = 1883
    username: str | None = None
    password: str | None = None
    password_in_keyring: bool = False
    qos: int = 0
    client_id: str | None = None
    instances: list[InstanceConfig] = field(default_factory=list)


@dataclass(slots=True)
class WsprNetConfig:
    endpoint: str = DEFAULT_WSPRNET_ENDPOINT
    program_name: str = DEFAULT_PROGRAM_NAME
    program_version: str = ""
    dry_run: bool = False
    timeout_s: float = 30.0


@dataclass(slots=True)
class StorageConfig:
    data_dir: Path
    spots_dir: Path
    stats_file: Path
    retention_hours: int = DEFAULT_RETENTION_HOURS


@dataclass(slots=True)
class AggregatorConfig:
    """Contains receiver identity, broker settings, uploader and storage options."""

    receiver: ReceiverConfig
    mqtt: MqttConfig
    wsprnet: WsprNetConfig = field(default_factory=WsprNetConfig)
    storage: StorageConfig | None = None
    country_table: Path | None = None

    def __post_init__(self) -> None:
        if self.storage is None:
            self.storage = default_storage()

    def validate(self) -> None:
        """Raise ValueError on invalid settings; fill in derived defaults."""
        if not self.receiver.callsign:
            raise ValueError("receiver callsign is required")
        if not self.receiver.locator:
            raise ValueError("receiver locator is required")
        if len(self.receiver.locator) not in (4, 6):
            raise ValueError("receiver locator must be 4 or 6 characters")
        if not self.mqtt.broker:
            raise ValueError("MQTT broker is required")
        if not self.mqtt.instances:
            raise ValueError("at least one MQTT instance is required")
        for index, instance in enumerate(self.mqtt.instances):
            if not instance.topic_prefix:
                raise ValueError(f"instance {index}: topic_prefix is required")
            if not instance.name:
                instance.name = instance.topic_prefix
        if self.mqtt.qos not in (0, 1, 2):
            self.mqtt.qos = 0
        if not self.wsprnet.program_name:
            raise ValueError("wsprnet program_name is required")

    def to_dict(self) -> dict[str, Any]:
        """Convert the configuration to a TOML-serialisable dictionary."""
        storage = self.storage or default_storage()
        return {
            "version": CONFIG_VERSION,
            "receiver": {
                "callsign": self.receiver.callsign,
                "locator": self.receiver.locator,
            },
            "mqtt": _drop_none(
                {
                    "broker": self.mqtt.broker,
                    "port": self.mqtt.port,
                    "username": self.mqtt.username,
                    "password": KEYRING_SENTINEL
                    if self.mqtt.password_in_keyring
                    else self.mqtt.password,
                    "qos": self.mqtt.qos,
                    "client_id": self.mqtt.client_id,
                    "instances": [
                        {"name": inst.name, "topic_prefix": inst.topic_prefix}
                        for inst in self.mqtt.instances
                    ],
                }
            ),
            "wsprnet": {
                "endpoint": self.wsprnet.endpoint,
                "program_name": self.wsprnet.program_name,
                "program_version": self.wsprnet.program_version,
                "dry_run": self.wsprnet.dry_run,
                "timeout_s": self.wsprnet.timeout_s,
            },
            "storage": {
                "data_dir": str(storage.data_dir),
                "spots_dir": str(storage.spots_dir),
                "stats_file": str(storage.stats_file),
                "retention_hours": storage.retention_hours,
            },
            **(
                {"country_table": str(self.country_table)}
                if self.country_table is not None
                else {}
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AggregatorConfig:
        """Construct from a dictionary (typically parsed from TOML)."""
        version = data.get("version", 1)
        if version != CONFIG_VERSION:
            raise ValueError(f"Unsupported config version: {version}")

        receiver = data.get("receiver", {})
        mqtt = data.get("mqtt", {})
        wsprnet = data.get("wsprnet", {})
        storage = data.get("storage", {})

        instances = [
            InstanceConfig(
                name=str(item.get("name") or ""),
                topic_prefix=str(item.get("topic_prefix") or ""),
            )
            for item in mqtt.get("instances", []) or []
        ]
        # Legacy format: a bare list of topic prefixes
        if not instances:
            instances = [
                InstanceConfig(name=str(prefix), topic_prefix=str(prefix))
                for prefix in mqtt.get("topic_prefixes", []) or []
            ]

        password = mqtt.get("password")
        password_in_keyring = False
        username = mqtt.get("username")
        if isinstance(password, str) and password == KEYRING_SENTINEL:
            password = _retrieve_password_from_keyring(str(username or mqtt.get("broker")))
            password_in_keyring = True

        defaults = default_storage()
        data_dir = Path(storage.get("data_dir", defaults.data_dir)).expanduser()
        country_table = data.get("country_table")

        config = cls(
            receiver=ReceiverConfig(
                callsign=str(receiver.get("callsign") or "").strip().upper(),
                locator=str(receiver.get("locator") or "").strip(),
            ),
            mqtt=MqttConfig(
                broker=str(mqtt.get("broker") or ""),
                port=int(mqtt.get("port", 1883)),
                username=_optional_str(username),
                password=_optional_str(password),
                password_in_keyring=password_in_keyring,
                qos=int(mqtt.get("qos", 0)),
                client_id=_optional_str(mqtt.get("client_id")),
                instances=instances,
            ),
            wsprnet=WsprNetConfig(
                endpoint=str(wsprnet.get("endpoint", DEFAULT_WSPRNET_ENDPOINT)),
                program_name=str(wsprnet.get("program_name", DEFAULT_PROGRAM_NAME)),
                program_version=str(wsprnet.get("program_version", "")),
                dry_run=bool(wsprnet.get("dry_run", False)),
                timeout_s=float(wsprnet.get("timeout_s", 30.0)),
            ),
            storage=StorageConfig(
                data_dir=data_dir,
                spots_dir=Path(storage.get("spots_dir", data_dir / "spots")).expanduser(),
                stats_file=Path(
                    storage.get("stats_file", data_dir / "wsprnet_stats.json")
                ).expanduser(),
                retention_hours=int(
                    storage.get("retention_hours", DEFAULT_RETENTION_HOURS)
                ),
            ),
            country_table=Path(country_table).expanduser() if country_table else None,
        )
        return config


def default_storage() -> StorageConfig:
    data_dir = get_data_dir()
    return StorageConfig(
        data_dir=data_dir,
        spots_dir=data_dir / "spots",
        stats_file=data_dir / "wsprnet_stats.json",
    )


def _optional_str(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


def _drop_none(mapping: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in mapping.items() if value is not None}


def load_config(
    path: str | Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> AggregatorConfig:
    """Load, layer and validate the persisted configuration."""
    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise FileNotFoundError(config_path)
    data = load_layered_config(config_path, cli_overrides=cli_overrides)
    config = AggregatorConfig.from_dict(data)
    config.validate()
    return config


def save_config(config: AggregatorConfig, path: str | Path | None = None) -> Path:
    """Persist configuration to disk and return the file path."""
    if config.mqtt.password_in_keyring and config.mqtt.password:
        _store_password_in_keyring(
            config.mqtt.username or config.mqtt.broker, config.mqtt.password
        )
    config_path = resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    toml_text = tomli_w.dumps(config.to_dict())
    config_path.write_text(toml_text, encoding="utf-8")
    try:
        os.chmod(config_path, stat.S_IRUSR | stat.S_IWUSR)
    except PermissionError:  # pragma: no cover - some FS disallow chmod
        pass
    return config_path


def config_summary(config: AggregatorConfig) -> str:
    """Generate a human-readable summary of key settings."""
    storage = config.storage or default_storage()
    instances = ", ".join(
        f"{inst.name} ({inst.topic_prefix})" for inst in config.mqtt.instances
    )
    return (
        f"  Receiver : {config.receiver.callsign} ({config.receiver.locator})\n"
        f"  Broker   : {config.mqtt.broker}:{config.mqtt.port} qos={config.mqtt.qos}\n"
        f"  Instances: {instances or 'none'}\n"
        f"  WSPRNet  : {config.wsprnet.endpoint}"
        f"{' [dry run]' if config.wsprnet.dry_run else ''}\n"
        f"  Spots    : {storage.spots_dir}"
    )


def _store_password_in_keyring(account: str, password: str) -> None:
    if _keyring is None:
        raise ValueError("Keyring backend not available; install 'keyring' package")
    try:
        _keyring.set_password(KEYRING_SERVICE, account, password)
    except KeyringError as exc:  # pragma: no cover - backend dependent
        raise ValueError(f"Failed to store MQTT password in keyring: {exc}") from exc


def _retrieve_password_from_keyring(account: str) -> str:
    if _keyring is None:
        raise ValueError("Keyring backend not available for stored MQTT password")
    try:
        value = _keyring.get_password(KEYRING_SERVICE, account)
    except KeyringError as exc:  # pragma: no cover - backend dependent
        raise ValueError(f"Failed to read MQTT password from keyring: {exc}") from exc
    if not value:
        raise ValueError("No MQTT password stored in keyring; rerun wsprmux init")
    return value

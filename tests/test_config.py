"""Tests for configuration load/save and validation."""

from pathlib import Path

import pytest

from wsprmux_core import config as config_module
from wsprmux_core.config import (
    AggregatorConfig,
    InstanceConfig,
    MqttConfig,
    ReceiverConfig,
    load_config,
    save_config,
)


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path: Path, monkeypatch):
    monkeypatch.setenv(config_module.DATA_DIR_ENV_VAR, str(tmp_path / "data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv(config_module.CONFIG_ENV_VAR, raising=False)


def sample_config(**mqtt_overrides) -> AggregatorConfig:
    mqtt = {
        "broker": "mqtt.local",
        "instances": [
            InstanceConfig(name="roof", topic_prefix="home/roof"),
            InstanceConfig(name="attic", topic_prefix="home/attic"),
        ],
    }
    mqtt.update(mqtt_overrides)
    return AggregatorConfig(
        receiver=ReceiverConfig(callsign="N0CALL", locator="EM12ab"),
        mqtt=MqttConfig(**mqtt),
    )


def test_round_trip(tmp_path: Path):
    path = tmp_path / "config.toml"
    save_config(sample_config(username="user", password="pw"), path)

    loaded = load_config(path)

    assert loaded.receiver.callsign == "N0CALL"
    assert loaded.mqtt.broker == "mqtt.local"
    assert loaded.mqtt.password == "pw"
    assert [i.name for i in loaded.mqtt.instances] == ["roof", "attic"]
    assert loaded.storage.spots_dir == tmp_path / "data" / "spots"
    assert loaded.storage.stats_file == tmp_path / "data" / "wsprnet_stats.json"
    assert loaded.wsprnet.endpoint == config_module.DEFAULT_WSPRNET_ENDPOINT
    assert not loaded.wsprnet.dry_run


def test_default_path_follows_xdg(tmp_path: Path):
    written = save_config(sample_config())
    assert written == tmp_path / "xdg" / "wsprmux" / "config.toml"
    assert load_config().receiver.locator == "EM12ab"


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.toml")


def test_cli_override_enables_dry_run(tmp_path: Path):
    path = save_config(sample_config(), tmp_path / "config.toml")
    loaded = load_config(path, cli_overrides={"wsprnet": {"dry_run": True}})
    assert loaded.wsprnet.dry_run


@pytest.mark.parametrize(
    "mutate,message",
    [
        (lambda c: setattr(c.receiver, "callsign", ""), "callsign"),
        (lambda c: setattr(c.receiver, "locator", "EM1"), "locator"),
        (lambda c: setattr(c.mqtt, "broker", ""), "broker"),
        (lambda c: setattr(c.mqtt, "instances", []), "instance"),
        (lambda c: setattr(c.mqtt.instances[0], "topic_prefix", ""), "topic_prefix"),
    ],
)
def test_validate_rejects(mutate, message):
    cfg = sample_config()
    mutate(cfg)
    with pytest.raises(ValueError, match=message):
        cfg.validate()


def test_validate_fills_defaults():
    cfg = sample_config(qos=7)
    cfg.mqtt.instances[0].name = ""
    cfg.validate()
    assert cfg.mqtt.instances[0].name == "home/roof"
    assert cfg.mqtt.qos == 0


def test_legacy_topic_prefix_list():
    cfg = AggregatorConfig.from_dict(
        {
            "receiver": {"callsign": "n0call", "locator": "EM12"},
            "mqtt": {"broker": "b", "topic_prefixes": ["rx1", "rx2"]},
        }
    )
    assert cfg.receiver.callsign == "N0CALL"
    assert [(i.name, i.topic_prefix) for i in cfg.mqtt.instances] == [
        ("rx1", "rx1"),
        ("rx2", "rx2"),
    ]


def test_unsupported_version():
    with pytest.raises(ValueError):
        AggregatorConfig.from_dict({"version": 99})


class FakeKeyring:
    def __init__(self) -> None:
        self.store: dict[tuple[str, str], str] = {}

    def set_password(self, service, account, password):
        self.store[(service, account)] = password

    def get_password(self, service, account):
        return self.store.get((service, account))


def test_keyring_password_round_trip(tmp_path: Path, monkeypatch):
    keyring = FakeKeyring()
    monkeypatch.setattr(config_module, "_keyring", keyring)
    cfg = sample_config(username="user", password="secret", password_in_keyring=True)

    path = save_config(cfg, tmp_path / "config.toml")

    assert config_module.KEYRING_SENTINEL in path.read_text(encoding="utf-8")
    assert "secret" not in path.read_text(encoding="utf-8")
    loaded = load_config(path)
    assert loaded.mqtt.password == "secret"
    assert loaded.mqtt.password_in_keyring


def test_keyring_unavailable(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(config_module, "_keyring", None)
    cfg = sample_config(username="user", password="secret", password_in_keyring=True)
    with pytest.raises(ValueError):
        save_config(cfg, tmp_path / "config.toml")


def test_config_summary_mentions_dry_run():
    cfg = sample_config()
    cfg.wsprnet.dry_run = True
    summary = config_module.config_summary(cfg)
    assert "N0CALL (EM12ab)" in summary
    assert "roof (home/roof)" in summary
    assert "[dry run]" in summary

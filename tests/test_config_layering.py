"""Tests for configuration layering (file < env < CLI)."""

from pathlib import Path

from wsprmux_core.config_layering import load_layered_config


def _write(path: Path) -> Path:
    path.write_text(
        '[mqtt]\nbroker = "file.local"\nport = 1883\n\n[wsprnet]\ndry_run = false\n',
        encoding="utf-8",
    )
    return path


def test_file_only(tmp_path: Path):
    data = load_layered_config(_write(tmp_path / "config.toml"))
    assert data["mqtt"]["broker"] == "file.local"


def test_env_overrides_file(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("WSPRMUX_MQTT__BROKER", "env.local")
    monkeypatch.setenv("WSPRMUX_MQTT__PORT", "1884")
    monkeypatch.setenv("WSPRMUX_WSPRNET__DRY_RUN", "true")
    data = load_layered_config(_write(tmp_path / "config.toml"))
    assert data["mqtt"]["broker"] == "env.local"
    assert data["mqtt"]["port"] == 1884
    assert data["wsprnet"]["dry_run"] is True


def test_cli_overrides_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("WSPRMUX_MQTT__BROKER", "env.local")
    data = load_layered_config(
        _write(tmp_path / "config.toml"),
        cli_overrides={"mqtt": {"broker": "cli.local"}},
    )
    assert data["mqtt"]["broker"] == "cli.local"
    assert data["mqtt"]["port"] == 1883


def test_reserved_env_vars_are_ignored(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("WSPRMUX_LOG_LEVEL", "debug")
    monkeypatch.setenv("WSPRMUX_DATA_DIR", str(tmp_path))
    data = load_layered_config(tmp_path / "missing.toml")
    assert "log_level" not in data
    assert "data_dir" not in data


def test_missing_file_contributes_nothing(tmp_path: Path):
    assert load_layered_config(tmp_path / "missing.toml", cli_overrides={"a": 1}) == {"a": 1}

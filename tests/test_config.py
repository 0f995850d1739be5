"""Tests for configuration loading and saving."""

from pathlib import Path

import pytest

from gjallarhorn.config import (
    Config,
    MonitorConfig,
    SystemConfig,
    ThemeConfig,
    WorkerConfig,
    validate_refresh_rate,
)


def test_config_defaults():
    config = Config()
    assert config.monitor.refresh_rate_ms == 500
    assert config.worker.enabled is True
    assert config.worker.elevation_command == "pkexec"
    assert config.worker.probe_interval == 10.0
    assert config.worker.tool_timeout == 10.0
    assert config.worker.shutdown_timeout == 3.0
    assert config.system.log_max_bytes == 5 * 1024 * 1024
    assert config.system.log_backup_count == 3
    assert config.theme.dark_mode is True


def test_config_paths(tmp_home: Path):
    config = Config()
    assert config.config_path == tmp_home / ".config" / "gjallarhorn" / "config.toml"
    assert config.log_path == tmp_home / ".local" / "state" / "gjallarhorn" / "gjallarhorn.log"


def test_config_save_and_load(tmp_home: Path):
    config = Config(
        monitor=MonitorConfig(refresh_rate_ms=250),
        worker=WorkerConfig(enabled=False, elevation_command="sudo", probe_interval=30.0),
        system=SystemConfig(log_level="debug"),
        theme=ThemeConfig(dark_mode=False, cpu_core_colors=["#111111", "#222222"]),
    )
    config.save()
    assert config.config_path.exists()

    loaded = Config.load()
    assert loaded.monitor.refresh_rate_ms == 250
    assert loaded.worker.enabled is False
    assert loaded.worker.elevation_command == "sudo"
    assert loaded.worker.probe_interval == 30.0
    assert loaded.system.log_level == "debug"
    assert loaded.theme.dark_mode is False
    assert loaded.theme.cpu_core_colors == ["#111111", "#222222"]


def test_config_missing_file_returns_defaults(tmp_path: Path):
    loaded = Config.load(tmp_path / "absent.toml")
    assert loaded == Config()


def test_config_partial_file_uses_defaults(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text("[monitor]\nrefresh_rate_ms = 1000\n\n[worker]\ntool_timeout = 5\n")

    loaded = Config.load(path)
    assert loaded.monitor.refresh_rate_ms == 1000
    assert loaded.worker.tool_timeout == 5.0
    assert loaded.worker.probe_interval == 10.0
    assert loaded.theme == ThemeConfig()


@pytest.mark.parametrize("value", ["50", "2001", "true", '"fast"'])
def test_config_rejects_bad_refresh_rate(tmp_path: Path, value: str):
    path = tmp_path / "config.toml"
    path.write_text(f"[monitor]\nrefresh_rate_ms = {value}\n")
    with pytest.raises(ValueError, match="refresh_rate_ms"):
        Config.load(path)


def test_config_rejects_invalid_toml(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text("[monitor\nrefresh_rate_ms = \n")
    with pytest.raises(ValueError, match="Failed to parse"):
        Config.load(path)


def test_validate_refresh_rate_bounds():
    assert validate_refresh_rate(100) == 100
    assert validate_refresh_rate(2000) == 2000
    with pytest.raises(ValueError):
        validate_refresh_rate(99)
    with pytest.raises(ValueError):
        validate_refresh_rate(True)


def test_theme_core_color():
    uniform = ThemeConfig()
    assert uniform.core_color(5) == uniform.cpu_color

    per_core = ThemeConfig(use_uniform_cpu=False, cpu_core_colors=["#aaaaaa", "#bbbbbb"])
    assert per_core.core_color(0) == "#aaaaaa"
    assert per_core.core_color(3) == "#bbbbbb"


def test_config_rejects_non_table_section(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text("monitor = 5\n")
    with pytest.raises(ValueError, match=r"\[monitor\] must be a table"):
        Config.load(path)


def test_config_rejects_undecodable_file(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_bytes(b"\xff\xfe[monitor]\n")
    with pytest.raises(ValueError, match="Failed to read"):
        Config.load(path)


def test_config_rejects_unreadable_path(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.mkdir()
    with pytest.raises(ValueError, match="Failed to read"):
        Config.load(path)

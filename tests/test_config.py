"""Tests for configuration system."""

import pytest
import tomlkit

from truth_monitor.config import (
    AttributionConfig,
    BackendConfig,
    ChangesConfig,
    Config,
    HistoryConfig,
    SamplingConfig,
)


def test_sampling_config_defaults():
    """SamplingConfig has correct defaults."""
    config = SamplingConfig()
    assert config.fast_interval == 1.0
    assert config.slow_interval == 5.0
    assert config.invalid_retries == 2


def test_history_config_defaults():
    """Ten minutes of 1Hz samples."""
    assert HistoryConfig().window_size == 600


def test_attribution_config_defaults():
    """AttributionConfig has correct defaults."""
    config = AttributionConfig()
    assert config.top_n == 8
    assert config.wakeup_threshold == 100.0
    assert config.anomaly_display_count == 3
    assert "kernel_task" in config.denylist
    assert "WindowServer" in config.denylist


def test_backend_config_defaults():
    config = BackendConfig()
    assert config.mode == "command"
    assert config.slow_source == "helper"
    assert config.fast_args == ["json-fast"]


def test_config_paths():
    """Config provides correct paths."""
    config = Config()
    assert "truth-monitor" in str(config.config_dir)
    assert config.config_path.name == "config.toml"
    assert config.log_path.name == "monitor.log"


def test_config_save_creates_file(tmp_path):
    """Config.save() creates config file and parent directories."""
    config_path = tmp_path / "nested" / "config.toml"
    Config().save(config_path)
    assert config_path.exists()


def test_config_save_preserves_values(tmp_path):
    """Config.save() writes correct TOML values."""
    config_path = tmp_path / "config.toml"
    config = Config()
    config.sampling.fast_interval = 0.5
    config.attribution.denylist = ["launchd"]
    config.save(config_path)

    data = tomlkit.parse(config_path.read_text())
    assert data["sampling"]["fast_interval"] == 0.5
    assert list(data["attribution"]["denylist"]) == ["launchd"]
    assert data["backend"]["mode"] == "command"


def test_config_round_trip(tmp_path):
    """Saved values load back unchanged."""
    config_path = tmp_path / "config.toml"
    config = Config()
    config.history.window_size = 300
    config.backend.mode = "stream"
    config.backend.helper_path = "/usr/local/bin/kim_temp"
    config.changes.threshold_pct = 15.0
    config.save(config_path)

    loaded = Config.load(config_path)

    assert loaded == config


def test_config_load_partial_file(tmp_path):
    """Missing sections and keys fall back to defaults."""
    config_path = tmp_path / "config.toml"
    config_path.write_text("[sampling]\nslow_interval = 10.0\n")

    loaded = Config.load(config_path)

    assert loaded.sampling.slow_interval == 10.0
    assert loaded.sampling.fast_interval == 1.0
    assert loaded.history.window_size == 600


def test_config_load_missing_file_returns_defaults(tmp_path):
    """Config.load() returns defaults when file doesn't exist."""
    assert Config.load(tmp_path / "nonexistent.toml") == Config()


def test_config_load_rejects_unparseable_file(tmp_path):
    config_path = tmp_path / "config.toml"
    config_path.write_text("[sampling\nfast_interval = ")

    with pytest.raises(ValueError, match="Failed to parse"):
        Config.load(config_path)


@pytest.mark.parametrize(
    "toml_text, message",
    [
        ("[sampling]\nfast_interval = 0\n", "fast_interval must be > 0"),
        ("[sampling]\nslow_timeout = -1.0\n", "slow_timeout must be > 0"),
        ("[sampling]\ninvalid_retries = -1\n", "invalid_retries must be >= 0"),
        ("[history]\nwindow_size = 0\n", "window_size must be >= 1"),
        ("[attribution]\ntop_n = 0\n", "top_n must be >= 1"),
        ("[attribution]\nwakeup_threshold = -5.0\n", "wakeup_threshold must be >= 0"),
        ('[backend]\nmode = "socket"\n', "Invalid backend mode"),
        ('[backend]\nslow_source = "top"\n', "Invalid slow_source"),
        ("[changes]\nalpha = 0.0\n", "alpha must be in"),
    ],
)
def test_config_load_rejects_invalid_values(tmp_path, toml_text, message):
    """Out-of-range values fail loudly instead of running a broken monitor."""
    config_path = tmp_path / "config.toml"
    config_path.write_text(toml_text)

    with pytest.raises(ValueError, match=message):
        Config.load(config_path)


def test_to_toml_includes_every_section():
    text = Config().to_toml()
    for section in ("sampling", "history", "attribution", "battery", "backend", "changes", "system"):
        assert f"[{section}]" in text


def test_changes_config_defaults():
    config = ChangesConfig()
    assert config.threshold_pct == 10.0
    assert config.alpha == 0.2

"""Tests for CLI commands."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from tests.conftest import make_rail, make_slow
from truth_monitor.attribution import attribute
from truth_monitor.cli import main
from truth_monitor.config import Config
from truth_monitor.errors import BackendUnreachable
from truth_monitor.history import PowerHistory
from truth_monitor.monitor import ChangeEmitter
from truth_monitor.power import BatteryProfile
from truth_monitor.snapshot import Snapshot
from truth_monitor.state import build_state


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def home(tmp_path: Path):
    """Point config and log paths at a temporary home directory."""
    with patch("truth_monitor.config.Path.home", return_value=tmp_path):
        yield tmp_path


@pytest.fixture
def no_file_logging():
    with patch("truth_monitor.logging.configure") as mock_configure:
        yield mock_configure


def _state():
    history = PowerHistory()
    history.push(10000.0)
    slow = make_slow()
    return build_state(
        Snapshot(rail=make_rail(total=10000.0), slow=slow),
        history,
        BatteryProfile.default(),
        attribute(slow.processes),
        baseline_mw=10000.0,
    )


class TestSnapshotCommand:
    """Tests for the snapshot command."""

    def test_prints_json(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        with patch("truth_monitor.monitor.take_snapshot", return_value=_state()) as mock_take:
            result = runner.invoke(main, ["snapshot"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["power"]["total_mw"] == 10000.0
        assert data["tiers"]["memory"] == "normal"
        mock_take.assert_awaited_once()
        no_file_logging.assert_called_once()
        assert no_file_logging.call_args.kwargs["source"] == "snapshot"

    def test_pretty(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        with patch("truth_monitor.monitor.take_snapshot", return_value=_state()):
            result = runner.invoke(main, ["snapshot", "--pretty"])

        assert result.exit_code == 0
        assert result.output.startswith("{\n")

    def test_overrides_applied(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        with patch("truth_monitor.monitor.take_snapshot", return_value=_state()) as mock_take:
            result = runner.invoke(
                main,
                ["snapshot", "--window", "120", "--wakeup-threshold", "250", "--backend", "stream"],
            )

        assert result.exit_code == 0
        cfg = mock_take.call_args.args[0]
        assert cfg.history.window_size == 120
        assert cfg.attribution.wakeup_threshold == 250.0
        assert cfg.backend.mode == "stream"

    def test_backend_unreachable_exits_1(
        self, runner: CliRunner, home: Path, no_file_logging
    ) -> None:
        with patch(
            "truth_monitor.monitor.take_snapshot",
            side_effect=BackendUnreachable("kim_temp not found"),
        ):
            result = runner.invoke(main, ["snapshot"])

        assert result.exit_code == 1

    def test_invalid_config_file(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        config_path = Config().config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[history]\nwindow_size = 0\n")

        result = runner.invoke(main, ["snapshot"])

        assert result.exit_code == 1
        assert "window_size must be >= 1" in result.output

    def test_rejects_non_positive_interval(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(main, ["snapshot", "--fast-interval", "0"])
        assert result.exit_code == 2


class TestStreamingCommands:
    """Tests for stream, monitor and watch-changes."""

    def test_stream(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        with patch("truth_monitor.monitor.run_monitor") as mock_run:
            result = runner.invoke(main, ["stream", "-n", "5", "--powermetrics"])

        assert result.exit_code == 0, result.output
        cfg, emitters = mock_run.call_args.args
        assert cfg.backend.slow_source == "powermetrics"
        assert len(emitters) == 1
        assert mock_run.call_args.kwargs["max_ticks"] == 5

    def test_monitor(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        with patch("truth_monitor.monitor.run_monitor") as mock_run:
            result = runner.invoke(main, ["monitor", "--slow-interval", "10"])

        assert result.exit_code == 0, result.output
        cfg = mock_run.call_args.args[0]
        assert cfg.sampling.slow_interval == 10.0
        assert mock_run.call_args.kwargs["max_ticks"] is None
        assert no_file_logging.call_args.kwargs["source"] == "monitor"

    def test_monitor_backend_unreachable(
        self, runner: CliRunner, home: Path, no_file_logging
    ) -> None:
        with patch("truth_monitor.monitor.run_monitor", side_effect=BackendUnreachable("gone")):
            result = runner.invoke(main, ["monitor"])

        assert result.exit_code == 1

    def test_watch_changes(self, runner: CliRunner, home: Path, no_file_logging) -> None:
        with patch("truth_monitor.monitor.run_monitor") as mock_run:
            result = runner.invoke(main, ["watch-changes", "--threshold", "25"])

        assert result.exit_code == 0, result.output
        cfg, emitters = mock_run.call_args.args
        assert cfg.changes.threshold_pct == 25.0
        assert isinstance(emitters[0], ChangeEmitter)
        assert emitters[0].detector.threshold_pct == 25.0


class TestConfigCommands:
    """Tests for config subcommands."""

    def test_show(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 0
        assert "Exists: False" in result.output
        assert "monitor.log" in result.output
        assert "[sampling]" in result.output

    def test_reset_writes_defaults(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(main, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        config_path = home / ".config" / "truth-monitor" / "config.toml"
        assert config_path.exists()
        assert Config.load(config_path) == Config()

    def test_reset_requires_confirmation(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(main, ["config", "reset"], input="n\n")

        assert result.exit_code == 1
        assert not (home / ".config").exists()

    def test_edit_creates_default_file(self, runner: CliRunner, home: Path) -> None:
        with (
            patch.dict("os.environ", {"EDITOR": "true"}),
            patch("subprocess.run") as mock_run,
        ):
            result = runner.invoke(main, ["config", "edit"])

        assert result.exit_code == 0
        assert (home / ".config" / "truth-monitor" / "config.toml").exists()
        assert mock_run.call_args.args[0][0] == "true"

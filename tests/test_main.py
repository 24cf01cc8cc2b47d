"""Tests for the command line entry point and its exit codes."""

import json

import pytest

import main
from home_monitor import HomeMonitor

from conftest import FakeShutdowner


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    # keep pytest's own log capture in place
    monkeypatch.setattr(main, "setup_logging", lambda level, log_file=None: None)


@pytest.fixture
def config_path(tmp_path, config_data):
    path = tmp_path / "home-monitor.json"
    path.write_text(json.dumps(config_data))
    return str(path)


@pytest.fixture
def fake_controls(monkeypatch, waker, shutdowner):
    """Make main build its HomeMonitor with recording controls."""
    monkeypatch.setattr(
        main, "HomeMonitor",
        lambda config: HomeMonitor(config, waker=waker, shutdowner=shutdowner))
    return waker, shutdowner


def test_wakeup(config_path, fake_controls, capsys):
    waker, _ = fake_controls
    assert main.main(["-c", config_path, "wakeup", "srv1"]) == 0
    assert waker.calls == ["srv1"]
    assert "srv1: wakeup sent" in capsys.readouterr().out


def test_shutdown(config_path, fake_controls):
    _, shutdowner = fake_controls
    assert main.main(["-c", config_path, "-q", "shutdown", "srv1", "srv1"]) == 0
    assert shutdowner.calls == ["srv1"]


def test_failed_shutdown_is_unavailable(config_path, monkeypatch, waker, capsys):
    monkeypatch.setattr(
        main, "HomeMonitor",
        lambda config: HomeMonitor(config, waker=waker,
                                   shutdowner=FakeShutdowner(failures=100)))
    assert main.main(["-c", config_path, "shutdown", "srv1"]) == 69
    assert "[shutdown_failed]" in capsys.readouterr().err


def test_every_target_is_reported(config_path, fake_controls, capsys):
    waker, _ = fake_controls
    assert main.main(["-c", config_path, "wakeup", "ghost", "mach1", "srv1"]) == 69
    err = capsys.readouterr().err
    assert "ghost: wakeup failed [unknown_device]" in err
    assert "mach1: wakeup failed [not_controllable]" in err
    assert waker.calls == ["srv1"]


def test_missing_config(tmp_path, capsys):
    assert main.main(["-c", str(tmp_path / "missing.json"), "wakeup", "srv1"]) == 78
    assert "cannot read" in capsys.readouterr().err


def test_invalid_graph(tmp_path, config_data):
    config_data["dependencies"]["mach1"] = ["srv1"]
    path = tmp_path / "home-monitor.json"
    path.write_text(json.dumps(config_data))
    assert main.main(["-c", str(path), "wakeup", "srv1"]) == 78


@pytest.mark.parametrize("argv", [
    ["wakeup"],
    ["shutdown"],
    ["run", "srv1"],
    ["reboot", "srv1"],
])
def test_usage_errors(config_path, argv):
    with pytest.raises(SystemExit) as exc:
        main.main(["-c", config_path] + argv)
    assert exc.value.code == 64


def test_verbose_and_quiet_are_exclusive(config_path):
    with pytest.raises(SystemExit) as exc:
        main.main(["-c", config_path, "-v", "-q"])
    assert exc.value.code == 64


def test_parser_defaults():
    args = main.build_parser().parse_args([])
    assert args.command == "run"
    assert args.ids == []
    assert args.config == "/etc/home-monitor/home-monitor.json"

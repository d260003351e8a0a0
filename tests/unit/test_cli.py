"""Tests for the python -m entitlement_engine entry point."""

import os
from unittest.mock import patch

import pytest

from entitlement_engine import __main__ as cli


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Restore the environment main() writes to, including unset variables."""
    for name in ("HOST", "PORT", "LOG_LEVEL", "LOG_FORMAT", "CONFIG_PATH", "RELOAD"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def mock_run():
    with patch("entitlement_engine.__main__.uvicorn.run") as mock_run:
        yield mock_run


class TestParser:

    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.host == "127.0.0.1"
        assert args.port == 8080
        assert args.log_level == "INFO"
        assert args.log_format == "json"
        assert args.config is None
        assert args.reload is False

    def test_environment_defaults(self, monkeypatch):
        monkeypatch.setenv("PORT", "9090")
        monkeypatch.setenv("LOG_FORMAT", "console")
        args = cli.build_parser().parse_args([])
        assert args.port == 9090
        assert args.log_format == "console"

    def test_log_level_case_insensitive(self):
        assert cli.build_parser().parse_args(["--log-level", "debug"]).log_level == "DEBUG"

    def test_invalid_log_format(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--log-format", "xml"])


class TestMain:

    def test_runs_uvicorn(self, mock_run):
        cli.main(["--port", "9000", "--log-format", "console"])

        args, kwargs = mock_run.call_args
        assert args[0] == "entitlement_engine.main:app"
        assert kwargs["port"] == 9000
        assert kwargs["access_log"] is False

    def test_exports_settings_to_environment(self, mock_run, tmp_path):
        config_path = str(tmp_path / "entitlements.yaml")
        cli.main(["--config", config_path, "--log-level", "WARNING", "--log-format", "console"])

        assert os.environ["CONFIG_PATH"] == config_path
        assert os.environ["LOG_LEVEL"] == "WARNING"
        assert os.environ["LOG_FORMAT"] == "console"

    def test_launch_failure_exits_nonzero(self, mock_run):
        mock_run.side_effect = RuntimeError("address in use")
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--log-format", "console"])
        assert exc_info.value.code == 1

    def test_keyboard_interrupt_is_clean(self, mock_run):
        mock_run.side_effect = KeyboardInterrupt
        cli.main(["--log-format", "console"])

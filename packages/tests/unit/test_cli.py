"""Tests for panelsync._cli — command-line entry point.

Test Techniques Used:
    - Specification-based Testing: CLI flag parsing and defaults
    - State-based Testing: Verifying settings overrides reach the app
    - Error Condition Testing: Invalid flag values, config errors
    - Behavioural Testing: Exit codes and output text
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from panelsync._app import App
from panelsync._cli import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_RUNTIME_ERROR,
    build_cli,
    list_devices,
)
from panelsync._devices import PCPANEL_MINI, PCPANEL_PRO, DeviceType
from panelsync._settings import Settings
from panelsync.testing import FakeHidBackend

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app() -> App:
    """Minimal App instance for CLI tests."""
    return App(name="testapp", version="1.0.0")


@pytest.fixture
def runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def _isolated_cwd(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """Keep a developer's .env file out of the settings under test."""
    monkeypatch.chdir(tmp_path)


def _capture(target: dict[str, Any]) -> Any:
    async def capture(**kwargs: Any) -> None:
        target.update(kwargs)

    return capture


# ---------------------------------------------------------------------------
# Version and help
# ---------------------------------------------------------------------------


class TestVersionAndHelp:
    """--version and --help.

    Technique: Specification-based Testing.
    """

    def test_version_prints_name_and_version(self, app: App, runner: CliRunner) -> None:
        """--version prints '{name} v{version}' and exits 0."""
        result = runner.invoke(build_cli(app), ["--version"])

        assert result.exit_code == EXIT_OK
        assert "testapp v1.0.0" in result.output

    def test_help_lists_options(self, app: App, runner: CliRunner) -> None:
        """--help documents every option."""
        result = runner.invoke(build_cli(app), ["--help"])

        assert result.exit_code == EXIT_OK
        for option in (
            "--version",
            "--log-level",
            "--log-format",
            "--env-file",
            "--power-monitor",
            "--list-devices",
        ):
            assert option in result.output


# ---------------------------------------------------------------------------
# Settings overrides
# ---------------------------------------------------------------------------


class TestSettingsOverrides:
    """Flags override the loaded settings.

    Technique: State-based Testing.
    """

    def test_env_file_forwarded(self, app: App, runner: CliRunner) -> None:
        """--env-file passes the custom path to Settings."""
        cli = build_cli(app)
        mock_settings_cls = MagicMock(wraps=app._settings_class)

        with patch.object(app, "_run_async", new_callable=AsyncMock) as mock_run:
            app._settings_class = mock_settings_cls
            result = runner.invoke(cli, ["--env-file", "custom.env"])

        assert result.exit_code == EXIT_OK
        mock_settings_cls.assert_called_once_with(_env_file="custom.env")
        mock_run.assert_awaited_once()

    def test_default_env_file_is_dot_env(self, app: App, runner: CliRunner) -> None:
        """Default --env-file is '.env'."""
        cli = build_cli(app)
        mock_settings_cls = MagicMock(wraps=app._settings_class)

        with patch.object(app, "_run_async", new_callable=AsyncMock):
            app._settings_class = mock_settings_cls
            result = runner.invoke(cli, [])

        assert result.exit_code == EXIT_OK
        mock_settings_cls.assert_called_once_with(_env_file=".env")

    def test_overrides_applied(self, app: App, runner: CliRunner) -> None:
        """Log level, log format and power monitor are overridden, case-insensitively."""
        captured: dict[str, Any] = {}
        cli = build_cli(app)

        with patch.object(app, "_run_async", side_effect=_capture(captured)):
            result = runner.invoke(
                cli,
                ["--log-level", "debug", "--log-format", "JSON", "--power-monitor", "None"],
            )

        assert result.exit_code == EXIT_OK
        settings: Settings = captured["settings"]
        assert settings.logging.level == "DEBUG"
        assert settings.logging.format == "json"
        assert settings.power.monitor == "none"

    def test_env_values_kept_without_flags(
        self,
        app: App,
        runner: CliRunner,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Environment configuration reaches the app unchanged."""
        monkeypatch.setenv("PANELSYNC_BROKER__HOST", "broker.test")
        captured: dict[str, Any] = {}

        with patch.object(app, "_run_async", side_effect=_capture(captured)):
            result = runner.invoke(build_cli(app), [])

        assert result.exit_code == EXIT_OK
        assert captured["settings"].broker.host == "broker.test"

    def test_hid_port_forwarded(self, app: App, runner: CliRunner) -> None:
        """An injected HID port is used for the run."""
        hid = FakeHidBackend()
        captured: dict[str, Any] = {}

        with patch.object(app, "_run_async", side_effect=_capture(captured)):
            runner.invoke(build_cli(app, hid=hid), [])

        assert captured["hid"] is hid

    @pytest.mark.parametrize(
        ("option", "value"),
        [
            ("--log-level", "VERBOSE"),
            ("--log-format", "yaml"),
            ("--power-monitor", "windows"),
        ],
    )
    def test_invalid_choice_rejected(
        self,
        app: App,
        runner: CliRunner,
        option: str,
        value: str,
    ) -> None:
        """Values outside the allowed set are usage errors."""
        with patch.object(app, "_run_async", new_callable=AsyncMock) as mock_run:
            result = runner.invoke(build_cli(app), [option, value])

        assert result.exit_code != EXIT_OK
        mock_run.assert_not_awaited()


# ---------------------------------------------------------------------------
# --list-devices
# ---------------------------------------------------------------------------


class TestListDevices:
    """Panel enumeration without starting the service.

    Technique: Behavioural Testing.
    """

    def test_list_devices_function(self) -> None:
        """Only known panels are listed, one tab-separated line each."""
        hid = FakeHidBackend()
        hid.attach("PP1", PCPANEL_PRO)
        hid.attach("MINI1", PCPANEL_MINI)
        hid.attach("KB", DeviceType("Keyboard", 1, 2, 0))
        hid.attach(None, PCPANEL_PRO, path=b"/dev/hidraw9")

        assert list_devices(hid) == [
            "PCPanel Pro\tPP1\t/dev/hidraw-PP1",
            "PCPanel Mini\tMINI1\t/dev/hidraw-MINI1",
            "PCPanel Pro\t-\t/dev/hidraw9",
        ]

    def test_flag_prints_and_exits(self, app: App, runner: CliRunner) -> None:
        """--list-devices prints the panels and never starts the app."""
        hid = FakeHidBackend()
        hid.attach("PP1")

        with patch.object(app, "_run_async", new_callable=AsyncMock) as mock_run:
            result = runner.invoke(build_cli(app, hid=hid), ["--list-devices"])

        assert result.exit_code == EXIT_OK
        assert "PCPanel Pro\tPP1" in result.output
        mock_run.assert_not_awaited()

    def test_no_panels(self, app: App, runner: CliRunner) -> None:
        """An empty enumeration still exits 0."""
        result = runner.invoke(build_cli(app, hid=FakeHidBackend()), ["--list-devices"])
        assert result.exit_code == EXIT_OK
        assert "PCPanel" not in result.output

    def test_enumeration_failure(self, app: App, runner: CliRunner) -> None:
        """An enumeration error exits with the runtime error code."""
        hid = FakeHidBackend()
        hid.enumerate_failure = OSError("no hidraw access")

        result = runner.invoke(build_cli(app, hid=hid), ["--list-devices"])

        assert result.exit_code == EXIT_RUNTIME_ERROR


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class TestExitCodes:
    """Exit code tests.

    Technique: Behavioural Testing — verifying correct exit codes
    for various scenarios.
    """

    def test_clean_run_exits_zero(self, app: App, runner: CliRunner) -> None:
        """Successful run returns exit code 0."""
        with patch.object(app, "_run_async", new_callable=AsyncMock):
            result = runner.invoke(build_cli(app), [])

        assert result.exit_code == EXIT_OK

    def test_config_error_exits_one(
        self,
        app: App,
        runner: CliRunner,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Configuration validation error returns exit code 1."""
        monkeypatch.setenv("PANELSYNC_BROKER__PORT", "not-a-port")

        with patch.object(app, "_run_async", new_callable=AsyncMock) as mock_run:
            result = runner.invoke(build_cli(app), [])

        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "Configuration error" in result.output
        mock_run.assert_not_awaited()

    def test_exit_code_constants_have_expected_values(self) -> None:
        """Exit code constants match documented values."""
        assert EXIT_OK == 0
        assert EXIT_CONFIG_ERROR == 1
        assert EXIT_RUNTIME_ERROR == 3

    def test_runtime_error_exits_three(self, app: App, runner: CliRunner) -> None:
        """Unhandled exception in _run_async returns exit code 3."""

        async def boom(**kwargs: object) -> None:  # noqa: ARG001
            raise RuntimeError("kaboom")

        with patch.object(app, "_run_async", side_effect=boom):
            result = runner.invoke(build_cli(app), [])

        assert result.exit_code == EXIT_RUNTIME_ERROR

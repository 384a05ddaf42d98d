"""Command-line entry point (Typer-based).

:func:`build_cli` constructs a Typer app that parses the options
(``--version``, ``--log-level``, ``--log-format``, ``--env-file``,
``--power-monitor``, ``--list-devices``) and hands off to the
application's async lifecycle.  :func:`main` is the ``panelsync``
console script.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Annotated, get_args

import typer
from pydantic import ValidationError

from panelsync import __version__
from panelsync._app import App
from panelsync._devices import match_device_type
from panelsync._hid import HidapiBackend, HidPort
from panelsync._settings import LoggingSettings, PowerSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from the settings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)
_VALID_POWER_MONITORS: tuple[str, ...] = get_args(
    PowerSettings.model_fields["monitor"].annotation,
)


def _check_choice(value: str | None, valid: tuple[str, ...], option: str) -> None:
    if value is not None and value not in valid:
        raise typer.BadParameter(
            f"Invalid value '{value}'. Choose from: {', '.join(valid)}",
            param_hint=f"'{option}'",
        )


def list_devices(hid: HidPort) -> list[str]:
    """One line per attached, known panel: ``type<TAB>serial<TAB>path``."""
    lines: list[str] = []
    for info in hid.enumerate():
        device_type = match_device_type(info)
        if device_type is None:
            continue
        path = info.path.decode("utf-8", errors="replace")
        lines.append(f"{device_type.name}\t{info.serial_number or '-'}\t{path}")
    return lines


def build_cli(app: App, *, hid: HidPort | None = None) -> typer.Typer:
    """Construct a Typer CLI around *app*.

    Args:
        app: The application to run.
        hid: Hardware port used by ``--list-devices`` and the run;
            :class:`HidapiBackend` when ``None``.
    """
    cli = typer.Typer(
        help=f"{app.name} v{app.version} — keep USB control panels in sync",
    )

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        power_monitor: Annotated[
            str | None,
            typer.Option("--power-monitor", help="Override the power event source."),
        ] = None,
        list_only: Annotated[
            bool,
            typer.Option("--list-devices", help="List attached panels and exit."),
        ] = False,
    ) -> None:
        if version_flag:
            typer.echo(f"{app.name} v{app.version}")
            raise typer.Exit()

        if log_level is not None:
            log_level = log_level.upper()
        if log_format is not None:
            log_format = log_format.lower()
        if power_monitor is not None:
            power_monitor = power_monitor.lower()
        _check_choice(log_level, _VALID_LOG_LEVELS, "--log-level")
        _check_choice(log_format, _VALID_LOG_FORMATS, "--log-format")
        _check_choice(power_monitor, _VALID_POWER_MONITORS, "--power-monitor")

        port = hid if hid is not None else HidapiBackend()

        if list_only:
            try:
                lines = list_devices(port)
            except Exception as exc:
                typer.echo(f"Unable to enumerate HID devices: {exc}", err=True)
                raise typer.Exit(EXIT_RUNTIME_ERROR) from exc
            for line in lines:
                typer.echo(line)
            if not lines:
                typer.echo("No panels found", err=True)
            raise typer.Exit(EXIT_OK)

        try:
            settings: Settings = app._settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            typer.echo(f"Configuration error: {exc}", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(update={"level": log_level})
        if log_format is not None:
            settings.logging = settings.logging.model_copy(update={"format": log_format})
        if power_monitor is not None:
            settings.power = settings.power.model_copy(update={"monitor": power_monitor})

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(app._run_async(settings=settings, hid=port))
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            raise typer.Exit(EXIT_RUNTIME_ERROR) from exc

    return cli


def main() -> None:
    """``panelsync`` console script."""
    cli = build_cli(App(version=__version__))
    cli(standalone_mode=True)


if __name__ == "__main__":
    main()

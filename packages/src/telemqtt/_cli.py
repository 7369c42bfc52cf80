"""Command-line scaffolding for the telemqtt entry points (Typer-based).

:func:`build_cli` wraps a receiver or sender application in a
single-command Typer app.  Options fall into three groups:

- process: ``--version``, ``--dry-run``, ``--env-file``
- logging: ``--log-level``, ``--log-format``
- broker: ``--host``, ``--port``, ``--topic-prefix``

Command-line values win over environment variables and the ``.env``
file.

Exit codes:

- ``0`` — all tasks finished (including after SIGINT/SIGTERM).
- ``1`` — configuration could not be loaded or validated.
- ``3`` — an unexpected fault escaped a task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import Callable
from typing import TYPE_CHECKING, Annotated, Any, get_args

import typer
from pydantic import ValidationError

from telemqtt._settings import LoggingSettings

if TYPE_CHECKING:
    from telemqtt._app import _BaseApp
    from telemqtt._settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

LOG_LEVELS: tuple[str, ...] = get_args(LoggingSettings.model_fields["level"].annotation)
LOG_FORMATS: tuple[str, ...] = get_args(LoggingSettings.model_fields["format"].annotation)


def _choice(
    allowed: tuple[str, ...],
    normalise: Callable[[str], str],
) -> Callable[[str | None], str | None]:
    """Build an option callback accepting *allowed* values in any case."""

    def callback(value: str | None) -> str | None:
        if value is None:
            return None
        normalised = normalise(value)
        if normalised not in allowed:
            msg = f"'{value}' is not one of: {', '.join(allowed)}"
            raise typer.BadParameter(msg)
        return normalised

    return callback


def _with_overrides(settings: Settings, group: str, **values: Any) -> None:
    """Replace settings group *group* with a copy carrying the non-None *values*."""
    update = {key: value for key, value in values.items() if value is not None}
    if update:
        current = getattr(settings, group)
        setattr(settings, group, current.model_copy(update=update))


def load_settings(
    app: _BaseApp,
    env_file: str,
    *,
    log_level: str | None = None,
    log_format: str | None = None,
    host: str | None = None,
    port: int | None = None,
    topic_prefix: str | None = None,
) -> Settings:
    """Load *app*'s settings from the environment, then apply CLI overrides.

    Raises:
        ValidationError: If the environment or ``.env`` file holds
            invalid values.
    """
    settings: Settings = app._settings_class(_env_file=env_file)  # type: ignore[call-arg]
    _with_overrides(settings, "logging", level=log_level, format=log_format)
    _with_overrides(settings, "mqtt", host=host, port=port, topic_prefix=topic_prefix)
    return settings


def build_cli(app: _BaseApp) -> typer.Typer:
    """Construct a Typer CLI around a receiver or sender application.

    Args:
        app: The application to wrap.

    Returns:
        A configured :class:`typer.Typer` ready to invoke.
    """
    banner = f"{app.name} v{app.version}"
    cli = typer.Typer(
        help=f"{banner}: {app._description}" if app._description else banner,
        add_completion=False,
    )

    @cli.callback(invoke_without_command=True)
    def main(
        show_version: Annotated[
            bool,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = False,
        dry_run: Annotated[
            bool,
            typer.Option(
                "--dry-run",
                help="Log publishes and grant subscriptions without a broker.",
            ),
        ] = False,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        log_level: Annotated[
            str | None,
            typer.Option(
                "--log-level",
                callback=_choice(LOG_LEVELS, str.upper),
                help=f"Override log level ({', '.join(LOG_LEVELS)}).",
            ),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option(
                "--log-format",
                callback=_choice(LOG_FORMATS, str.lower),
                help=f"Override log format ({', '.join(LOG_FORMATS)}).",
            ),
        ] = None,
        host: Annotated[
            str | None,
            typer.Option("--host", help="Override the broker host."),
        ] = None,
        port: Annotated[
            int | None,
            typer.Option("--port", min=1, max=65535, help="Override the broker port."),
        ] = None,
        topic_prefix: Annotated[
            str | None,
            typer.Option("--topic-prefix", help="Override the topic namespace."),
        ] = None,
    ) -> None:
        if show_version:
            typer.echo(banner)
            raise typer.Exit()

        app._dry_run = app._dry_run or dry_run
        try:
            settings = load_settings(
                app,
                env_file,
                log_level=log_level,
                log_format=log_format,
                host=host,
                port=port,
                topic_prefix=topic_prefix,
            )
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(app._run_async(settings=settings))
        except Exception as exc:
            logger.error("Client finished with error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli

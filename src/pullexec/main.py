"""CLI entrypoint for pullexec."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from pullexec import __version__
from pullexec.config import ENV_PREFIX, setting_specs
from pullexec.controllers import PullCliController, PullCommand
from pullexec.sources import settings_classes

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PullCliController()
LOG_LEVELS = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _adapter_options(command: Callable[..., Any]) -> Callable[..., Any]:
    """Attach one ``--<flag>`` option per adapter setting."""

    seen: set[str] = set()
    for settings_class in reversed(settings_classes()):
        for spec in reversed(list(setting_specs(settings_class))):
            if spec.flag in seen:
                continue
            seen.add(spec.flag)
            help_text = f"{spec.help} Env: {spec.env_var(ENV_PREFIX)}."
            if spec.boolean:
                option = click.option(f"--{spec.flag}", spec.option_name, is_flag=True, default=None, help=help_text)
            else:
                option = click.option(f"--{spec.flag}", spec.option_name, default=None, help=help_text)
            command = option(command)
    return command


def _list_drivers(ctx: click.Context, _param: click.Parameter, value: bool) -> None:
    if not value or ctx.resilient_parsing:
        return
    for name in CONTROLLER.list_drivers():
        click.echo(name)
    ctx.exit(0)


@click.command(context_settings={"allow_interspersed_args": False})
@click.version_option(version=__version__, prog_name="pullexec")
@click.option(
    "--list-drivers",
    is_flag=True,
    expose_value=False,
    is_eager=True,
    callback=_list_drivers,
    help="Print the available drivers and exit.",
)
@click.option("--driver", default=None, help="Work source driver. Env: PULLEXEC_DRIVER.")
@click.option(
    "--daemon/--once",
    default=None,
    help="Loop forever or process a single item (default). Env: PULLEXEC_DAEMON.",
)
@click.option(
    "--daemon-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait between daemon iterations. Env: PULLEXEC_DAEMON_INTERVAL.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the daemon after this many iterations. Env: PULLEXEC_MAX_ITERATIONS.",
)
@click.option(
    "--hostenv",
    is_flag=True,
    default=None,
    help="Pass the host environment to the program. Env: PULLEXEC_HOSTENV.",
)
@click.option(
    "--pass-work-as-arg",
    is_flag=True,
    default=None,
    help="Append the payload as the last program argument. Env: PULLEXEC_PASS_WORK_AS_ARG.",
)
@click.option(
    "--pass-work-as-stdin",
    is_flag=True,
    default=None,
    help="Write the payload to the program's stdin. Env: PULLEXEC_PASS_WORK_AS_STDIN.",
)
@click.option(
    "--payload-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the payload to this file instead of the environment. Env: PULLEXEC_PAYLOAD_FILE.",
)
@click.option(
    "--keep-payload-file",
    is_flag=True,
    default=None,
    help="Keep the payload file after the program exits. Env: PULLEXEC_KEEP_PAYLOAD_FILE.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Terminate the program after this many seconds (exit 124). Env: PULLEXEC_TIMEOUT_SECONDS.",
)
@click.option(
    "--strict-templates",
    is_flag=True,
    default=None,
    help="Fail follow-up requests that reference unknown keys. Env: PULLEXEC_STRICT_TEMPLATES.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Log verbosity. Env: LOG_LEVEL.",
)
@_adapter_options
@click.argument("program", nargs=-1, type=click.UNPROCESSED)
def pullexec(program: tuple[str, ...], log_level: str, **flags: Any) -> None:
    """Pull one unit of work from a backend and run PROGRAM with it.

    The payload reaches the program as `PULLEXEC_PAYLOAD`, as the last argument,
    on stdin, or in a file. Exit status 0 acknowledges the item; anything else
    reports a failure to the backend.

    Every option can also be set with its `PULLEXEC_*` environment variable,
    which takes precedence over the flag.
    """

    _configure_logging(log_level)
    result = CONTROLLER.run(PullCommand(program=tuple(program), flags=flags))
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger().setLevel(level.upper())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line, err=True)


if __name__ == "__main__":  # pragma: no cover
    pullexec()

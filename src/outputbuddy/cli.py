"""CLI entry point for outputbuddy."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass

import typer
from pydantic import ValidationError

from outputbuddy import __version__
from outputbuddy.config import BuddyConfig
from outputbuddy.errors import (
    EXIT_USAGE,
    MalformedMappingError,
    MappingError,
    OutputBuddyError,
)
from outputbuddy.mapping import RedirectionPlan, parse_mapping
from outputbuddy.mapping.parser import SEPARATOR
from outputbuddy.process import ExitOutcome, ProcessSupervisor, signal_name
from outputbuddy.session.wire import EventType, Wire

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="outputbuddy",
    help="Flexible output redirection with color preservation.",
    add_completion=False,
)

EPILOG = """\
Mappings: 1=out.log, 2=err.log, 2+1=all.log (files); 1, 2, 1+2 (also show
on the terminal). Streams can be named stdout/stderr too. Without mappings
both streams go to buddy.log and the terminal.

Examples: ob -- make | ob 2=err.log 1=out.log -- make | ob 2+1=test.log 2+1 -- pytest
"""


@dataclass(frozen=True)
class Invocation:
    """Everything decided before option parsing: the child argv (taken from
    after ``--``) and the version string."""

    command: tuple[str, ...] | None = None
    version: str = __version__


def parse_invocation(argv: list[str]) -> tuple[list[str], Invocation]:
    """Split argv at ``--`` so click never sees the child's arguments."""
    if SEPARATOR not in argv:
        return list(argv), Invocation()
    index = argv.index(SEPARATOR)
    return list(argv[:index]), Invocation(command=tuple(argv[index + 1 :]))


def setup_logging(verbose: bool = False) -> None:
    # Child output shares the terminal, so only warnings show by default.
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _version_callback(ctx: typer.Context, value: bool) -> None:
    if not value:
        return
    invocation: Invocation = ctx.obj or Invocation()
    typer.echo(f"outputbuddy version {invocation.version}")
    raise typer.Exit()


def _fail(error: Exception, code: int = EXIT_USAGE) -> typer.Exit:
    typer.echo(f"outputbuddy: error: {error}", err=True)
    return typer.Exit(code)


@app.command(epilog=EPILOG)
def run(
    ctx: typer.Context,
    mappings: list[str] | None = typer.Argument(
        None,
        metavar="[MAPPING]... -- COMMAND [ARGS]...",
        help="Mapping tokens such as 2+1=test.log, followed by -- and the command.",
        show_default=False,
    ),
    no_pty: bool = typer.Option(
        False, "--no-pty", help="Use plain pipes (the child will not see a terminal)."
    ),
    strip_ansi: bool = typer.Option(
        False,
        "--strip-ansi",
        help="Write plain text to files: no escape codes or progress redraws.",
    ),
    keep_ansi: bool = typer.Option(
        False, "--keep-ansi", help="Write raw bytes to files (the default)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path (JSON)."
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Run COMMAND, sending its stdout/stderr where the mappings say."""
    setup_logging(verbose)
    invocation: Invocation = ctx.obj or Invocation()

    if invocation.command is None:
        raise _fail(MalformedMappingError("no -- separator found"))
    if not invocation.command:
        raise _fail(MalformedMappingError("no command specified after --"))
    if strip_ansi and keep_ansi:
        raise _fail(ValueError("--strip-ansi and --keep-ansi are exclusive"))

    try:
        config = BuddyConfig.load(config_file)
        overrides: dict[str, bool] = {}
        if no_pty:
            overrides["use_pty"] = False
        if strip_ansi or keep_ansi:
            overrides["strip_ansi"] = strip_ansi
        if overrides:
            config = config.model_copy(update=overrides)
    except (ValidationError, json.JSONDecodeError, ValueError, OSError) as e:
        raise _fail(e) from e

    try:
        plan = parse_mapping(mappings or [], default_log=config.default_log)
    except MappingError as e:
        raise _fail(e, e.exit_code) from e

    outcome = asyncio.run(_run_child(plan, list(invocation.command), config))
    raise typer.Exit(outcome.code)


async def _run_child(
    plan: RedirectionPlan, command: list[str], config: BuddyConfig
) -> ExitOutcome:
    """Supervise the child and report status events on stderr."""
    wire = Wire()

    # Subscribe before anything runs: setup can fail before the first await.
    queue = wire.subscribe()

    async def _consume_wire() -> None:
        while True:
            event = await queue.get()
            if event is None:
                break

            d = event.data
            if event.type == EventType.SINK_ERROR:
                typer.echo(
                    f"outputbuddy: {d.get('sink', '?')}: write failed: "
                    f"{d.get('error', '')}",
                    err=True,
                )

            elif event.type == EventType.SIGNAL:
                name = signal_name(d["signal"])
                if d.get("action") == "killed":
                    typer.echo("outputbuddy: child did not stop, killed", err=True)
                else:
                    typer.echo(f"outputbuddy: forwarded {name} to child", err=True)

            elif event.type == EventType.STATE:
                logger.debug("state: %s", d.get("state"))

        wire.unsubscribe(queue)

    consumer_task = asyncio.create_task(_consume_wire())
    supervisor = ProcessSupervisor(config=config, wire=wire)

    try:
        outcome = await supervisor.run(plan, command)
    except OutputBuddyError as e:
        typer.echo(f"outputbuddy: error: {e}", err=True)
        outcome = ExitOutcome.from_error(e)
    finally:
        wire.close()
        await consumer_task

    if outcome.degraded:
        typer.echo(
            f"outputbuddy: {len(outcome.degraded)} sink(s) stopped receiving output:",
            err=True,
        )
        for failure in outcome.degraded:
            typer.echo(f"  {failure.sink}: {failure.error}", err=True)
    if outcome.signal is not None:
        typer.echo(
            f"outputbuddy: child terminated by {signal_name(outcome.signal)}", err=True
        )

    return outcome


def main() -> None:
    args, invocation = parse_invocation(sys.argv[1:])
    app(args=args, obj=invocation, prog_name="outputbuddy")


if __name__ == "__main__":
    main()

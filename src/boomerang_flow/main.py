"""CLI entrypoint for boomerang-flow."""

import logging
from pathlib import Path

import rich_click as click

from boomerang_flow import __version__
from boomerang_flow.config import Settings
from boomerang_flow.logging_setup import setup_logging
from boomerang_flow.orchestrator.controllers import (
    OrchestratorCliController,
    RunCommand,
    StatusCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="boomerang-flow")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log debug records to stderr.")
def boomerang_flow(verbose: bool) -> None:
    """Boomerang task orchestration CLI."""

    settings = Settings.from_env()
    setup_logging(
        log_file=settings.log_file,
        console_level=logging.DEBUG if verbose or settings.verbose else logging.INFO,
    )


@boomerang_flow.command("run")
@click.argument("instruction")
@click.option("--mode", default="orchestrator", show_default=True, help="Mode of the root task.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--tool",
    "tools",
    multiple=True,
    help="Builtin tool handed to the root worker. Can be repeated.",
)
@click.option(
    "--max-turns",
    type=click.IntRange(min=1),
    default=None,
    help="Turn budget of the root worker; defaults depend on the mode.",
)
@click.option("--session-name", default=None, help="Display name of the root task.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop waiting after this many seconds and stop remaining tasks.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Worker run template. Supports {mode}, {max_turns}, {task_id}, and {tools}. "
        "If omitted, BOOMERANG_WORKER_COMMAND is used."
    ),
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def run(  # noqa: PLR0913
    instruction: str,
    mode: str,
    db_path: Path | None,
    tools: tuple[str, ...],
    max_turns: int | None,
    session_name: str | None,
    timeout_seconds: float | None,
    command_template: str | None,
    output_format: str,
) -> None:
    """Start a root task and delegate until the whole hierarchy finishes."""

    result = ORCHESTRATOR_CONTROLLER.run(
        RunCommand(
            db_path=db_path,
            mode=mode,
            instruction=instruction,
            tools=tools,
            max_turns=max_turns,
            session_name=session_name,
            timeout_seconds=timeout_seconds,
            command_template=command_template,
            output_format=output_format,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Orchestration run did not complete successfully.")


@boomerang_flow.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--prune-stale-hours",
    type=click.IntRange(min=1),
    default=None,
    help="Delete progress records not updated within this many hours.",
)
@click.option("--clear", is_flag=True, default=False, help="Delete every progress record.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def status(
    db_path: Path | None,
    prune_stale_hours: int | None,
    clear: bool,
    output_format: str,
) -> None:
    """Show the progress ledger of recent orchestration sessions."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.status(
            StatusCommand(
                db_path=db_path,
                prune_stale_hours=prune_stale_hours,
                clear=clear,
                output_format=output_format,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    boomerang_flow()

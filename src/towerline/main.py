"""CLI entrypoint for towerline."""

import json
import logging
from pathlib import Path

import rich_click as click

from towerline import __version__
from towerline.controllers import (
    ClassifyCommand,
    SimulateCommand,
    SubmitCommand,
    TowerlineCliController,
)
from towerline.core.models import Authority

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TowerlineCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="towerline")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def towerline(log_level: str) -> None:
    """Task delegation and duplicate-suppression engine."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@towerline.command("classify")
@click.argument("title")
@click.option("--description", default="", help="Optional longer description.")
@click.option(
    "--roster",
    "roster_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Roster JSON file. Defaults to TOWERLINE_ROSTER_PATH or the built-in roster.",
)
def classify(title: str, description: str, roster_path: Path | None) -> None:
    """Show which authority and queue a request would be routed to."""

    _emit_lines(
        _run(
            CONTROLLER.classify,
            ClassifyCommand(title=title, description=description, roster_path=roster_path),
        ),
    )


@towerline.command("submit")
@click.argument("command", default="task")
@click.option("--title", default=None, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option("--project", default=None, help="Target project id or name.")
@click.option("--queue", type=int, default=None, help="Explicit target queue.")
@click.option(
    "--priority",
    type=click.Choice(("low", "normal", "high", "critical"), case_sensitive=False),
    default=None,
    help="Request priority.",
)
@click.option(
    "--authority",
    type=click.Choice(("primary", "mirror", "both"), case_sensitive=False),
    default=None,
    help="Override classification with an explicit authority.",
)
@click.option(
    "--to-mirror",
    is_flag=True,
    default=False,
    help="Send the command to the mirror router instead of the primary one.",
)
@click.option(
    "--args",
    "raw_args",
    default=None,
    help="Extra command arguments as a JSON object, for example `{\"target\": \"api\"}`.",
)
@click.option(
    "--roster",
    "roster_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Roster JSON file.",
)
def submit(  # noqa: PLR0913
    command: str,
    title: str | None,
    description: str | None,
    project: str | None,
    queue: int | None,
    priority: str | None,
    authority: str | None,
    to_mirror: bool,
    raw_args: str | None,
    roster_path: Path | None,
) -> None:
    """Run one command through a fresh engine and print the resulting task."""

    args = _parse_args(raw_args)
    for key, value in (
        ("title", title),
        ("description", description),
        ("project", project),
        ("queue", queue),
        ("priority", priority),
        ("authority", authority),
    ):
        if value is not None:
            args[key] = value
    _emit_lines(
        _run(
            CONTROLLER.submit,
            SubmitCommand(
                command=command,
                args=args,
                authority=Authority.MIRROR if to_mirror else Authority.PRIMARY,
                roster_path=roster_path,
            ),
        ),
    )


@towerline.command("simulate")
@click.option(
    "--script",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="File with one chat command (`/task ...`) or JSON envelope per line.",
)
@click.option(
    "--seconds",
    type=click.FloatRange(min=0),
    default=120.0,
    show_default=True,
    help="Virtual seconds to run the simulated queues for.",
)
@click.option(
    "--roster",
    "roster_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Roster JSON file.",
)
def simulate(script: Path, seconds: float, roster_path: Path | None) -> None:
    """Replay a command script against simulated queue managers on virtual time."""

    _emit_lines(
        _run(
            CONTROLLER.simulate,
            SimulateCommand(script=script, seconds=seconds, roster_path=roster_path),
        ),
    )


def _parse_args(raw_args: str | None) -> dict:
    if not raw_args:
        return {}
    try:
        parsed = json.loads(raw_args)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--args") from exc
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")
    return parsed


def _run(action, command) -> list[str]:
    try:
        return action(command)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    towerline()

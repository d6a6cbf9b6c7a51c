"""CLI entrypoint for team-conductor."""

import logging
import os
from pathlib import Path

import rich_click as click

from team_conductor import __version__
from team_conductor.controllers import (
    ExecCommand,
    ServeCommand,
    TaskCreateCommand,
    TaskListCommand,
    TeamCliController,
    TrustShowCommand,
)
from team_conductor.models import TaskPriority, TaskStatus
from team_conductor.runtime.runtimes import BUILTIN_RUNTIMES

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TeamCliController()

_HOME_OPTION = click.option(
    "--home",
    "home_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="State directory (defaults to TEAM_CONDUCTOR_HOME or ~/.team-conductor).",
)


@click.group()
@click.version_option(version=__version__, prog_name="team-conductor")
def team_conductor() -> None:
    """Coordinate a team of AI coding-agent CLIs."""

    logging.basicConfig(
        level=os.getenv("TEAM_CONDUCTOR_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@team_conductor.command("serve")
@_HOME_OPTION
@click.option(
    "--sandbox/--no-sandbox",
    default=None,
    help="Run agents inside containers (overrides TEAM_CONDUCTOR_SANDBOX_ENABLED).",
)
def serve(home_dir: Path | None, sandbox: bool | None) -> None:
    """Run the scheduler, inbox watcher and task executor until interrupted."""

    _emit_lines(CONTROLLER.serve(ServeCommand(home_dir=home_dir, sandbox=sandbox)))


@team_conductor.command("exec")
@click.option(
    "--runtime",
    type=click.Choice([spec.id for spec in BUILTIN_RUNTIMES]),
    default="claude-code",
    show_default=True,
    help="Agent CLI to run.",
)
@click.option("--model", default=None, help="Model passed to the agent CLI.")
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for the agent.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Kill the agent after this many seconds.",
)
@click.option("--session-id", default=None, help="Resume an earlier conversation.")
@click.argument("prompt")
def exec_prompt(  # noqa: PLR0913
    runtime: str,
    model: str | None,
    cwd: Path | None,
    timeout_seconds: float | None,
    session_id: str | None,
    prompt: str,
) -> None:
    """Run one prompt on an agent CLI and print its answer, streaming progress to stderr."""

    result = CONTROLLER.execute(
        ExecCommand(
            runtime=runtime,
            prompt=prompt,
            model=model,
            cwd=cwd,
            timeout_seconds=timeout_seconds,
            session_id=session_id,
        ),
        on_progress=lambda line: click.echo(line, err=True),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Execution failed.")


@team_conductor.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("create")
@_HOME_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option(
    "--priority",
    type=click.Choice([item.value for item in TaskPriority]),
    default=TaskPriority.NORMAL.value,
    show_default=True,
)
@click.option("--assign-to", "assigned_to", default=None, help="Agent id; omitted means auto-assign.")
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
def tasks_create(  # noqa: PLR0913
    home_dir: Path | None,
    title: str,
    description: str,
    priority: str,
    assigned_to: str | None,
    tags: tuple[str, ...],
) -> None:
    """Create a task; the control process dispatches it when it next starts."""

    _emit_lines(
        CONTROLLER.create_task(
            TaskCreateCommand(
                home_dir=home_dir,
                title=title,
                description=description,
                priority=priority,
                assigned_to=assigned_to,
                tags=tags,
            ),
        ),
    )


@tasks.command("list")
@_HOME_OPTION
@click.option("--status", type=click.Choice([item.value for item in TaskStatus]), default=None)
@click.option("--agent", "assigned_to", default=None, help="Only tasks assigned to this agent.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def tasks_list(home_dir: Path | None, status: str | None, assigned_to: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(home_dir=home_dir, status=status, assigned_to=assigned_to, limit=limit),
        ),
    )


@team_conductor.group()
def schedules() -> None:
    """Schedule commands."""


@schedules.command("list")
@_HOME_OPTION
def schedules_list(home_dir: Path | None) -> None:
    """List recurring schedules, seeding the built-in ones if missing."""

    _emit_lines(CONTROLLER.list_schedules(home_dir))


@team_conductor.group()
def trust() -> None:
    """Trust relationship commands."""


@trust.command("show")
@_HOME_OPTION
@click.option("--agent", "agent_id", required=True, help="Agent whose outgoing trust to show.")
def trust_show(home_dir: Path | None, agent_id: str) -> None:
    """Show an agent's trust scores towards the agents it delegated to."""

    _emit_lines(CONTROLLER.show_trust(TrustShowCommand(home_dir=home_dir, agent_id=agent_id)))


@team_conductor.group()
def sandbox() -> None:
    """Container sandbox commands."""


@sandbox.command("reclaim")
@_HOME_OPTION
def sandbox_reclaim(home_dir: Path | None) -> None:
    """Adopt running agent containers and remove stopped ones."""

    _emit_lines(CONTROLLER.reclaim_containers(home_dir))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    team_conductor()

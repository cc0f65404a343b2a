"""CLI entrypoint for raf."""

import logging
from pathlib import Path

import rich_click as click

from raf import __version__
from raf.orchestrator.controllers import (
    DoCommand,
    PlanCommand,
    RafCliController,
    StatusCommand,
)
from raf.orchestrator.disposition import PostExecutionAction

click.rich_click.USE_MARKDOWN = True

_POST_ACTIONS = [action.value for action in PostExecutionAction]


def _ask_post_action() -> str:
    return click.prompt(
        "After tasks complete: merge, open a PR, or leave the branch?",
        type=click.Choice(_POST_ACTIONS, case_sensitive=False),
        default=PostExecutionAction.MERGE.value,
    )


RAF_CONTROLLER = RafCliController(
    echo=click.echo,
    display=lambda text: click.echo(text, nl=False),
    ask_post_action=_ask_post_action,
)


@click.group()
@click.version_option(version=__version__, prog_name="raf")
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def raf(ctx: click.Context, debug: bool) -> None:
    """Run planned agent tasks from the `RAF/` project folders."""

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@raf.command("status")
@click.argument("project", required=False)
@click.option(
    "--raf-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Projects root. Defaults to RAF_DIR or ./RAF.",
)
def status(project: str | None, raf_dir: Path | None) -> None:
    """Show derived status for all projects, or the task list of one."""

    try:
        lines = RAF_CONTROLLER.status(StatusCommand(raf_dir=raf_dir, project=project))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@raf.command("do")
@click.argument("project")
@click.option(
    "--raf-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Projects root. Defaults to RAF_DIR or ./RAF.",
)
@click.option(
    "--timeout",
    "timeout_minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout in minutes (RAF_TIMEOUT_MINUTES).",
)
@click.option("--force", is_flag=True, default=False, help="Re-run completed tasks too.")
@click.option(
    "--worktree/--no-worktree",
    default=None,
    help="Run inside an isolated git worktree (RAF_WORKTREE).",
)
@click.option(
    "--post-action",
    type=click.Choice(_POST_ACTIONS, case_sensitive=False),
    default=None,
    help="What to do with the worktree branch afterwards; prompts when omitted.",
)
@click.option("--model", default=None, help="Agent model (RAF_MODEL).")
@click.option(
    "--stream-json/--no-stream-json",
    default=None,
    help="Parse the agent's NDJSON event stream (RAF_STREAM_JSON).",
)
@click.pass_context
def do(  # noqa: PLR0913
    ctx: click.Context,
    project: str,
    raf_dir: Path | None,
    timeout_minutes: int | None,
    force: bool,
    worktree: bool | None,
    post_action: str | None,
    model: str | None,
    stream_json: bool | None,
) -> None:
    """Execute the pending and failed tasks of PROJECT."""

    result = RAF_CONTROLLER.run_project(
        DoCommand(
            raf_dir=raf_dir,
            project=project,
            timeout_minutes=timeout_minutes,
            force=force,
            worktree=worktree,
            post_action=post_action,
            model=model,
            stream_json=stream_json,
            debug=bool(ctx.obj and ctx.obj.get("debug")),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Project execution failed.")


@raf.command("plan")
@click.argument("project")
@click.option(
    "--raf-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Projects root. Defaults to RAF_DIR or ./RAF.",
)
@click.option("--model", default=None, help="Agent model (RAF_MODEL).")
def plan(project: str, raf_dir: Path | None, model: str | None) -> None:
    """Open an interactive agent session that writes plans from `input.md`."""

    try:
        result = RAF_CONTROLLER.plan(PlanCommand(raf_dir=raf_dir, project=project, model=model))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Planning session did not produce plans.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    raf()

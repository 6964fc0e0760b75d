from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from studio import __version__
from studio.config import StudioConfig, load_config
from studio.context import StudioContext
from studio.errors import StudioError
from studio.kanban import column_counts
from studio.models import TASK_STATUSES, TASK_TRANSITIONS
from studio.status_reference import get_status_reference

log = logging.getLogger(__name__)

T = TypeVar("T")


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Every command prints JSON on stdout, so Click usage errors and
    :class:`ClickException` are reported as ``{"ok": false, "error": ...}``
    there too. Unknown commands get fuzzy-matched suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, default=str))
    sys.stdout.flush()


def _run(factory: Callable[[StudioContext], Awaitable[T]]) -> T:
    """Run *factory* against a fresh context; studio errors become JSON errors."""
    config: StudioConfig = click.get_current_context().obj["config"]

    async def runner() -> T:
        async with StudioContext(config) as studio:
            return await factory(studio)

    try:
        return asyncio.run(runner())
    except StudioError as exc:
        log.debug("Command failed", exc_info=True)
        raise click.ClickException(str(exc)) from exc


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: ~/.config/studio/config.toml).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None):
    """Follow AI coding tasks on the board and stream their sessions live.

    \b
    Quick start:
      studio board                     Tasks grouped by kanban column
      studio watch SESSION_ID          Stream one session's activity (JSON lines)
      studio events                    Stream task/session events
      studio task start TASK_ID        Start planning a backlog task
    """
    config = load_config(config_path)
    logging.basicConfig(
        level=getattr(logging, config["log_level"], logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# -- board --


@main.command()
def board():
    """Show all tasks grouped into kanban columns."""

    async def load(studio: StudioContext) -> dict[str, Any]:
        await studio.refresh()
        return {
            "columns": studio.board(),
            "counts": column_counts(studio.machine.tasks()),
        }

    _emit(_run(load))


# -- watch --


@main.command()
@click.argument("session_id")
def watch(session_id: str):
    """Stream a session's activity as JSON lines until it finishes.

    Exits 1 if the connection cannot be re-established.
    """

    async def follow(studio: StudioContext) -> dict[str, Any]:
        outcome: dict[str, Any] = {"finished": False}

        def finished(success: bool, error: str | None) -> None:
            outcome.update(finished=True, success=success, error=error)

        studio.subscribe(session_id, on_activity=_emit, on_finished=finished)
        feed = studio.feed(session_id)
        if feed is None:
            raise click.ClickException(f"Could not watch session {session_id}")
        await feed.wait_closed()
        if feed.error is not None:
            raise feed.error
        return outcome

    result = _run(follow)
    _emit({"session_id": session_id, **result})


# -- events --


@main.command()
@click.option("--task", "task_ids", multiple=True, help="Only events for this task (repeatable).")
def events(task_ids: tuple[str, ...]):
    """Stream task and session events as JSON lines."""

    async def follow(studio: StudioContext) -> None:
        studio.watch_events(task_ids or None, on_event=_emit)
        stream = studio.events
        if stream is None:
            raise click.ClickException("Could not open the event stream")
        await stream.stream.wait_closed()
        if stream.stream.error is not None:
            raise stream.stream.error

    _run(follow)


# -- transitions / help-status --


@main.command()
def transitions():
    """Show the allowed task status transitions."""
    _emit(
        {
            status: sorted(TASK_TRANSITIONS[status], key=TASK_STATUSES.index)
            for status in TASK_STATUSES
        }
    )


@main.command("help-status")
def help_status():
    """Show canonical status lifecycle definitions for tasks and sessions."""
    click.echo(json.dumps(get_status_reference(), indent=2, sort_keys=False))


# -- task --


@main.group()
def task():
    """Move a task through its lifecycle."""


def _task_action(name: str, method: str, summary: str) -> None:
    @task.command(name, help=summary)
    @click.argument("task_id")
    def command(task_id: str):
        async def act(studio: StudioContext) -> dict[str, Any]:
            await studio.refresh()
            row = await getattr(studio, method)(task_id)
            return {
                "ok": True,
                "task": row,
                "column": studio.project_column(row["status"]),
                "is_running": studio.is_task_running(task_id),
            }

        _emit(_run(act))


_task_action("start", "start_task", "Start planning a backlog task.")
_task_action("approve-plan", "approve_plan", "Approve the plan and start implementation.")
_task_action("replan", "request_replan", "Reject the plan and plan again.")
_task_action("approve", "approve", "Approve reviewed work and mark the task done.")
_task_action("request-changes", "request_changes", "Send reviewed work back for fixes.")
_task_action("fix", "dispatch_fix", "Dispatch a fix session for a task needing fixes.")
_task_action("retry", "retry", "Re-run the current phase after a failed session.")

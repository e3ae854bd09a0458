"""Command-line interface. Every command prints one JSON object on stdout."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import click

from agloop import __version__, git_ops
from agloop.backoff import retry_command
from agloop.config import LoopConfig, load_config
from agloop.doctor import require_prerequisites, run_doctor
from agloop.errors import AgloopError
from agloop.loop import IterationController
from agloop.scheduler import WorkerScheduler
from agloop.state import StateDir
from agloop.tasks import TaskStore

log = logging.getLogger(__name__)

TASK_TEMPLATE = """\
---
task: Describe the overall goal here
test_command: "pytest -q"
---

# Task

What should exist when this is done, and any constraints.

## Success Criteria

1. [ ] First thing to do
2. [ ] Second thing to do <!-- group: 1 -->
3. [ ] Third thing to do <!-- group: 1 --> <!-- model: sonnet-4.5 -->
"""


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions are rendered as ``{"ok": false, "error": ...}`` on stdout
    instead of plain-text usage errors on stderr. Unknown commands get
    fuzzy-matched suggestions via ``difflib.get_close_matches``.
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


@contextlib.contextmanager
def _cli_errors() -> Iterator[None]:
    """Turn library failures into ClickExceptions (rendered as JSON errors)."""
    try:
        yield
    except (AgloopError, RuntimeError) as exc:
        raise click.ClickException(str(exc)) from None


def _configure_logging(ctx: click.Context, verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    if verbose:
        root.setLevel(logging.DEBUG)

    def _detach() -> None:
        root.removeHandler(handler)
        root.setLevel(previous_level)

    ctx.call_on_close(_detach)


def _workspace(path: str | None) -> Path:
    return Path(path) if path else Path.cwd()


def _load(workspace: Path, **overrides: Any) -> LoopConfig:
    with _cli_errors():
        return load_config(workspace, **overrides)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Run coding agents in a loop against a checklist until it is done.

    \b
    Quick start:
      agloop init                 Create .agloop/ state and a TASKS.md template
      agloop doctor               Check prerequisites
      agloop run                  Work through TASKS.md one session at a time
      agloop parallel -n 3        Fan pending items across isolated worktrees
      agloop tasks                Show checklist progress
    """
    _configure_logging(ctx, verbose)


_path_argument = click.argument(
    "path",
    required=False,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)


# -- init --


@main.command()
@_path_argument
@click.option("--task-file", default=None, help="Checklist file name (default: TASKS.md).")
def init(path: str | None, task_file: str | None):
    """Create .agloop/ state files and a checklist template."""
    workspace = _workspace(path)
    config = _load(workspace, task_file=task_file)
    created = StateDir.for_workspace(workspace).init()

    checklist = workspace / config.task_file
    created_checklist = False
    if not checklist.exists():
        checklist.write_text(TASK_TEMPLATE, encoding="utf-8")
        created_checklist = True

    gitignore_updated = False
    if git_ops.is_git_repo(workspace):
        gitignore_updated = git_ops.ensure_worktree_ignored(workspace)

    click.echo(
        json.dumps(
            {
                "workspace": str(workspace),
                "created": created,
                "task_file": str(checklist),
                "task_file_created": created_checklist,
                "gitignore_updated": gitignore_updated,
            }
        )
    )


# -- run --


@main.command()
@_path_argument
@click.option("--model", "-m", default=None, help="Model for iterations.")
@click.option("--review-model", default=None, help="Enable the review gate with this model.")
@click.option("--max-review-attempts", type=int, default=None, help="Failed reviews allowed.")
@click.option("--max-iterations", type=int, default=None, help="Iteration cap for this run.")
@click.option("--branch", default=None, help="Check out (or create) this branch first.")
@click.option("--check-models", is_flag=True, help="Validate model names with --list-models.")
@click.option("--spinner/--no-spinner", default=None, help="Show liveness on stderr.")
@click.pass_context
def run(
    ctx: click.Context,
    path: str | None,
    model: str | None,
    review_model: str | None,
    max_review_attempts: int | None,
    max_iterations: int | None,
    branch: str | None,
    check_models: bool,
    spinner: bool | None,
):
    """Run the sequential loop until the checklist is complete."""
    workspace = _workspace(path)
    config = _load(
        workspace,
        model=model,
        review_model=review_model,
        max_review_attempts=max_review_attempts,
        max_iterations=max_iterations,
    )
    with _cli_errors():
        report = run_doctor(workspace, config, check_models=check_models)
        require_prerequisites(report)
        if branch:
            git_ops.checkout_branch(workspace, branch)
        controller = IterationController(
            workspace,
            config,
            known_models=report.get("models"),
            show_spinner=sys.stderr.isatty() if spinner is None else spinner,
        )
        result = asyncio.run(controller.run())

    payload: dict[str, Any] = {"ok": result.ok, **result.to_dict()}
    error = result.exception()
    if error is not None:
        payload["error"] = f"{type(error).__name__}: {error}"
    click.echo(json.dumps(payload))
    if not result.ok:
        ctx.exit(1)


# -- parallel --


@main.command()
@_path_argument
@click.option("--max-parallel", "-n", type=int, default=None, help="Concurrent agents.")
@click.option("--base-branch", "-b", default=None, help="Branch to fork from and merge into.")
@click.option("--no-merge", is_flag=True, help="Leave successful branches unmerged.")
@click.option("--ungrouped-first", is_flag=True, help="Run unannotated items before groups.")
@click.option("--model", "-m", default=None, help="Model for every agent.")
@click.option("--progress/--no-progress", default=None, help="Show batch progress on stderr.")
@click.pass_context
def parallel(
    ctx: click.Context,
    path: str | None,
    max_parallel: int | None,
    base_branch: str | None,
    no_merge: bool,
    ungrouped_first: bool,
    model: str | None,
    progress: bool | None,
):
    """Fan pending checklist items across isolated worktrees."""
    workspace = _workspace(path)
    config = _load(
        workspace,
        max_parallel=max_parallel,
        skip_merge=True if no_merge else None,
        model=model,
    )
    with _cli_errors():
        require_prerequisites(run_doctor(workspace, config))
        scheduler = WorkerScheduler(
            workspace,
            config,
            base_branch=base_branch,
            ungrouped_first=ungrouped_first,
            show_progress=sys.stderr.isatty() if progress is None else progress,
        )
        report = asyncio.run(scheduler.run())

    click.echo(json.dumps({"ok": report.ok, **report.to_dict()}))
    if not report.ok:
        ctx.exit(1)


# -- tasks --


@main.command()
@_path_argument
@click.option("--pending", is_flag=True, help="Only pending items, in execution order.")
def tasks(path: str | None, pending: bool):
    """List checklist items and progress."""
    workspace = _workspace(path)
    config = _load(workspace)
    store = TaskStore(workspace / config.task_file)
    if not store.exists():
        raise click.ClickException(f"Checklist not found: {store.path}")
    done, total = store.progress()
    records = store.pending() if pending else store.tasks()
    click.echo(
        json.dumps(
            {
                "task_file": str(store.path),
                "done": done,
                "total": total,
                "remaining": total - done,
                "tasks": [
                    {
                        "id": record.id,
                        "description": record.description,
                        "status": record.status,
                        "group": record.group,
                        "model": record.model,
                    }
                    for record in records
                ],
            }
        )
    )


@main.command()
@click.argument("task_id")
@_path_argument
def complete(task_id: str, path: str | None):
    """Check the box for TASK_ID (e.g. line_12)."""
    workspace = _workspace(path)
    config = _load(workspace)
    store = TaskStore(workspace / config.task_file)
    with _cli_errors():
        record = store.mark_complete(task_id)
    done, total = store.progress()
    click.echo(
        json.dumps({"id": record.id, "status": record.status, "done": done, "total": total})
    )


# -- doctor --


@main.command()
@_path_argument
@click.option("--check-models", is_flag=True, help="Validate model names with --list-models.")
def doctor(path: str | None, check_models: bool):
    """Check prerequisites: checklist, agent CLI, git, disk and memory."""
    workspace = _workspace(path)
    config = _load(workspace)
    report = run_doctor(workspace, config, check_models=check_models)
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")


# -- worktrees --


@main.group()
def worktrees():
    """Manage agloop worktrees."""


@worktrees.command("list")
@_path_argument
def worktrees_list(path: str | None):
    """List agloop worktrees and whether they hold uncommitted changes."""
    workspace = _workspace(path)
    entries = [
        {"path": str(p), "dirty": git_ops.has_uncommitted_changes(p)}
        for p in git_ops.list_worktrees(workspace)
    ]
    click.echo(json.dumps({"worktrees": entries}))


@worktrees.command("cleanup")
@_path_argument
def worktrees_cleanup(path: str | None):
    """Force-remove every agloop worktree and prune."""
    workspace = _workspace(path)
    with _cli_errors():
        removed = git_ops.cleanup_worktrees(workspace)
    click.echo(json.dumps({"removed": removed}))


# -- retry --


@main.command(context_settings={"ignore_unknown_options": True})
@click.option("--max-attempts", type=int, default=3, show_default=True)
@click.option("--base", type=float, default=1.0, show_default=True, help="Base delay (s).")
@click.option("--cap", type=float, default=30.0, show_default=True, help="Max delay (s).")
@click.option("--no-jitter", is_flag=True, help="Disable delay jitter.")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def retry(
    ctx: click.Context,
    max_attempts: int,
    base: float,
    cap: float,
    no_jitter: bool,
    command: tuple[str, ...],
):
    """Run COMMAND, retrying with exponential backoff on non-zero exit.

    \b
    Example:
      agloop retry --max-attempts 5 -- git push
    """
    with _cli_errors():
        try:
            result = retry_command(
                command,
                max_attempts=max_attempts,
                base=base,
                cap=cap,
                jitter=not no_jitter,
            )
        except FileNotFoundError:
            raise click.ClickException(f"Command not found: {command[0]}") from None
    click.echo(
        json.dumps(
            {
                "ok": result.returncode == 0,
                "exit_code": result.returncode,
                "stdout": result.stdout,
                "stderr": result.stderr,
            }
        )
    )
    if result.returncode != 0:
        ctx.exit(result.returncode)

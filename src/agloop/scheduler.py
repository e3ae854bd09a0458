"""Parallel execution across isolated worktrees.

Pending tasks are split into phases by group, and each phase into batches of
``max_parallel``. Every job in a batch gets its own worktree on a fresh branch
and a single-task IterationController. Once all jobs in the batch have stopped,
the merge phase merges each successful branch into the target, one at a time,
in batch order. Only then does the next batch start.

The shared checklist is only ever written here, after the merge phase; jobs
never touch it.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from agloop import git_ops
from agloop.config import LoopConfig
from agloop.errors import AgloopError, ConfigurationError, InvalidTaskId, MergeConflict
from agloop.loop import IterationController, LoopResult
from agloop.paths import JOB_LOG_DIR, state_dir
from agloop.state import StateDir
from agloop.tasks import TaskRecord, TaskStore

log = logging.getLogger(__name__)

ControllerFactory = Callable[..., IterationController]


class JobStatus(enum.Enum):
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class JobOutcome(enum.Enum):
    SUCCESS = "success"
    NO_CHANGE = "no_change"
    ERROR = "error"


@dataclass
class WorkerJob:
    task: TaskRecord
    agent_number: int
    workspace: Path | None = None
    branch: str | None = None
    status: JobStatus = JobStatus.WAITING
    outcome: JobOutcome | None = None
    commits: int = 0
    result: LoopResult | None = None
    error: str = ""
    merged: bool = False
    conflicted: bool = False
    preserved: bool = False
    copied_checklist: str | None = None

    @property
    def task_id(self) -> str:
        return self.task.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "description": self.task.description,
            "agent": self.agent_number,
            "branch": self.branch,
            "workspace": str(self.workspace) if self.workspace else None,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "commits": self.commits,
            "merged": self.merged,
            "conflicted": self.conflicted,
            "preserved": self.preserved,
            "loop": self.result.to_dict() if self.result else None,
            "error": self.error or None,
        }


@dataclass
class BatchReport:
    group: int | None
    jobs: list[WorkerJob] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)
    unmerged: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "jobs": [job.to_dict() for job in self.jobs],
            "merged": self.merged,
            "conflicted": self.conflicted,
            "unmerged": self.unmerged,
        }


@dataclass
class SchedulerReport:
    base_branch: str
    batches: list[BatchReport] = field(default_factory=list)

    def _count(self, outcome: JobOutcome) -> int:
        return sum(
            1 for batch in self.batches for job in batch.jobs if job.outcome is outcome
        )

    @property
    def merged(self) -> int:
        return sum(len(batch.merged) for batch in self.batches)

    @property
    def conflicted(self) -> int:
        return sum(len(batch.conflicted) for batch in self.batches)

    @property
    def unmerged(self) -> int:
        return sum(len(batch.unmerged) for batch in self.batches)

    @property
    def ok(self) -> bool:
        return all(
            job.outcome is not JobOutcome.ERROR and not job.conflicted
            for batch in self.batches
            for job in batch.jobs
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_branch": self.base_branch,
            "batches": [batch.to_dict() for batch in self.batches],
            "totals": {
                "jobs": sum(len(batch.jobs) for batch in self.batches),
                "success": self._count(JobOutcome.SUCCESS),
                "no_change": self._count(JobOutcome.NO_CHANGE),
                "error": self._count(JobOutcome.ERROR),
                "merged": self.merged,
                "conflicted": self.conflicted,
                "unmerged": self.unmerged,
            },
        }


def chunk(tasks: list[TaskRecord], size: int) -> list[list[TaskRecord]]:
    return [tasks[i : i + size] for i in range(0, len(tasks), size)]


class WorkerScheduler:
    """Fans pending checklist items across worktrees and merges the results."""

    def __init__(
        self,
        repo: str | Path,
        config: LoopConfig,
        *,
        base_branch: str | None = None,
        ungrouped_first: bool = False,
        show_progress: bool = False,
        controller_factory: ControllerFactory = IterationController,
    ) -> None:
        self.repo = Path(repo)
        self.config = config
        self.base_branch = base_branch
        self.ungrouped_first = ungrouped_first
        self.show_progress = show_progress
        self.controller_factory = controller_factory
        self.tasks = TaskStore(self.repo / config.task_file)
        self._agent_numbers = itertools.count(1)

    def _resolve_base(self) -> str:
        if not git_ops.is_main_worktree(self.repo):
            raise ConfigurationError(
                f"{self.repo} is not a main git checkout; parallel mode needs a .git directory"
            )
        if not self.tasks.exists():
            raise ConfigurationError(f"Checklist not found: {self.tasks.path}")
        base = self.base_branch or git_ops.current_branch(self.repo)
        if not base:
            raise ConfigurationError("HEAD is detached; pass an explicit base branch")
        if not git_ops.branch_exists(self.repo, base):
            raise ConfigurationError(f"Base branch '{base}' does not exist")
        return base

    async def run(self) -> SchedulerReport:
        """Run every pending task, group by group. Returns the full report."""
        base = self._resolve_base()
        git_ops.ensure_worktree_ignored(self.repo)
        report = SchedulerReport(base_branch=base)

        phases = self.tasks.groups(ungrouped_first=self.ungrouped_first)
        if not phases:
            log.info("No pending tasks in %s", self.tasks.path.name)
            return report

        for group, tasks in phases:
            label = "ungrouped" if group is None else f"group {group}"
            for batch_tasks in chunk(tasks, self.config.max_parallel):
                log.info("Starting batch of %d task(s) (%s)", len(batch_tasks), label)
                report.batches.append(await self.run_batch(batch_tasks, base, group=group))
        return report

    # -- one batch --

    async def run_batch(
        self, tasks: list[TaskRecord], base: str, *, group: int | None = None
    ) -> BatchReport:
        batch = BatchReport(group=group)
        base_sha = git_ops.rev_parse(self.repo, base)
        batch.jobs = [
            WorkerJob(task=task, agent_number=next(self._agent_numbers)) for task in tasks
        ]

        # Worktree creation touches shared repository metadata; do it serially.
        for job in batch.jobs:
            self._create_workspace(job, base)

        monitor = asyncio.create_task(self._monitor(batch.jobs)) if self.show_progress else None
        try:
            await asyncio.gather(*(self._run_job(job, base_sha) for job in batch.jobs))
        finally:
            if monitor is not None:
                monitor.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await monitor

        self._merge_phase(batch, base)
        self._mark_complete(batch)
        self._cleanup(batch)
        return batch

    def _create_workspace(self, job: WorkerJob, base: str) -> None:
        try:
            job.branch, job.workspace = git_ops.create_worktree(
                self.repo, job.agent_number, job.task.description, base
            )
        except RuntimeError as exc:
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.ERROR
            job.error = str(exc)
            log.error("Agent %d: %s", job.agent_number, exc)
            return
        job.copied_checklist = self._copy_checklist(job.workspace)

    def _copy_checklist(self, workspace: Path) -> str | None:
        """Copy the checklist into a workspace as context. Returns the copied text."""
        source = self.tasks.path
        target = workspace / self.config.task_file
        text = source.read_text(encoding="utf-8")
        if target.exists() and target.read_text(encoding="utf-8") == text:
            return None
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return text

    def _job_state(self, job: WorkerJob) -> StateDir:
        assert job.workspace is not None
        return StateDir(state_dir(self.repo) / JOB_LOG_DIR / job.workspace.name)

    async def _run_job(self, job: WorkerJob, base_sha: str) -> None:
        if job.workspace is None:
            return
        job.status = JobStatus.RUNNING
        log.info("Agent %d started: %s -> %s", job.agent_number, job.task_id, job.branch)
        controller = self.controller_factory(
            job.workspace,
            self.config,
            state=self._job_state(job),
            single_task=job.task,
            agent_number=job.agent_number,
        )
        try:
            job.result = await controller.run()
        except (AgloopError, RuntimeError, OSError) as exc:
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.ERROR
            job.error = str(exc)
            log.error("Agent %d failed: %s", job.agent_number, exc)
            return

        job.commits = git_ops.commits_ahead(job.workspace, base_sha, "HEAD")
        if job.result.ok:
            job.status = JobStatus.DONE
            job.outcome = JobOutcome.SUCCESS if job.commits > 0 else JobOutcome.NO_CHANGE
        else:
            job.status = JobStatus.FAILED
            job.outcome = JobOutcome.ERROR
            job.error = f"{job.result.status.value}: {job.result.reason}"
        log.info(
            "Agent %d finished: %s (%d commit(s))",
            job.agent_number,
            job.outcome.value,
            job.commits,
        )

    async def _monitor(self, jobs: list[WorkerJob]) -> None:
        started = time.monotonic()
        frames = itertools.cycle("⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏")
        try:
            while True:
                running = sum(1 for job in jobs if job.status is JobStatus.RUNNING)
                done = sum(1 for job in jobs if job.status is JobStatus.DONE)
                failed = sum(1 for job in jobs if job.status is JobStatus.FAILED)
                elapsed = int(time.monotonic() - started)
                click.echo(
                    f"\r  {next(frames)} Running: {running} | Done: {done} | Failed: {failed}"
                    f" | {elapsed // 60:02d}:{elapsed % 60:02d} ",
                    err=True,
                    nl=False,
                )
                await asyncio.sleep(0.2)
        finally:
            click.echo("\r\033[K", err=True, nl=False)

    # -- after the batch --

    def _merge_phase(self, batch: BatchReport, target: str) -> None:
        for job in batch.jobs:
            if job.outcome is not JobOutcome.SUCCESS or job.branch is None:
                continue
            if self.config.skip_merge:
                batch.unmerged.append(job.branch)
                continue
            try:
                git_ops.merge_branch(
                    self.repo,
                    job.branch,
                    target,
                    message=f"Merge {job.branch}: {job.task.description}",
                )
            except MergeConflict as exc:
                job.conflicted = True
                batch.conflicted.append(job.branch)
                log.warning("%s; branch preserved for manual review", exc)
            except RuntimeError as exc:
                batch.unmerged.append(job.branch)
                log.error("Failed to merge %s: %s", job.branch, exc)
            else:
                job.merged = True
                batch.merged.append(job.branch)

    def _mark_complete(self, batch: BatchReport) -> None:
        for job in batch.jobs:
            done = job.merged or (self.config.skip_merge and job.outcome is JobOutcome.SUCCESS)
            if not done:
                continue
            try:
                self.tasks.mark_complete(job.task_id)
            except InvalidTaskId as exc:
                log.warning("Cannot mark %s complete: %s", job.task_id, exc)

    def _cleanup(self, batch: BatchReport) -> None:
        for job in batch.jobs:
            if job.workspace is None or job.branch is None:
                continue
            if job.outcome is JobOutcome.ERROR:
                job.preserved = True
                log.warning(
                    "Agent %d failed; keeping %s and %s for inspection",
                    job.agent_number,
                    job.workspace,
                    job.branch,
                )
                continue

            self._restore_checklist(job)
            removed = False
            if git_ops.has_uncommitted_changes(job.workspace):
                job.preserved = True
                log.warning("Worktree preserved (uncommitted changes): %s", job.workspace)
            else:
                removed = git_ops.remove_worktree(self.repo, job.workspace)
                job.preserved = not removed

            if removed and (job.merged or job.outcome is JobOutcome.NO_CHANGE):
                git_ops.delete_branch(self.repo, job.branch)

    def _restore_checklist(self, job: WorkerJob) -> None:
        """Undo the checklist copy unless the worker changed the file."""
        if job.copied_checklist is None or job.workspace is None:
            return
        target = job.workspace / self.config.task_file
        try:
            if target.read_text(encoding="utf-8") != job.copied_checklist:
                return
        except FileNotFoundError:
            return
        try:
            git_ops.restore_path(job.workspace, self.config.task_file)
        except RuntimeError as exc:
            log.warning("Failed to restore %s in %s: %s", self.config.task_file, job.workspace, exc)

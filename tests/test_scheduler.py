"""Tests for parallel execution across worktrees."""

import json
import shutil

import pytest
from conftest import commit_files, git

from agloop import git_ops
from agloop.errors import ConfigurationError
from agloop.scheduler import JobOutcome, WorkerScheduler, chunk
from agloop.tasks import TaskRecord, TaskStore

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]

CHECKLIST = (
    "# Task\n\n"
    "- [ ] Write alpha to shared\n"
    "- [ ] Write beta to shared\n"
    "- [ ] Write gamma to other\n"
)

JOBS = {
    "Write alpha to shared": {"shared.txt": "alpha\n"},
    "Write beta to shared": {"shared.txt": "beta\n"},
    "Write gamma to other": {"other.txt": "gamma\n"},
}


def _job_agent(fake_agent, jobs=JOBS):
    fake_agent.env["FAKE_AGENT_MODE"] = "job"
    fake_agent.env["FAKE_AGENT_JOBS"] = json.dumps(jobs)
    return fake_agent


def test_chunk():
    tasks = [TaskRecord(f"line_{n}", f"t{n}", "pending") for n in range(1, 6)]
    sizes = [len(batch) for batch in chunk(tasks, 2)]
    assert sizes == [2, 2, 1]
    assert chunk([], 3) == []


@pytest.mark.asyncio
async def test_conflicting_jobs_merge_first_and_preserve_second(git_repo, fake_agent):
    commit_files(git_repo, {"shared.txt": "base\n", "TASKS.md": CHECKLIST}, "base")
    config = _job_agent(fake_agent).config(max_parallel=3)

    report = await WorkerScheduler(git_repo, config).run()

    assert len(report.batches) == 1
    (batch,) = report.batches
    assert [job.outcome for job in batch.jobs] == [JobOutcome.SUCCESS] * 3
    assert report.merged == 2
    assert report.conflicted == 1
    assert not report.ok
    alpha, beta, gamma = batch.jobs
    assert alpha.merged and gamma.merged
    assert beta.conflicted and batch.conflicted == [beta.branch]

    assert git(git_repo, "show", "main:shared.txt") == "alpha"
    assert git(git_repo, "show", "main:other.txt") == "gamma"
    assert (git_repo / "shared.txt").read_text() == "alpha\n"
    assert (git_repo / "other.txt").read_text() == "gamma\n"

    store = TaskStore(git_repo / "TASKS.md")
    assert [task.status for task in store.tasks()] == ["complete", "pending", "complete"]

    # Every job ran in its own worktree, each of which is gone now.
    cwds = {call["cwd"] for call in fake_agent.invocations()}
    assert len(cwds) == 3
    assert git_ops.list_worktrees(git_repo) == []
    assert git_ops.branch_exists(git_repo, beta.branch)
    assert not git_ops.branch_exists(git_repo, alpha.branch)
    assert not git_ops.branch_exists(git_repo, gamma.branch)

    totals = report.to_dict()["totals"]
    assert totals == {
        "jobs": 3,
        "success": 3,
        "no_change": 0,
        "error": 0,
        "merged": 2,
        "conflicted": 1,
        "unmerged": 0,
    }
    assert ".agloop-worktrees/" in (git_repo / ".gitignore").read_text()


@pytest.mark.asyncio
async def test_job_logs_land_in_per_job_state(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": "- [ ] Write gamma to other\n"}, "tasks")
    report = await WorkerScheduler(git_repo, _job_agent(fake_agent).config()).run()

    (job,) = report.batches[0].jobs
    state = git_repo / ".agloop" / "jobs" / job.workspace.name
    activity = (state / "activity.log").read_text()
    assert "WRITE other.txt" in activity
    assert "Loop finished: complete" in activity
    assert "## Your Task\nWrite gamma to other\n" in fake_agent.invocations()[0]["prompt"]


@pytest.mark.asyncio
async def test_job_without_commits_is_no_change(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": "- [ ] Think about it\n"}, "tasks")
    report = await WorkerScheduler(git_repo, _job_agent(fake_agent).config()).run()

    (job,) = report.batches[0].jobs
    assert job.outcome is JobOutcome.NO_CHANGE
    assert job.commits == 0
    assert report.ok
    assert report.merged == 0
    assert not git_ops.branch_exists(git_repo, job.branch)
    assert not job.workspace.exists()
    assert TaskStore(git_repo / "TASKS.md").get("line_1").status == "pending"


@pytest.mark.asyncio
async def test_skip_merge_keeps_branches(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": "- [ ] Write gamma to other\n"}, "tasks")
    before = git_ops.rev_parse(git_repo, "main")
    config = _job_agent(fake_agent).config(skip_merge=True)

    report = await WorkerScheduler(git_repo, config).run()

    (job,) = report.batches[0].jobs
    assert report.unmerged == 1
    assert report.ok
    assert git_ops.rev_parse(git_repo, "main") == before
    assert git_ops.branch_exists(git_repo, job.branch)
    assert git(git_repo, "show", f"{job.branch}:other.txt") == "gamma"
    assert not job.workspace.exists()
    assert TaskStore(git_repo / "TASKS.md").get("line_1").status == "complete"


@pytest.mark.asyncio
async def test_groups_run_in_sequence_on_merged_base(git_repo, fake_agent):
    checklist = (
        "- [ ] Write beta to shared <!-- group: 2 -->\n"
        "- [ ] Write alpha to shared <!-- group: 1 -->\n"
    )
    commit_files(git_repo, {"shared.txt": "base\n", "TASKS.md": checklist}, "base")
    report = await WorkerScheduler(git_repo, _job_agent(fake_agent).config()).run()

    assert [batch.group for batch in report.batches] == [1, 2]
    assert report.merged == 2
    assert report.conflicted == 0
    assert git(git_repo, "show", "main:shared.txt") == "beta"
    assert TaskStore(git_repo / "TASKS.md").is_complete()
    # The copied checklist was restored before the branch was merged.
    assert "TASKS.md" not in git(git_repo, "diff", "--name-only", "HEAD~1", "HEAD")


@pytest.mark.asyncio
async def test_batches_respect_max_parallel(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": CHECKLIST}, "tasks")
    jobs = {
        "Write alpha to shared": {"a.txt": "a\n"},
        "Write beta to shared": {"b.txt": "b\n"},
        "Write gamma to other": {"c.txt": "c\n"},
    }
    config = _job_agent(fake_agent, jobs).config(max_parallel=2)
    report = await WorkerScheduler(git_repo, config).run()

    assert [len(batch.jobs) for batch in report.batches] == [2, 1]
    assert [job.agent_number for batch in report.batches for job in batch.jobs] == [1, 2, 3]
    assert report.merged == 3
    assert report.ok


@pytest.mark.asyncio
async def test_failed_job_is_preserved(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": "- [ ] Write gamma to other\n"}, "tasks")
    fake_agent.env["FAKE_AGENT_MODE"] = "silent"
    report = await WorkerScheduler(git_repo, fake_agent.config()).run()

    (job,) = report.batches[0].jobs
    assert job.outcome is JobOutcome.ERROR
    assert job.error.startswith("failed(no-activity)")
    assert job.preserved
    assert not report.ok
    assert job.workspace.exists()
    assert git_ops.branch_exists(git_repo, job.branch)
    assert TaskStore(git_repo / "TASKS.md").get("line_1").status == "pending"


@pytest.mark.asyncio
async def test_nothing_pending(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": "- [x] Done already\n"}, "tasks")
    report = await WorkerScheduler(git_repo, fake_agent.config()).run()
    assert report.batches == []
    assert report.ok
    assert fake_agent.invocations() == []


@pytest.mark.asyncio
async def test_requires_main_checkout(git_repo, fake_agent, tmp_path):
    commit_files(git_repo, {"TASKS.md": CHECKLIST}, "tasks")
    linked = tmp_path / "linked"
    git(git_repo, "worktree", "add", "-q", "-b", "side", str(linked))
    with pytest.raises(ConfigurationError, match="not a main git checkout"):
        await WorkerScheduler(linked, fake_agent.config()).run()


@pytest.mark.asyncio
async def test_unknown_base_branch(git_repo, fake_agent):
    commit_files(git_repo, {"TASKS.md": CHECKLIST}, "tasks")
    with pytest.raises(ConfigurationError, match="does not exist"):
        await WorkerScheduler(git_repo, fake_agent.config(), base_branch="nope").run()


@pytest.mark.asyncio
async def test_missing_checklist(git_repo, fake_agent):
    with pytest.raises(ConfigurationError, match="Checklist not found"):
        await WorkerScheduler(git_repo, fake_agent.config()).run()

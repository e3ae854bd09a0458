"""Tests for the iteration controller, end to end against the fake worker."""

import shutil

import pytest
from conftest import commit_files, git

from agloop.errors import (
    AgloopError,
    ConfigurationError,
    NoActivityError,
    StuckError,
    TransientError,
)
from agloop.events import ShellExecution
from agloop.loop import (
    CHECKPOINT_MESSAGE,
    Decision,
    IterationController,
    LoopResult,
    LoopStatus,
    decide,
    describe_event,
)
from agloop.signals import Signal
from agloop.state import StateDir
from agloop.tasks import TaskStore

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

TWO_ITEMS = "# Task\n\n## Success Criteria\n\n- [ ] first thing\n- [ ] second thing\n"


class TestDecide:
    @pytest.mark.parametrize(
        "signal,complete,expected",
        [
            (Signal.NO_ACTIVITY, True, Decision.COMPLETE),
            (Signal.GUTTER, True, Decision.COMPLETE),
            (Signal.NO_ACTIVITY, False, Decision.FAIL),
            (Signal.GUTTER, False, Decision.FAIL),
            (Signal.NONE, True, Decision.COMPLETE),
            (Signal.COMPLETE, True, Decision.COMPLETE),
            (Signal.DEFER, True, Decision.COMPLETE),
            (Signal.COMPLETE, False, Decision.CONTINUE),
            (Signal.DEFER, False, Decision.RETRY),
            (Signal.ROTATE, False, Decision.ROTATE),
            (Signal.TIMEOUT, False, Decision.ROTATE),
            (Signal.NONE, False, Decision.CONTINUE),
        ],
    )
    def test_sequential(self, signal, complete, expected):
        assert decide(signal, complete) is expected

    @pytest.mark.parametrize(
        "signal,exited_cleanly,expected",
        [
            (Signal.COMPLETE, True, Decision.COMPLETE),
            (Signal.NONE, True, Decision.COMPLETE),
            (Signal.NONE, False, Decision.ROTATE),
            (Signal.DEFER, True, Decision.RETRY),
            (Signal.GUTTER, True, Decision.FAIL),
            (Signal.ROTATE, True, Decision.ROTATE),
        ],
    )
    def test_single_task(self, signal, exited_cleanly, expected):
        assert decide(signal, False, single_task=True, exited_cleanly=exited_cleanly) is expected


class TestLoopResult:
    def test_exception_mapping(self):
        assert LoopResult(LoopStatus.COMPLETE, 1).exception() is None
        stuck = LoopResult(LoopStatus.FAILED_GUTTER, 2, "stuck", context="[12:00:00] ERROR x")
        error = stuck.exception()
        assert isinstance(error, StuckError)
        assert error.context == "[12:00:00] ERROR x"
        assert isinstance(LoopResult(LoopStatus.FAILED_NO_ACTIVITY, 1).exception(), NoActivityError)
        deferred = LoopResult(LoopStatus.FAILED_MAX_ITERATIONS, 1, last_signal=Signal.DEFER)
        assert isinstance(deferred.exception(), TransientError)
        exhausted = LoopResult(LoopStatus.FAILED_REVIEW_EXHAUSTED, 3).exception()
        assert type(exhausted) is AgloopError

    def test_to_dict(self):
        result = LoopResult(LoopStatus.FAILED_GUTTER, 2, "stuck", context="ctx")
        assert result.to_dict() == {
            "status": "failed(gutter)",
            "iterations": 2,
            "reason": "stuck",
            "review_passes": 0,
            "context": "ctx",
        }
        assert not result.ok


def test_describe_event():
    assert describe_event(ShellExecution("make", 2, "")) == "SHELL make -> exit 2"


@needs_git
@pytest.mark.slow
class TestController:
    @pytest.fixture()
    def repo(self, git_repo):
        commit_files(git_repo, {"TASKS.md": TWO_ITEMS}, "add checklist")
        return git_repo

    @pytest.mark.asyncio
    async def test_one_run_checks_everything_and_completes(self, repo, fake_agent):
        result = await IterationController(repo, fake_agent.config()).run()

        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 1
        assert TaskStore(repo / "TASKS.md").is_complete()
        (call,) = fake_agent.invocations()
        assert call["model"] == "fast-model"
        assert call["resume"] is None
        assert call["prompt"].startswith("# Iteration 1\n")
        assert "## Next Item\n\nfirst thing" in call["prompt"]

        state = StateDir.for_workspace(repo)
        assert state.read_iteration() == 1
        progress = state.file("progress.md").read_text()
        assert "**Iteration 1 started** (model: fast-model)" in progress
        assert "**Iteration 1 ended**: COMPLETE -> complete" in progress
        activity = state.file("activity.log").read_text()
        assert "READ TASKS.md" in activity
        assert "Loop finished: complete" in activity
        assert CHECKPOINT_MESSAGE in git(repo, "log", "--format=%s")

    @pytest.mark.asyncio
    async def test_continue_resumes_the_same_session(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_PER_RUN"] = "1"
        result = await IterationController(repo, fake_agent.config()).run()

        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 2
        calls = fake_agent.invocations()
        assert [c["resume"] for c in calls] == [None, "session-1"]
        assert "## Next Item\n\nsecond thing" in calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_max_iterations(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_PER_RUN"] = "1"
        commit_files(repo, {"TASKS.md": TWO_ITEMS + "- [ ] third thing\n"}, "three items")
        result = await IterationController(repo, fake_agent.config(max_iterations=2)).run()

        assert result.status is LoopStatus.FAILED_MAX_ITERATIONS
        assert result.iterations == 2
        assert TaskStore(repo / "TASKS.md").remaining_count() == 1

    @pytest.mark.asyncio
    async def test_already_complete_checklist_launches_nothing(self, git_repo, fake_agent):
        commit_files(git_repo, {"TASKS.md": "- [x] done\n"}, "done")
        result = await IterationController(git_repo, fake_agent.config()).run()
        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 0
        assert fake_agent.invocations() == []

    @pytest.mark.asyncio
    async def test_already_complete_checklist_still_passes_review(self, git_repo, fake_agent):
        commit_files(git_repo, {"TASKS.md": "- [x] a\n- [x] b\n"}, "done")
        fake_agent.env["FAKE_AGENT_REVIEW_MODEL"] = "reviewer"
        config = fake_agent.config(review_model="reviewer")
        result = await IterationController(git_repo, config).run()

        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 0
        assert result.review_passes == 1
        assert [c["model"] for c in fake_agent.invocations()] == ["reviewer"]

    @pytest.mark.asyncio
    async def test_already_complete_checklist_failing_review_is_exhausted(
        self, git_repo, fake_agent
    ):
        commit_files(git_repo, {"TASKS.md": "- [x] a\n- [x] b\n"}, "done")
        fake_agent.env["FAKE_AGENT_REVIEW_MODEL"] = "reviewer"
        fake_agent.env["FAKE_AGENT_REVIEW_FAILS"] = "10"
        config = fake_agent.config(review_model="reviewer", max_review_attempts=2)
        result = await IterationController(git_repo, config).run()

        assert result.status is LoopStatus.FAILED_REVIEW_EXHAUSTED
        assert result.iterations == 1
        assert result.review_passes == 2
        models = [c["model"] for c in fake_agent.invocations()]
        assert models == ["reviewer", "fast-model", "reviewer"]

    @pytest.mark.asyncio
    async def test_thrashing_worker_that_finishes_is_complete(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_MODE"] = "thrash"
        result = await IterationController(repo, fake_agent.config()).run()

        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 1
        assert result.reason == "checklist complete"
        assert TaskStore(repo / "TASKS.md").is_complete()
        errors = StateDir.for_workspace(repo).file("errors.log").read_text()
        assert "GUTTER file written 5 times: impl.py" in errors
        assert "Checklist complete despite GUTTER" in errors

    @pytest.mark.asyncio
    async def test_review_without_review_model_is_configuration_error(self, repo, fake_agent):
        controller = IterationController(repo, fake_agent.config())
        with pytest.raises(ConfigurationError, match="review_model is not set"):
            await controller.run_review(1)

    @pytest.mark.asyncio
    async def test_iteration_numbering_survives_restart(self, repo, fake_agent):
        await IterationController(repo, fake_agent.config()).run()
        (repo / "TASKS.md").write_text(TWO_ITEMS.replace("[ ]", "[x]") + "- [ ] follow-up\n")

        result = await IterationController(repo, fake_agent.config()).run()
        assert result.ok
        assert fake_agent.invocations()[-1]["prompt"].startswith("# Iteration 2\n")
        assert StateDir.for_workspace(repo).read_iteration() == 2

    @pytest.mark.asyncio
    async def test_checkpoint_records_rollback_point(self, repo, fake_agent):
        (repo / "wip.txt").write_text("uncommitted\n")
        await IterationController(repo, fake_agent.config()).run()

        log = git(repo, "log", "--format=%H %s").splitlines()
        checkpoint = next(line.split()[0] for line in log if line.endswith(CHECKPOINT_MESSAGE))
        assert StateDir.for_workspace(repo).read_checkpoint() == checkpoint
        assert "wip.txt" in git(repo, "show", "--name-only", "--format=", checkpoint)

    @pytest.mark.asyncio
    async def test_step_model_annotation(self, git_repo, fake_agent):
        commit_files(git_repo, {"TASKS.md": "- [ ] big job <!-- model: big-model -->\n"}, "t")
        await IterationController(git_repo, fake_agent.config()).run()
        assert fake_agent.invocations()[0]["model"] == "big-model"

    @pytest.mark.asyncio
    async def test_unknown_step_model_falls_back(self, git_repo, fake_agent):
        commit_files(git_repo, {"TASKS.md": "- [ ] big job <!-- model: big-model -->\n"}, "t")
        controller = IterationController(
            git_repo, fake_agent.config(), known_models=["fast-model"]
        )
        await controller.run()
        assert fake_agent.invocations()[0]["model"] == "fast-model"
        errors = StateDir.for_workspace(git_repo).file("errors.log").read_text()
        assert "Step model 'big-model' on line_1 not found" in errors

    @pytest.mark.asyncio
    async def test_review_gate_fail_then_pass(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_REVIEW_MODEL"] = "reviewer"
        fake_agent.env["FAKE_AGENT_REVIEW_FAILS"] = "1"
        config = fake_agent.config(review_model="reviewer", max_review_attempts=2)
        result = await IterationController(repo, config).run()

        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 2
        assert result.review_passes == 2
        calls = fake_agent.invocations()
        assert [c["model"] for c in calls] == ["fast-model", "reviewer", "fast-model", "reviewer"]
        # A failed review starts the next iteration with a fresh session.
        assert calls[2]["resume"] is None
        checkpoint = StateDir.for_workspace(repo).read_checkpoint()
        assert f"Git diff base: {checkpoint}" in calls[1]["prompt"]
        assert "work/item_" in calls[1]["prompt"]
        review = StateDir.for_workspace(repo).file("review.md").read_text()
        assert "- Iteration: 2" in review
        assert "<agloop>REVIEW_PASS</agloop>" in review
        # The rejection left a lesson that the next payload carries.
        assert "### Lesson: Review rejected completion" in calls[2]["prompt"]
        assert "- **Added after**: Iteration 1" in calls[2]["prompt"]

    @pytest.mark.asyncio
    async def test_review_exhausted_never_exceeds_cap(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_REVIEW_MODEL"] = "reviewer"
        fake_agent.env["FAKE_AGENT_REVIEW_FAILS"] = "10"
        config = fake_agent.config(review_model="reviewer", max_review_attempts=2)
        result = await IterationController(repo, config).run()

        assert result.status is LoopStatus.FAILED_REVIEW_EXHAUSTED
        reviews = [c for c in fake_agent.invocations() if c["model"] == "reviewer"]
        assert len(reviews) == 2
        assert TaskStore(repo / "TASKS.md").is_complete()

    @pytest.mark.asyncio
    async def test_no_activity_is_failure(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_MODE"] = "silent"
        result = await IterationController(repo, fake_agent.config()).run()
        assert result.status is LoopStatus.FAILED_NO_ACTIVITY
        assert result.iterations == 1
        assert isinstance(result.exception(), NoActivityError)

    @pytest.mark.asyncio
    async def test_gutter_surfaces_error_context(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_MODE"] = "gutter"
        result = await IterationController(repo, fake_agent.config()).run()

        assert result.status is LoopStatus.FAILED_GUTTER
        error = result.exception()
        assert isinstance(error, StuckError)
        assert "GUTTER command failed 3 times" in error.context
        assert "-> exit 1" in error.context

    @pytest.mark.asyncio
    async def test_transient_failure_retries_without_new_iteration(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_MODE"] = "ratelimit"
        fake_agent.env["FAKE_AGENT_DEFERS"] = "2"
        sleeps: list[float] = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        config = fake_agent.config(defer_base_seconds=1.0, defer_cap_seconds=10.0)
        result = await IterationController(repo, config, sleep=fake_sleep).run()

        assert result.status is LoopStatus.COMPLETE
        assert result.iterations == 1
        assert sleeps == [1.0, 2.0]
        assert [c["resume"] for c in fake_agent.invocations()] == [None, "session-1", "session-1"]
        assert StateDir.for_workspace(repo).read_iteration() == 1

    @pytest.mark.asyncio
    async def test_persistent_transient_failure_is_bounded(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_MODE"] = "ratelimit"
        fake_agent.env["FAKE_AGENT_DEFERS"] = "100"

        async def fake_sleep(seconds):
            return None

        result = await IterationController(
            repo, fake_agent.config(max_iterations=2), sleep=fake_sleep
        ).run()
        assert result.status is LoopStatus.FAILED_MAX_ITERATIONS
        assert result.last_signal is Signal.DEFER
        assert isinstance(result.exception(), TransientError)
        assert len(fake_agent.invocations()) == 2

    @pytest.mark.asyncio
    async def test_idle_worker_times_out_and_rotates(self, repo, fake_agent):
        fake_agent.env["FAKE_AGENT_MODE"] = "hang"
        config = fake_agent.config(iteration_timeout=0.5, max_iterations=1)
        result = await IterationController(repo, config).run()

        assert result.status is LoopStatus.FAILED_MAX_ITERATIONS
        assert result.last_signal is Signal.TIMEOUT
        errors = StateDir.for_workspace(repo).file("errors.log").read_text()
        assert "TIMEOUT no output for" in errors

    @pytest.mark.asyncio
    async def test_missing_checklist_is_configuration_error(self, git_repo, fake_agent):
        with pytest.raises(ConfigurationError, match="Checklist not found"):
            await IterationController(git_repo, fake_agent.config()).run()

    @pytest.mark.asyncio
    async def test_not_a_repository_is_configuration_error(self, tmp_path, fake_agent):
        workspace = tmp_path / "plain"
        workspace.mkdir()
        (workspace / "TASKS.md").write_text(TWO_ITEMS)
        with pytest.raises(ConfigurationError, match="not a git repository"):
            await IterationController(workspace, fake_agent.config()).run()


@needs_git
class TestPayload:
    @pytest.fixture()
    def controller(self, git_repo, fake_agent):
        text = "---\ntest_command: pytest -q\n---\n\n- [ ] first thing\n"
        commit_files(git_repo, {"TASKS.md": text}, "tasks")
        controller = IterationController(git_repo, fake_agent.config())
        controller.state.init()
        return controller

    def test_test_output_recorded_and_cleared(self, controller):
        failing = ShellExecution("pytest -q tests/", 1, "FAILED test_a")
        controller._record_event(failing, "pytest -q")
        assert controller.state.read_test_output() == "FAILED test_a"
        controller._record_event(ShellExecution("ls", 1, "nope"), "pytest -q")
        assert controller.state.read_test_output() == "FAILED test_a"
        controller._record_event(ShellExecution("pytest -q", 0, "1 passed"), "pytest -q")
        assert controller.state.read_test_output() == ""

    def test_payload_includes_failures_lessons_and_warning(self, controller):
        controller.state.write_test_output("FAILED test_a\n" * 40)
        controller.state.add_lesson("Pin", "Installing", "Use pins", "Iteration 1")
        controller._last_tokens = 75_000

        prompt, model, test_command = controller._build_payload(2, "session-9")
        assert model == "fast-model"
        assert test_command == "pytest -q"
        assert prompt.count("FAILED test_a") == 30
        assert "### Lesson: Pin" in prompt
        assert "## Context Warning" in prompt

        fresh, _model, _cmd = controller._build_payload(3, None)
        assert "## Context Warning" not in fresh

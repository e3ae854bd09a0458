"""Iteration controller.

Drives one workspace through repeated worker sessions until the checklist is
done or something stops it. Each iteration moves through four phases:

* Building: assemble the instruction payload
* Running: launch the worker and feed its output to a SignalParser
* Draining: stop the worker's process group if it is still alive, wait for exit
* Decided: map (signal, checklist state) to the next action

The checklist is the authority on completion. A completion sigil with pending
items is distrusted; an empty checklist without any sigil is accepted.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import logging
import random
import time
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from agloop import git_ops
from agloop.agent import AgentProcess
from agloop.backoff import backoff_delay_ms
from agloop.config import LoopConfig
from agloop.errors import (
    AgloopError,
    ConfigurationError,
    NoActivityError,
    StuckError,
    TransientError,
)
from agloop.events import (
    AgentEvent,
    AssistantText,
    FileRead,
    FileWrite,
    RawOutput,
    SessionStarted,
    ShellExecution,
    decode_line,
)
from agloop.paths import REVIEW_FILE, STATE_DIR_NAME
from agloop.prompts import (
    build_iteration_prompt,
    build_job_prompt,
    build_review_prompt,
    resource_warning_section,
)
from agloop.signals import Signal, SignalLine, SignalParser, review_verdict
from agloop.state import StateDir, attach_state_logs
from agloop.tasks import TaskRecord, TaskStore

log = logging.getLogger(__name__)

CHECKPOINT_MESSAGE = "agloop: checkpoint before loop"
TEST_OUTPUT_LINES = 30
SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

# Terminal signals that stop the worker at once; COMPLETE and GUTTER let it
# finish writing (bounded by the idle timeout).
_STOP_NOW = frozenset({Signal.ROTATE, Signal.DEFER, Signal.TIMEOUT})

_controller_ids = itertools.count(1)


class Phase(enum.Enum):
    BUILDING = "building"
    RUNNING = "running"
    DRAINING = "draining"
    DECIDED = "decided"


class Decision(enum.Enum):
    ROTATE = "rotate"
    RETRY = "retry"
    FAIL = "fail"
    COMPLETE = "complete"
    CONTINUE = "continue"


class LoopStatus(enum.Enum):
    COMPLETE = "complete"
    FAILED_GUTTER = "failed(gutter)"
    FAILED_NO_ACTIVITY = "failed(no-activity)"
    FAILED_REVIEW_EXHAUSTED = "failed(review-exhausted)"
    FAILED_MAX_ITERATIONS = "failed(max-iterations)"

    @property
    def ok(self) -> bool:
        return self is LoopStatus.COMPLETE


@dataclass
class LoopResult:
    status: LoopStatus
    iterations: int
    reason: str = ""
    review_passes: int = 0
    last_signal: Signal = Signal.NONE
    context: str = ""

    @property
    def ok(self) -> bool:
        return self.status.ok

    def exception(self) -> AgloopError | None:
        """The error a failed run corresponds to, or None on success."""
        if self.ok:
            return None
        if self.status is LoopStatus.FAILED_GUTTER:
            return StuckError(self.reason, context=self.context)
        if self.status is LoopStatus.FAILED_NO_ACTIVITY:
            return NoActivityError(self.reason)
        if self.last_signal is Signal.DEFER:
            return TransientError(self.reason)
        return AgloopError(self.reason)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "iterations": self.iterations,
            "reason": self.reason,
            "review_passes": self.review_passes,
        }
        if self.context:
            payload["context"] = self.context
        return payload


@dataclass
class IterationState:
    """Per-controller counters. ``number`` is persisted to ``.iteration``."""

    number: int = 0
    session_id: str | None = None
    reviews: int = 0
    review_attempts: int = 0


@dataclass
class IterationOutcome:
    number: int
    signal: Signal
    decision: Decision
    reason: str = ""
    session_id: str | None = None
    estimated_tokens: int = 0
    exit_code: int | None = None
    signals: list[SignalLine] = field(default_factory=list)


@dataclass
class _WorkerRun:
    exit_code: int | None
    reached_eof: bool
    session_id: str | None


def decide(
    signal: Signal,
    checklist_complete: bool,
    *,
    single_task: bool = False,
    exited_cleanly: bool = True,
) -> Decision:
    """Map an iteration's terminal signal and the checklist state to an action.

    A fully checked checklist wins over every signal, including GUTTER.
    """
    if checklist_complete:
        return Decision.COMPLETE
    if signal in (Signal.NO_ACTIVITY, Signal.GUTTER):
        return Decision.FAIL
    if single_task and (
        signal is Signal.COMPLETE or (signal is Signal.NONE and exited_cleanly)
    ):
        return Decision.COMPLETE
    if signal is Signal.DEFER:
        return Decision.RETRY
    if signal in (Signal.ROTATE, Signal.TIMEOUT):
        return Decision.ROTATE
    if single_task and signal is Signal.NONE:
        # Worker crashed without a signal; start over with a fresh session.
        return Decision.ROTATE
    return Decision.CONTINUE


def describe_event(event: AgentEvent) -> str | None:
    """One activity-log line for an event, or None for events not worth logging."""
    if isinstance(event, FileRead):
        return f"READ {event.path} ({event.size} chars)"
    if isinstance(event, FileWrite):
        return f"WRITE {event.path} ({event.size} chars)"
    if isinstance(event, ShellExecution):
        return f"SHELL {event.command} -> exit {event.exit_code}"
    if isinstance(event, SessionStarted):
        return f"SESSION {event.session_id}"
    return None


class IterationController:
    """Runs iterations for one workspace until a terminal LoopStatus."""

    def __init__(
        self,
        workspace: str | Path,
        config: LoopConfig,
        *,
        state: StateDir | None = None,
        task_store: TaskStore | None = None,
        single_task: TaskRecord | None = None,
        agent_number: int = 1,
        checkpoint: bool = True,
        known_models: Collection[str] | None = None,
        show_spinner: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.config = config
        self.state = state or StateDir.for_workspace(self.workspace)
        self.tasks = task_store or TaskStore(self.workspace / config.task_file)
        self.single_task = single_task
        self.agent_number = agent_number
        self.checkpoint = checkpoint and single_task is None
        self.show_spinner = show_spinner
        self.known_models = set(known_models) if known_models else None
        self._warned_models: set[str] = set()
        self.phase = Phase.DECIDED
        self.iteration = IterationState()
        self.log = logging.getLogger(f"{__name__}.controller{next(_controller_ids)}")
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._last_tokens = 0

    def _set_phase(self, phase: Phase) -> None:
        self.phase = phase
        log.debug("Controller %s -> %s", self.log.name, phase.value)

    # -- entry point --

    async def run(self) -> LoopResult:
        """Run iterations until complete or failed. Never raises for worker failures."""
        self.state.init()
        with attach_state_logs(self.log, self.state):
            result = await self._run_loop()
            level = logging.INFO if result.ok else logging.ERROR
            self.log.log(
                level,
                "Loop finished: %s after %d iteration(s) %s",
                result.status.value,
                result.iterations,
                result.reason,
            )
            return result

    def _prepare(self) -> None:
        if self.single_task is None and not self.tasks.exists():
            raise ConfigurationError(f"Checklist not found: {self.tasks.path}")
        if not git_ops.is_git_repo(self.workspace):
            raise ConfigurationError(f"{self.workspace} is not a git repository")
        if self.checkpoint and git_ops.commit_all(self.workspace, CHECKPOINT_MESSAGE):
            self.log.info("Committed pending changes as a checkpoint")
        self.state.write_checkpoint(git_ops.rev_parse(self.workspace, "HEAD"))

    def _checklist_complete(self) -> bool:
        if self.single_task is not None:
            return False
        return self.tasks.is_complete()

    async def _run_loop(self) -> LoopResult:
        self._prepare()
        self.iteration.number = self.state.read_iteration()
        self.iteration.session_id = None
        ran = 0
        defers = 0
        retrying = False
        last = Signal.NONE

        if self._checklist_complete():
            if not self.config.review_model:
                return LoopResult(LoopStatus.COMPLETE, 0, "checklist already complete")
            self.log.info("Checklist already complete; running the review gate")
            result = await self._review_gate(ran, last)
            if result is not None:
                return result

        while True:
            if not retrying:
                if ran >= self.config.max_iterations:
                    return LoopResult(
                        LoopStatus.FAILED_MAX_ITERATIONS,
                        ran,
                        f"reached {self.config.max_iterations} iterations",
                        review_passes=self.iteration.reviews,
                        last_signal=last,
                    )
                self.iteration.number += 1
                self.state.write_iteration(self.iteration.number)
                ran += 1

            outcome = await self.run_iteration(self.iteration.number, self.iteration.session_id)
            last = outcome.signal
            retrying = outcome.decision is Decision.RETRY

            if outcome.decision is Decision.FAIL:
                status = (
                    LoopStatus.FAILED_GUTTER
                    if outcome.signal is Signal.GUTTER
                    else LoopStatus.FAILED_NO_ACTIVITY
                )
                return LoopResult(
                    status,
                    ran,
                    outcome.reason,
                    review_passes=self.iteration.reviews,
                    last_signal=last,
                    context=self.state.recent_errors(),
                )

            if outcome.decision is Decision.RETRY:
                defers += 1
                if defers >= self.config.max_iterations:
                    return LoopResult(
                        LoopStatus.FAILED_MAX_ITERATIONS,
                        ran,
                        f"transient failures persisted for {defers} attempts: {outcome.reason}",
                        review_passes=self.iteration.reviews,
                        last_signal=last,
                    )
                delay_ms = backoff_delay_ms(
                    defers,
                    self.config.defer_base_seconds,
                    self.config.defer_cap_seconds,
                    self.config.defer_jitter,
                    rng=self._rng,
                )
                self.log.warning(
                    "Transient failure (%s); retrying iteration %d in %.1fs",
                    outcome.reason,
                    self.iteration.number,
                    delay_ms / 1000,
                )
                await self._sleep(delay_ms / 1000)
                self.iteration.session_id = outcome.session_id
                continue
            defers = 0

            if outcome.decision is Decision.COMPLETE:
                if self.single_task is not None or not self.config.review_model:
                    return LoopResult(
                        LoopStatus.COMPLETE, ran, outcome.reason, last_signal=last
                    )
                result = await self._review_gate(ran, last)
                if result is not None:
                    return result
                continue

            if outcome.decision is Decision.ROTATE:
                self.log.info("Rotating to a fresh session (%s)", outcome.signal.value)
                self.iteration.session_id = None
            else:
                self.iteration.session_id = outcome.session_id

    async def _review_gate(self, ran: int, last: Signal) -> LoopResult | None:
        """Review a claimed completion. None means the loop goes on with a fresh session."""
        self.iteration.reviews += 1
        if await self.run_review(self.iteration.number):
            return LoopResult(
                LoopStatus.COMPLETE,
                ran,
                "review passed",
                review_passes=self.iteration.reviews,
                last_signal=last,
            )
        self.iteration.review_attempts += 1
        if self.iteration.review_attempts >= self.config.max_review_attempts:
            return LoopResult(
                LoopStatus.FAILED_REVIEW_EXHAUSTED,
                ran,
                f"review failed {self.iteration.review_attempts} time(s)",
                review_passes=self.iteration.reviews,
                last_signal=last,
            )
        self.state.add_lesson(
            "Review rejected completion",
            "Before declaring the checklist complete",
            f"Address every finding in {STATE_DIR_NAME}/{REVIEW_FILE} first",
            f"Iteration {self.iteration.number}",
        )
        self.iteration.session_id = None
        return None

    # -- one iteration --

    def _model_for(self, task: TaskRecord | None) -> str:
        """Step-level model annotation, else the configured model."""
        if task is None or not task.model:
            return self.config.model
        if self.known_models is not None and task.model not in self.known_models:
            if task.model not in self._warned_models:
                self._warned_models.add(task.model)
                self.log.warning(
                    "Step model %r on %s not found; using %r",
                    task.model,
                    task.id,
                    self.config.model,
                )
            return self.config.model
        return task.model

    def _build_payload(self, number: int, session_id: str | None) -> tuple[str, str, str | None]:
        """Return (prompt, model, test_command)."""
        if self.single_task is not None:
            task = self.single_task
            prompt = build_job_prompt(
                task, agent_number=self.agent_number, task_file=self.config.task_file
            )
            return prompt, self._model_for(task), None

        next_task = self.tasks.next_pending()
        model = self._model_for(next_task)
        test_command = self.tasks.front_matter().get("test_command") or None
        warning = ""
        if session_id and self._last_tokens >= self.config.warn_threshold:
            warning = resource_warning_section(self._last_tokens, self.config.rotate_threshold)
        prompt = build_iteration_prompt(
            iteration=number,
            model=model,
            task_file=self.config.task_file,
            next_task=next_task,
            test_command=test_command,
            test_output=self.state.read_test_output(TEST_OUTPUT_LINES) if test_command else "",
            lessons=self.state.read_lessons(),
            resource_warning=warning,
        )
        return prompt, model, test_command

    def _record_event(self, event: AgentEvent, test_command: str | None) -> None:
        line = describe_event(event)
        if isinstance(event, ShellExecution) and event.exit_code != 0:
            self.log.warning("%s", line)
        elif line:
            self.log.info("%s", line)

        if test_command and isinstance(event, ShellExecution) and test_command in event.command:
            if event.exit_code != 0:
                self.state.write_test_output(event.output)
            else:
                self.state.clear_test_output()

    async def run_iteration(self, number: int, session_id: str | None = None) -> IterationOutcome:
        """Run one worker session and decide what comes next."""
        self._set_phase(Phase.BUILDING)
        prompt, model, test_command = self._build_payload(number, session_id)
        self.log.info(
            "Iteration %d starting (model %s%s)",
            number,
            model,
            f", resuming {session_id}" if session_id else "",
        )
        self.state.append_progress(f"**Iteration {number} started** (model: {model})")

        parser = SignalParser(self.config, clock=self._clock)
        parser.start(prompt_chars=len(prompt))
        run = await self._execute(
            prompt,
            model=model,
            session_id=session_id,
            parser=parser,
            on_event=lambda event: self._record_event(event, test_command),
            stop_on=_STOP_NOW,
        )
        for line in parser.finish():
            self._log_signal(line)

        self._set_phase(Phase.DECIDED)
        signal = parser.outcome()
        exited_cleanly = run.reached_eof and run.exit_code == 0
        decision = decide(
            signal,
            self._checklist_complete(),
            single_task=self.single_task is not None,
            exited_cleanly=exited_cleanly,
        )
        reason = parser.terminal.reason if parser.terminal else ""
        if decision is Decision.COMPLETE and signal is not Signal.COMPLETE:
            if signal in (Signal.GUTTER, Signal.NO_ACTIVITY):
                self.log.warning("Checklist complete despite %s (%s)", signal.value, reason)
            reason = "checklist complete" if self.single_task is None else "worker finished"
        self._last_tokens = parser.estimated_tokens

        done, total = self.tasks.progress() if self.single_task is None else (0, 0)
        self.state.append_progress(
            f"**Iteration {number} ended**: {signal.value} -> {decision.value}"
            + (f" ({reason})" if reason else "")
            + (f"\n- Checklist: {done}/{total}" if total else "")
            + f"\n- Estimated tokens: {parser.estimated_tokens}"
        )
        return IterationOutcome(
            number=number,
            signal=signal,
            decision=decision,
            reason=reason,
            session_id=run.session_id or session_id,
            estimated_tokens=parser.estimated_tokens,
            exit_code=run.exit_code,
            signals=list(parser.emitted),
        )

    def _log_signal(self, line: SignalLine) -> None:
        if line.signal in (Signal.GUTTER, Signal.NO_ACTIVITY, Signal.DEFER, Signal.TIMEOUT):
            self.log.error("%s", line)
        elif line.signal is Signal.WARN:
            self.log.warning("%s", line)
        else:
            self.log.info("%s", line)

    # -- worker supervision --

    async def _execute(
        self,
        prompt: str,
        *,
        model: str,
        session_id: str | None,
        parser: SignalParser,
        on_event: Callable[[AgentEvent], None],
        stop_on: Collection[Signal],
    ) -> _WorkerRun:
        agent = AgentProcess(
            self.config.agent_command,
            cwd=self.workspace,
            env=self.config.extra_env,
            grace_seconds=self.config.grace_seconds,
        )
        stop = asyncio.Event()
        run = _WorkerRun(exit_code=None, reached_eof=False, session_id=None)

        async def pump() -> None:
            async for raw in agent.lines():
                event = decode_line(raw, clock=self._clock)
                if event is None:
                    continue
                if isinstance(event, SessionStarted):
                    run.session_id = event.session_id
                on_event(event)
                for line in parser.feed(event):
                    self._log_signal(line)
                    if line.signal in stop_on:
                        stop.set()
                        return
            run.reached_eof = True
            stop.set()

        async def watch_idle() -> None:
            timeout = self.config.iteration_timeout
            if timeout <= 0:
                return
            interval = min(1.0, timeout / 4)
            while True:
                await asyncio.sleep(interval)
                for line in parser.check_idle():
                    self._log_signal(line)
                    stop.set()
                    return
                if parser.terminal is not None and self._clock() - parser.last_activity > timeout:
                    # Draining after COMPLETE/GUTTER has the same bound.
                    stop.set()
                    return

        await agent.start(prompt, model=model, session_id=session_id)
        self._set_phase(Phase.RUNNING)
        reader = asyncio.create_task(pump())
        reader.add_done_callback(lambda _task: stop.set())
        tasks = [reader, asyncio.create_task(watch_idle())]
        if self.show_spinner:
            tasks.append(asyncio.create_task(self._spin()))
        try:
            await stop.wait()
            self._set_phase(Phase.DRAINING)
            if run.reached_eof:
                try:
                    run.exit_code = await asyncio.wait_for(
                        agent.wait(), timeout=self.config.grace_seconds
                    )
                except TimeoutError:
                    run.exit_code = await agent.terminate()
            else:
                run.exit_code = await agent.terminate()
        finally:
            if agent.running:
                await agent.terminate()
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        return run

    async def _spin(self) -> None:
        """Liveness line on stderr. Purely cosmetic."""
        started = self._clock()
        activity = self.state.file("activity.log")
        try:
            for frame in itertools.cycle(SPINNER_FRAMES):
                elapsed = int(self._clock() - started)
                click.echo(
                    f"\r  {frame} worker running {elapsed // 60:02d}:{elapsed % 60:02d}"
                    f"  (tail -f {activity})",
                    err=True,
                    nl=False,
                )
                await asyncio.sleep(0.1)
        finally:
            click.echo("\r\033[K", err=True, nl=False)

    # -- review gate --

    async def run_review(self, number: int) -> bool:
        """Independent review of everything since the checkpoint. True on pass."""
        review_model = self.config.review_model
        if not review_model:
            raise ConfigurationError("review_model is not set")
        base_ref = self.state.read_checkpoint() or "HEAD~1"
        diff_stat, diff = git_ops.diff_since(self.workspace, base_ref)
        prompt = build_review_prompt(
            iteration=number,
            model=self.config.model,
            review_model=review_model,
            task_file=self.config.task_file,
            base_ref=base_ref,
            diff_stat=diff_stat,
            diff=diff,
        )
        self.log.info("Review pass for iteration %d (model %s)", number, review_model)

        chunks: list[str] = []

        def collect(event: AgentEvent) -> None:
            if isinstance(event, AssistantText):
                chunks.append(event.text)
            elif isinstance(event, RawOutput):
                log.debug("review output: %s", event.text)

        parser = SignalParser(self.config, clock=self._clock)
        parser.start(prompt_chars=len(prompt))
        await self._execute(
            prompt,
            model=review_model,
            session_id=None,
            parser=parser,
            on_event=collect,
            stop_on=(Signal.TIMEOUT,),
        )
        self._set_phase(Phase.DECIDED)

        findings = "".join(chunks)
        verdict = review_verdict(findings)
        self.state.write_review(
            findings or "(reviewer produced no output)",
            iteration=number,
            model=self.config.model,
            review_model=review_model,
        )
        if verdict:
            self.log.info("Review passed")
            return True
        self.log.warning(
            "Review failed%s", "" if verdict is False else " (no verdict marker in output)"
        )
        return False

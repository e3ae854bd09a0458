"""Persisted orchestration state under ``.agloop/``.

Everything here is plain text meant to be committed with the project so a fresh
controller can pick up where the last one stopped. Logs and the progress
narrative are append-only; every write opens the file in append mode and makes
no assumption of exclusive access.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

from agloop.paths import (
    ACTIVITY_LOG_FILE,
    CHECKPOINT_FILE,
    ERRORS_LOG_FILE,
    GUARDRAILS_FILE,
    ITERATION_FILE,
    LAST_TEST_OUTPUT_FILE,
    PROGRESS_FILE,
    REVIEW_FILE,
    state_dir,
)

log = logging.getLogger(__name__)

PROGRESS_TEMPLATE = """\
# Progress Log

> Updated by the agent after significant work.

---

## Session History

"""

GUARDRAILS_TEMPLATE = """\
# Guardrails

> Lessons learned from past failures. Read these before acting.

## Core Lessons

### Lesson: Read Before Writing
- **Trigger**: Before modifying any file
- **Instruction**: Always read the existing file first
- **Added after**: Core principle

### Lesson: Test After Changes
- **Trigger**: After any code change
- **Instruction**: Run tests to verify nothing broke
- **Added after**: Core principle

### Lesson: Commit Checkpoints
- **Trigger**: Before risky changes
- **Instruction**: Commit current working state first
- **Added after**: Core principle

---

## Learned Lessons

"""

ERRORS_TEMPLATE = """\
# Error Log

> Failures detected while watching the worker. Use them to update guardrails.

"""

ACTIVITY_TEMPLATE = """\
# Activity Log

> Tool calls and controller decisions, one line each.

"""

_TEMPLATES = {
    PROGRESS_FILE: PROGRESS_TEMPLATE,
    GUARDRAILS_FILE: GUARDRAILS_TEMPLATE,
    ERRORS_LOG_FILE: ERRORS_TEMPLATE,
    ACTIVITY_LOG_FILE: ACTIVITY_TEMPLATE,
}


def _append(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(text)


class StateDir:
    """Accessors for one state directory (a workspace's ``.agloop/`` or a job's)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def for_workspace(cls, workspace: str | Path) -> StateDir:
        return cls(state_dir(workspace))

    def file(self, name: str) -> Path:
        return self.path / name

    def init(self) -> list[str]:
        """Create missing state files from templates. Returns the names created."""
        self.path.mkdir(parents=True, exist_ok=True)
        created: list[str] = []
        for name, template in _TEMPLATES.items():
            target = self.file(name)
            if not target.exists():
                target.write_text(template, encoding="utf-8")
                created.append(name)
        if created:
            log.debug("Initialized %s in %s", ", ".join(created), self.path)
        return created

    # -- iteration counter --

    def read_iteration(self) -> int:
        try:
            raw = self.file(ITERATION_FILE).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        try:
            return max(int(raw), 0)
        except ValueError:
            log.warning("Ignoring corrupt iteration counter %r", raw)
            return 0

    def write_iteration(self, number: int) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self.file(ITERATION_FILE).write_text(f"{number}\n", encoding="utf-8")

    # -- checkpoint --

    def read_checkpoint(self) -> str | None:
        try:
            value = self.file(CHECKPOINT_FILE).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def write_checkpoint(self, sha: str) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self.file(CHECKPOINT_FILE).write_text(f"{sha}\n", encoding="utf-8")

    # -- test output --

    def read_test_output(self, max_lines: int = 30) -> str:
        try:
            text = self.file(LAST_TEST_OUTPUT_FILE).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        return "\n".join(text.splitlines()[:max_lines])

    def write_test_output(self, output: str) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self.file(LAST_TEST_OUTPUT_FILE).write_text(output, encoding="utf-8")

    def clear_test_output(self) -> None:
        self.file(LAST_TEST_OUTPUT_FILE).unlink(missing_ok=True)

    # -- narrative files --

    def append_progress(self, text: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        _append(self.file(PROGRESS_FILE), f"### {stamp}\n{text.rstrip()}\n\n")

    def read_lessons(self) -> str:
        try:
            return self.file(GUARDRAILS_FILE).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def add_lesson(self, name: str, trigger: str, instruction: str, added_after: str) -> None:
        _append(
            self.file(GUARDRAILS_FILE),
            f"### Lesson: {name}\n"
            f"- **Trigger**: {trigger}\n"
            f"- **Instruction**: {instruction}\n"
            f"- **Added after**: {added_after}\n\n",
        )

    def recent_errors(self, max_lines: int = 20) -> str:
        try:
            lines = self.file(ERRORS_LOG_FILE).read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return ""
        entries = [line for line in lines if line.startswith("[")]
        return "\n".join(entries[-max_lines:])

    def write_review(self, findings: str, *, iteration: int, model: str, review_model: str) -> Path:
        """Overwrite ``review.md`` with this pass's findings."""
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        header = (
            "# Review\n\n"
            f"- Iteration: {iteration}\n"
            f"- Execution model: {model}\n"
            f"- Review model: {review_model}\n"
            f"- Reviewed at: {stamp}\n\n"
        )
        path = self.file(REVIEW_FILE)
        self.path.mkdir(parents=True, exist_ok=True)
        path.write_text(header + findings.rstrip() + "\n", encoding="utf-8")
        return path


class StateFileHandler(logging.Handler):
    """Logging handler that appends ``[HH:MM:SS] LEVEL message`` lines to a state file."""

    def __init__(self, path: str | Path, *, level: int = logging.NOTSET) -> None:
        super().__init__(level=level)
        self.path = Path(path)
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
            _append(self.path, f"[{stamp}] {record.levelname} {self.format(record)}\n")
        except Exception:
            self.handleError(record)


class ActivityLogHandler(StateFileHandler):
    """Everything at INFO and above goes to ``activity.log``."""

    def __init__(self, state: StateDir) -> None:
        super().__init__(state.file(ACTIVITY_LOG_FILE), level=logging.INFO)


class ErrorLogHandler(StateFileHandler):
    """Warnings and failures go to ``errors.log``."""

    def __init__(self, state: StateDir) -> None:
        super().__init__(state.file(ERRORS_LOG_FILE), level=logging.WARNING)


@contextlib.contextmanager
def attach_state_logs(logger: logging.Logger, state: StateDir) -> Iterator[logging.Logger]:
    """Route ``logger``'s records into the state directory's logs while active."""
    handlers: list[logging.Handler] = [ActivityLogHandler(state), ErrorLogHandler(state)]
    previous_level = logger.level
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    for handler in handlers:
        logger.addHandler(handler)
    try:
        yield logger
    finally:
        for handler in handlers:
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(previous_level)

"""Error taxonomy shared by the controller, scheduler, and CLI.

Git helpers keep raising RuntimeError (MergeConflict is one), so they stay usable
from both the CLI and the scheduler without importing click.
"""

from __future__ import annotations


class AgloopError(Exception):
    """Base class for agloop failures that the CLI reports as errors."""


class ConfigurationError(AgloopError):
    """Invalid thresholds or a missing required external tool. Fatal, never retried."""


class TransientError(AgloopError):
    """Rate limit, network, or server failure. Recovered by backoff + DEFER."""


class StuckError(AgloopError):
    """The worker is in the gutter. Carries the recent error-log context."""

    def __init__(self, message: str, *, context: str = "") -> None:
        super().__init__(message)
        self.context = context


class NoActivityError(AgloopError):
    """An iteration finished with zero tool calls."""


class InvalidTaskId(AgloopError):
    """No checkbox item exists at the position a task id names."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"No checklist item for task id {task_id!r}")
        self.task_id = task_id


class MergeConflict(RuntimeError):
    """A branch could not be merged cleanly; the target was left untouched."""

    def __init__(self, branch: str, target: str, detail: str = "") -> None:
        message = f"Merge conflict merging {branch} into {target}"
        if detail:
            message = f"{message}:\n{detail}"
        super().__init__(message)
        self.branch = branch
        self.target = target
        self.detail = detail

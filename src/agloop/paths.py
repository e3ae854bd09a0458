"""Canonical filesystem paths for agloop state inside a workspace."""

from __future__ import annotations

from pathlib import Path

STATE_DIR_NAME = ".agloop"
WORKTREE_DIR_NAME = ".agloop-worktrees"
CONFIG_FILE_NAME = "config.toml"

ITERATION_FILE = ".iteration"
CHECKPOINT_FILE = "last_checkpoint"
LAST_TEST_OUTPUT_FILE = ".last_test_output"
TASK_CACHE_FILE = "tasks.json"
PROGRESS_FILE = "progress.md"
GUARDRAILS_FILE = "guardrails.md"
ACTIVITY_LOG_FILE = "activity.log"
ERRORS_LOG_FILE = "errors.log"
REVIEW_FILE = "review.md"
JOB_LOG_DIR = "jobs"


def state_dir(workspace: str | Path) -> Path:
    return Path(workspace) / STATE_DIR_NAME


def worktree_root(workspace: str | Path) -> Path:
    return Path(workspace) / WORKTREE_DIR_NAME

"""Instruction payloads handed to the worker."""

from __future__ import annotations

from agloop.paths import (
    ERRORS_LOG_FILE,
    GUARDRAILS_FILE,
    PROGRESS_FILE,
    REVIEW_FILE,
    STATE_DIR_NAME,
)
from agloop.signals import COMPLETE_SIGIL, GUTTER_SIGIL, REVIEW_FAIL_SIGIL, REVIEW_PASS_SIGIL
from agloop.tasks import TaskRecord

MAX_REVIEW_DIFF_CHARS = 18_000

GIT_PROTOCOL_SECTION = """\
## Git Protocol (Critical)

State lives in git, not in your memory. Commit early and often:

1. After completing each item, commit with a message that says what you did:
   `git add -A && git commit -m 'agloop: add config loader'`
   Never use placeholders like '<description>'.
2. After any significant change (even partial), commit.
3. Before a risky refactor, commit the current state as a checkpoint.

If you get rotated, the next session continues from your last commit."""

WORKING_DIRECTORY_SECTION = """\
## Working Directory (Critical)

You are already inside a git repository. Work here, not in a subdirectory:

- Do NOT run `git init`.
- Do NOT run scaffolding commands that create nested project directories.
- If you must scaffold, target the current directory (`.`) and skip git setup."""

ROTATION_SECTION = """\
## Context Rotation

You may be told that context is running low. When that happens:
1. Finish the current file edit.
2. Commit your changes.
3. Update the progress log with what you finished and what is next.
A fresh session will continue from your commits."""

REVIEW_OUTPUT_SECTION = f"""\
Output format requirements:
- Start with one marker line:
  - `{REVIEW_PASS_SIGIL}` if the work is ready to ship
  - `{REVIEW_FAIL_SIGIL}` if more work is needed
- Then provide:
  - `## Findings` with bullet points (or "No blocking issues.")
  - `## Recommended next actions` with concrete steps

Be strict about correctness and tests. Do not rewrite code; review only."""


def _state_path(name: str) -> str:
    return f"{STATE_DIR_NAME}/{name}"


def _append_if_present(parts: list[str], section: str) -> None:
    if section:
        parts.append(section)


def resource_warning_section(estimated_tokens: int, rotate_threshold: int) -> str:
    return (
        "## Context Warning\n\n"
        f"The previous session used about {estimated_tokens} of {rotate_threshold} "
        "tokens before rotation. Wrap up the current item, commit, and record your "
        "progress before starting anything large."
    )


def failing_tests_section(test_command: str, output: str) -> str:
    if not output:
        return ""
    return (
        "## Last Test Failure\n\n"
        f"The last run of `{test_command}` failed. First lines of its output:\n\n"
        f"```\n{output}\n```\n\n"
        "Fix these failures before moving on."
    )


def build_iteration_prompt(
    *,
    iteration: int,
    model: str,
    task_file: str,
    next_task: TaskRecord | None = None,
    test_command: str | None = None,
    test_output: str = "",
    lessons: str = "",
    resource_warning: str = "",
) -> str:
    """Payload for one sequential-mode iteration."""
    parts = [
        f"# Iteration {iteration}\nModel: {model}\n",
        "You are an autonomous development agent working through a checklist.\n",
        "## First: Read State Files\n\n"
        "Before doing anything:\n"
        f"1. Read `{task_file}` - the task and its checklist\n"
        f"2. Read `{_state_path(GUARDRAILS_FILE)}` - lessons from past failures (follow them)\n"
        f"3. Read `{_state_path(PROGRESS_FILE)}` - what has been accomplished\n"
        f"4. Read `{_state_path(ERRORS_LOG_FILE)}` - recent failures to avoid\n"
        f"5. Read `{_state_path(REVIEW_FILE)}` - reviewer feedback (if present)\n",
        WORKING_DIRECTORY_SECTION + "\n",
        GIT_PROTOCOL_SECTION + "\n",
    ]
    if next_task is not None:
        parts.append(f"## Next Item\n\n{next_task.description}\n")

    test_hint = f"`{test_command}`" if test_command else f"the test_command in `{task_file}`"
    parts.append(
        "## Task Execution\n\n"
        f"1. Work on the next unchecked item in `{task_file}` (look for `[ ]`)\n"
        f"2. Run tests after changes ({test_hint})\n"
        f"3. Mark finished items: edit `{task_file}` and change `[ ]` to `[x]`\n"
        "   This is how progress is tracked. You MUST update the file.\n"
        f"4. Append what you accomplished to `{_state_path(PROGRESS_FILE)}`\n"
        f"5. When ALL items show `[x]`: output `{COMPLETE_SIGIL}`\n"
        f"6. If stuck 3+ times on the same issue: output `{GUTTER_SIGIL}`\n"
    )
    parts.append(
        "## Learning from Failures\n\n"
        "When something fails, find the root cause and add a lesson to "
        f"`{_state_path(GUARDRAILS_FILE)}`:\n\n"
        "```\n"
        "### Lesson: [Descriptive Name]\n"
        "- **Trigger**: When this situation occurs\n"
        "- **Instruction**: What to do instead\n"
        f"- **Added after**: Iteration {iteration} - what happened\n"
        "```\n"
    )
    if lessons:
        parts.append(f"## Current Lessons\n\n{lessons.strip()}\n")
    if test_command:
        _append_if_present(parts, failing_tests_section(test_command, test_output))
    _append_if_present(parts, resource_warning)
    parts.append(ROTATION_SECTION + "\n")
    parts.append("Begin by reading the state files.")
    return "\n".join(parts)


def truncate_diff(diff: str, max_chars: int = MAX_REVIEW_DIFF_CHARS) -> str:
    if len(diff) <= max_chars:
        return diff
    return f"{diff[:max_chars]}\n\n[TRUNCATED: diff exceeded {max_chars} chars]"


def build_review_prompt(
    *,
    iteration: int,
    model: str,
    review_model: str,
    task_file: str,
    base_ref: str,
    diff_stat: str,
    diff: str,
) -> str:
    """Payload for the independent review pass."""
    parts = [
        f"# Review of Iteration {iteration}\n"
        f"Execution model: {model}\n"
        f"Review model: {review_model}\n",
        "You are the independent reviewer for a finished checklist.\n",
        "Review goals:\n"
        f"1. Verify the changes satisfy every item in `{task_file}`.\n"
        "2. Identify correctness, safety, testing, or maintainability issues.\n"
        "3. Flag critical misses, regressions, or unchecked assumptions.\n"
        "4. Keep feedback concise and actionable.\n",
        "Required files to read:\n"
        f"- `{task_file}`\n"
        "- Relevant changed files from the diff\n"
        f"- `{_state_path(PROGRESS_FILE)}`\n"
        f"- `{_state_path(GUARDRAILS_FILE)}`\n",
        f"Git diff base: {base_ref}\n",
        f"## Diff summary\n{diff_stat.rstrip()}\n",
        f"## Diff content\n```diff\n{truncate_diff(diff).rstrip()}\n```\n",
        REVIEW_OUTPUT_SECTION,
    ]
    return "\n".join(parts)


def build_job_prompt(task: TaskRecord, *, agent_number: int, task_file: str) -> str:
    """Payload for one parallel-mode job: exactly one checklist item."""
    parts = [
        "# Parallel Agent Task\n",
        f"You are agent {agent_number}, working on one task in isolation.\n",
        f"## Your Task\n{task.description}\n",
        "## Instructions\n"
        "1. Implement this specific task completely\n"
        "2. Write tests if appropriate\n"
        "3. Commit your changes with a descriptive message like: agloop: [task summary]\n"
        f"4. When the task is done, output `{COMPLETE_SIGIL}`\n"
        f"5. If you are stuck 3+ times on the same issue, output `{GUTTER_SIGIL}`\n",
        "## Important\n"
        "- You are in an isolated worktree; your changes do not affect other agents\n"
        "- Focus ONLY on your assigned task\n"
        f"- Do NOT modify or commit `{task_file}`; the orchestrator updates it\n"
        "- Commit frequently so your work is saved\n",
        "Begin by reading any relevant files, then implement the task.",
    ]
    return "\n".join(parts)

"""Prerequisite and resource checks run before a loop starts."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Literal, TypedDict

from agloop import git_ops
from agloop.backoff import retry_command
from agloop.config import LoopConfig
from agloop.errors import ConfigurationError
from agloop.tasks import TaskStore

log = logging.getLogger(__name__)

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}

MEMINFO_PATH = Path("/proc/meminfo")


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class _DoctorReportRequired(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


class DoctorReport(_DoctorReportRequired, total=False):
    models: list[str]


def run_doctor(
    workspace: str | Path,
    config: LoopConfig,
    *,
    check_models: bool = False,
) -> DoctorReport:
    """Run every prerequisite check for ``workspace``."""
    workspace = Path(workspace)
    checks = [
        _check_task_file(workspace, config),
        _check_agent(config),
        _check_git(workspace),
        _check_disk(workspace, config),
        _check_memory(config),
    ]
    models: list[str] | None = None
    if check_models and checks[1]["status"] == "pass":
        models = list_models(config)
        checks.append(_check_models(workspace, config, models))

    report: DoctorReport = {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "checks": checks,
    }
    if models:
        report["models"] = models
    return report


def require_prerequisites(report: DoctorReport) -> None:
    """Raise ConfigurationError naming every failed check."""
    failed = [check for check in report["checks"] if check["status"] == "fail"]
    if failed:
        details = "; ".join(f"{check['name']}: {check['summary']}" for check in failed)
        raise ConfigurationError(f"Prerequisite checks failed: {details}")
    for check in report["checks"]:
        if check["status"] == "warning":
            log.warning("%s: %s", check["name"], check["summary"])


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _single(name: str, status: Status, summary: str, **details: object) -> CheckReport:
    finding: CheckFinding = {"status": status, "message": summary}
    if details:
        finding["details"] = dict(details)
    return {"name": name, "status": status, "summary": summary, "findings": [finding]}


def _check_task_file(workspace: Path, config: LoopConfig) -> CheckReport:
    store = TaskStore(workspace / config.task_file)
    if not store.exists():
        return _single(
            "task_file",
            "fail",
            f"No {config.task_file} found in {workspace}",
            path=str(store.path),
        )
    done, total = store.progress()
    if total == 0:
        return _single(
            "task_file",
            "warning",
            f"{config.task_file} has no checklist items",
            path=str(store.path),
        )
    return _single(
        "task_file",
        "pass",
        f"{config.task_file}: {done}/{total} items complete",
        path=str(store.path),
        done=done,
        total=total,
    )


def _check_agent(config: LoopConfig) -> CheckReport:
    executable = config.agent_command[0]
    resolved = shutil.which(executable)
    if resolved is None:
        return _single("agent", "fail", f"{executable} not found on PATH", executable=executable)
    return _single("agent", "pass", f"{executable}: {resolved}", executable=resolved)


def _check_git(workspace: Path) -> CheckReport:
    if shutil.which("git") is None:
        return _single("git", "fail", "git not found on PATH")
    if not git_ops.is_git_repo(workspace):
        return _single("git", "fail", f"{workspace} is not a git repository")
    branch = git_ops.current_branch(workspace)
    return _single(
        "git",
        "pass",
        f"git repository on {branch or 'detached HEAD'}",
        branch=branch,
        main_worktree=git_ops.is_main_worktree(workspace),
    )


def _check_disk(workspace: Path, config: LoopConfig) -> CheckReport:
    target = workspace if workspace.exists() else workspace.parent
    try:
        usage = shutil.disk_usage(target)
    except OSError as exc:
        return _single("disk", "warning", f"Cannot read disk usage: {exc}")
    free_mb = usage.free // (1024 * 1024)
    if free_mb < config.min_disk_mb:
        return _single(
            "disk",
            "fail",
            f"Not enough free disk space ({free_mb}MB available, need {config.min_disk_mb}MB+)",
            free_mb=free_mb,
        )
    return _single("disk", "pass", f"{free_mb}MB free", free_mb=free_mb)


def available_memory_mb(meminfo: Path = MEMINFO_PATH) -> int | None:
    """MemAvailable from /proc/meminfo in MB, or None when it cannot be read."""
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemAvailable:"):
            parts = line.split()
            try:
                return int(parts[1]) // 1024
            except (IndexError, ValueError):
                return None
    return None


def _check_memory(config: LoopConfig) -> CheckReport:
    available = available_memory_mb()
    if available is None:
        return _single("memory", "pass", "Available memory unknown; skipped")
    if available < config.min_memory_mb:
        return _single(
            "memory",
            "warning",
            f"Low available memory ({available}MB). Recommended {config.min_memory_mb}MB+",
            available_mb=available,
        )
    return _single("memory", "pass", f"{available}MB available", available_mb=available)


def list_models(config: LoopConfig, *, attempts: int = 3) -> list[str]:
    """Model ids reported by ``<agent> --list-models``; empty when unavailable."""
    result = retry_command(
        [config.agent_command[0], "--list-models"],
        max_attempts=attempts,
        base=1.0,
        cap=4.0,
        jitter=config.defer_jitter,
    )
    if result.returncode != 0:
        log.warning("Could not list models: %s", (result.stderr or result.stdout).strip())
        return []
    return parse_model_list(result.stdout)


def parse_model_list(output: str) -> list[str]:
    """Accepts ``id`` or ``id - Display Name`` lines."""
    models: list[str] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.endswith(":"):
            continue
        models.append(line.split()[0])
    return models


def _check_models(workspace: Path, config: LoopConfig, models: list[str]) -> CheckReport:
    if not models:
        return _single("models", "warning", "Model list unavailable; model names not validated")
    known = set(models)
    findings: list[CheckFinding] = []
    for label, model in (("model", config.model), ("review_model", config.review_model)):
        if not model:
            continue
        if model in known:
            findings.append({"status": "pass", "message": f"{label} '{model}' available"})
        else:
            findings.append({"status": "fail", "message": f"{label} '{model}' not found"})
    for model in TaskStore(workspace / config.task_file).models():
        if model not in known:
            findings.append(
                {
                    "status": "warning",
                    "message": f"Step model '{model}' not found; those tasks use '{config.model}'",
                }
            )
    status = _worst_status([finding["status"] for finding in findings])
    failing = [f["message"] for f in findings if f["status"] != "pass"]
    summary = "; ".join(failing) if failing else f"{len(findings)} model(s) validated"
    return {"name": "models", "status": status, "summary": summary, "findings": findings}

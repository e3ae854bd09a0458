"""Git operations shared by the CLI, the controller, and the scheduler.

Functions raise RuntimeError on failure (MergeConflict for a conflicting merge),
never click exceptions, so they work from every caller. Cleanup helpers are
best-effort: they log a warning and return False instead of raising.
"""

from __future__ import annotations

import contextlib
import logging
import re
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path

from agloop.errors import MergeConflict
from agloop.paths import WORKTREE_DIR_NAME, worktree_root

log = logging.getLogger(__name__)

BRANCH_PREFIX = "agloop"


def _git(cwd: str | Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            check=check,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise RuntimeError(f"git {args[0]} failed: {detail}") from None


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a task description into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def is_git_repo(path: str | Path) -> bool:
    result = _git(path, "rev-parse", "--is-inside-work-tree", check=False)
    return result.returncode == 0 and result.stdout.strip() == "true"


def is_main_worktree(path: str | Path) -> bool:
    """True for a repository's primary checkout (``.git`` is a directory)."""
    return (Path(path) / ".git").is_dir()


def current_branch(repo: str | Path) -> str | None:
    """Checked-out branch name, or None on a detached HEAD."""
    result = _git(repo, "symbolic-ref", "--quiet", "--short", "HEAD", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def checkout_branch(repo: str | Path, branch: str) -> bool:
    """Switch to ``branch``, creating it from HEAD if missing. Returns True if created."""
    if current_branch(repo) == branch:
        return False
    if branch_exists(repo, branch):
        _git(repo, "checkout", branch)
        return False
    _git(repo, "checkout", "-b", branch)
    return True


def rev_parse(repo: str | Path, ref: str = "HEAD") -> str:
    try:
        return _git(repo, "rev-parse", "--verify", f"{ref}^{{commit}}").stdout.strip()
    except RuntimeError:
        raise RuntimeError(f"Cannot resolve '{ref}' in {repo}") from None


def has_uncommitted_changes(path: str | Path) -> bool:
    """Tracked modifications or untracked files in a working tree."""
    result = _git(path, "status", "--porcelain", check=False)
    if result.returncode != 0:
        return False
    return bool(result.stdout.strip())


def commit_all(repo: str | Path, message: str) -> bool:
    """Stage everything and commit. Returns False when there was nothing to commit."""
    if not has_uncommitted_changes(repo):
        return False
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", message, "--no-verify")
    return True


def commits_ahead(repo: str | Path, base: str, branch: str = "HEAD") -> int:
    result = _git(repo, "rev-list", "--count", f"{base}..{branch}", check=False)
    if result.returncode != 0:
        log.warning("Cannot count commits %s..%s: %s", base, branch, result.stderr.strip())
        return 0
    try:
        return int(result.stdout.strip() or "0")
    except ValueError:
        return 0


def diff_since(repo: str | Path, base_ref: str) -> tuple[str, str]:
    """Return (``--stat`` summary, full diff) for ``base_ref..HEAD``."""
    stat = _git(repo, "diff", "--no-color", "--stat", f"{base_ref}..HEAD", check=False)
    diff = _git(repo, "diff", "--no-color", f"{base_ref}..HEAD", check=False)
    return stat.stdout, diff.stdout


def is_tracked(repo: str | Path, relpath: str) -> bool:
    result = _git(repo, "ls-files", "--error-unmatch", "--", relpath, check=False)
    return result.returncode == 0


def restore_path(repo: str | Path, relpath: str) -> None:
    """Put one path back to its committed state (or remove it if untracked)."""
    if is_tracked(repo, relpath):
        _git(repo, "checkout", "HEAD", "--", relpath)
    else:
        (Path(repo) / relpath).unlink(missing_ok=True)


def create_worktree(
    repo: str | Path,
    agent_number: int,
    description: str,
    base_branch: str,
) -> tuple[str, Path]:
    """Create an isolated worktree on a fresh branch off ``base_branch``.

    Returns (branch, worktree path). Raises RuntimeError on failure.
    """
    uid = uuid.uuid4().hex[:8]
    name = f"agent-{agent_number}-{uid}"
    slug = slugify(description) or "task"
    branch = f"{BRANCH_PREFIX}/{name}-{slug}"
    worktree_dir = worktree_root(repo) / name

    worktree_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        _git(repo, "worktree", "add", "-b", branch, str(worktree_dir), base_branch)
    except RuntimeError as e:
        raise RuntimeError(f"Failed to create worktree: {e}") from None

    # Clean index so a broad `git add` in the worker sweeps up nothing stale.
    _git(worktree_dir, "reset", "-q", "HEAD", check=False)
    log.debug("Created worktree %s on %s", worktree_dir, branch)
    return branch, worktree_dir


def remove_worktree(repo: str | Path, worktree_path: str | Path, *, force: bool = False) -> bool:
    """Remove a worktree. Best-effort, logs warnings on failure."""
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    result = _git(repo, *args, str(worktree_path), check=False)
    # Prune stale records left by manually deleted directories
    _git(repo, "worktree", "prune", check=False)
    if result.returncode != 0:
        log.warning("Failed to remove worktree %s: %s", worktree_path, result.stderr.strip())
        return False
    return True


def delete_branch(repo: str | Path, branch: str) -> bool:
    """Delete a local branch. Best-effort, logs warnings on failure."""
    result = _git(repo, "branch", "-D", branch, check=False)
    if result.returncode != 0:
        log.warning("Failed to delete branch %s: %s", branch, result.stderr.strip())
        return False
    return True


def branch_exists(repo: str | Path, branch: str) -> bool:
    result = _git(repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
    return result.returncode == 0


def list_worktrees(repo: str | Path) -> list[Path]:
    """Paths of every registered worktree under the agloop worktree directory."""
    result = _git(repo, "worktree", "list", "--porcelain", check=False)
    if result.returncode != 0:
        return []
    root = worktree_root(repo).resolve()
    paths: list[Path] = []
    for line in result.stdout.splitlines():
        if not line.startswith("worktree "):
            continue
        path = Path(line[len("worktree ") :]).resolve()
        if path.parent == root:
            paths.append(path)
    return paths


def cleanup_worktrees(repo: str | Path) -> list[str]:
    """Force-remove every agloop worktree, then prune. Returns the removed paths."""
    removed: list[str] = []
    for path in list_worktrees(repo):
        if remove_worktree(repo, path, force=True):
            removed.append(str(path))
    _git(repo, "worktree", "prune", check=False)
    root = worktree_root(repo)
    if root.is_dir() and not any(root.iterdir()):
        root.rmdir()
    return removed


def _sync_checkout(repo: str | Path, target: str, base_sha: str, new_sha: str) -> None:
    """Bring the main checkout's files in line with an advanced target ref.

    Only the paths the merge changed are touched, and only when the checkout is
    on ``target`` and none of those paths carries local edits.
    """
    if current_branch(repo) != target:
        return
    changed = _git(repo, "diff", "--name-status", "--no-renames", base_sha, new_sha, check=False)
    if changed.returncode != 0:
        log.warning("Cannot list merged files: %s", changed.stderr.strip())
        return

    deleted: list[str] = []
    updated: list[str] = []
    for line in changed.stdout.splitlines():
        status, _, path = line.partition("\t")
        if not path:
            continue
        (deleted if status.startswith("D") else updated).append(path)
    paths = deleted + updated
    if not paths:
        return

    local = _git(repo, "diff", "--quiet", base_sha, "--", *paths, check=False)
    untracked = _git(
        repo, "ls-files", "--others", "--exclude-standard", "--", *updated, check=False
    ).stdout.strip()
    if local.returncode != 0 or untracked:
        log.warning(
            "Not syncing working tree after merge into %s: merged files have local edits",
            target,
        )
        return

    for path in deleted:
        _git(repo, "rm", "-q", "--cached", "--ignore-unmatch", "--", path, check=False)
        (Path(repo) / path).unlink(missing_ok=True)
    if updated:
        result = _git(repo, "checkout", new_sha, "--", *updated, check=False)
        if result.returncode != 0:
            log.warning("Failed to sync working tree after merge: %s", result.stderr.strip())


def merge_branch(
    repo: str | Path,
    branch: str,
    target: str,
    message: str | None = None,
) -> str:
    """Merge ``branch`` into ``target`` via a temporary detached worktree.

    Returns the merge commit SHA. On conflict the temporary merge is aborted,
    ``target`` is left untouched, and MergeConflict is raised. Other git
    failures raise RuntimeError.
    """
    merge_msg = message or f"Merge {branch} into {target}"
    base_sha = rev_parse(repo, target)

    if commits_ahead(repo, target, branch) == 0:
        raise RuntimeError(f"Branch '{branch}' has no commits ahead of {target}")

    tmp = tempfile.mkdtemp(prefix="agloop-merge-")
    try:
        try:
            _git(repo, "worktree", "add", "--detach", tmp, base_sha)
        except RuntimeError as e:
            raise RuntimeError(f"Failed to create merge worktree: {e}") from None

        result = _git(tmp, "merge", "--no-ff", "--no-edit", branch, "-m", merge_msg, check=False)
        if result.returncode != 0:
            conflicted = _git(tmp, "diff", "--name-only", "--diff-filter=U", check=False)
            _git(tmp, "merge", "--abort", check=False)
            detail = (conflicted.stdout or result.stdout or result.stderr).strip()
            raise MergeConflict(branch, target, detail)

        new_sha = rev_parse(tmp, "HEAD")
        try:
            _git(repo, "update-ref", f"refs/heads/{target}", new_sha, base_sha)
        except RuntimeError as e:
            raise RuntimeError(f"Failed to update '{target}' ref: {e}") from None

        _sync_checkout(repo, target, base_sha, new_sha)
    finally:
        with contextlib.suppress(RuntimeError):
            _git(repo, "worktree", "remove", "--force", tmp)
        shutil.rmtree(tmp, ignore_errors=True)
        _git(repo, "worktree", "prune", check=False)

    log.info("Merged %s into %s (%s)", branch, target, new_sha[:8])
    return new_sha


def ensure_worktree_ignored(repo: str | Path) -> bool:
    """Add the worktree directory to ``.gitignore``. Returns True if the file changed."""
    gitignore = Path(repo) / ".gitignore"
    entry = f"{WORKTREE_DIR_NAME}/"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if entry in existing.splitlines() or WORKTREE_DIR_NAME in existing.splitlines():
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with open(gitignore, "a", encoding="utf-8") as handle:
        handle.write(f"{prefix}{entry}\n")
    return True

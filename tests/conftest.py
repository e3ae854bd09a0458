"""Shared test fixtures: throwaway git repositories and a scriptable fake worker."""

import json
import os
import stat
import subprocess
import sys
from pathlib import Path

import pytest

from agloop.config import LoopConfig

FAKE_AGENT_SOURCE = Path(__file__).with_name("_fake_agent.py")


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "agloop-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "agloop-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "agloop-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "agloop-tests@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for name in list(os.environ):
        if name.startswith("AGLOOP_"):
            monkeypatch.delenv(name)


def git(cwd, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def commit_files(repo: Path, files: dict[str, str], message: str = "update") -> str:
    for name, content in files.items():
        path = repo / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    git(repo, "add", "--", *files)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture()
def git_repo(tmp_path) -> Path:
    """A repository on ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    commit_files(repo, {"README.md": "# project\n"}, "init")
    return repo


class FakeAgent:
    """Handle on the fake worker: its command line, env, and invocation log."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.path = root / "fake-agent"
        self.state = root / "agent-state"
        self.log = root / "invocations.jsonl"
        source = FAKE_AGENT_SOURCE.read_text()
        _, _, body = source.partition("\n")
        self.path.write_text(f"#!{sys.executable}\n{body}")
        self.path.chmod(self.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        self.state.mkdir()
        self.env: dict[str, str] = {
            "FAKE_AGENT_STATE": str(self.state),
            "FAKE_AGENT_LOG": str(self.log),
        }

    @property
    def command(self) -> tuple[str, ...]:
        return (str(self.path),)

    def config(self, **overrides) -> LoopConfig:
        values = {
            "agent_command": self.command,
            "model": "fast-model",
            "defer_jitter": False,
            "defer_base_seconds": 0.0,
            "defer_cap_seconds": 0.0,
            "grace_seconds": 1.0,
            "min_disk_mb": 0,
            "extra_env": dict(self.env),
        }
        values.update(overrides)
        return LoopConfig(**values).validate()

    def invocations(self) -> list[dict]:
        if not self.log.exists():
            return []
        return [json.loads(line) for line in self.log.read_text().splitlines() if line]


@pytest.fixture()
def fake_agent(tmp_path) -> FakeAgent:
    root = tmp_path / "agent"
    root.mkdir()
    return FakeAgent(root)

"""Worker subprocess supervision.

The worker runs in its own session (and so its own process group) so that
cancelling it takes down everything it spawned: SIGTERM to the group, a grace
period, then SIGKILL, then wait for the real exit.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path

log = logging.getLogger(__name__)

STREAM_LIMIT = 10 * 1024 * 1024  # single stream-json records can be large


def build_argv(
    command: Sequence[str],
    prompt: str,
    *,
    model: str,
    session_id: str | None = None,
) -> list[str]:
    argv = [*command, "--model", model]
    if session_id:
        argv += ["--resume", session_id]
    argv.append(prompt)
    return argv


class AgentProcess:
    """One running worker. Output is stdout with stderr merged in."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | Path,
        env: Mapping[str, str] | None = None,
        grace_seconds: float = 2.0,
    ) -> None:
        self.command = tuple(command)
        self.cwd = Path(cwd)
        self.env = env
        self.grace_seconds = grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._pgid: int | None = None

    async def start(self, prompt: str, *, model: str, session_id: str | None = None) -> None:
        if self._process is not None:
            raise RuntimeError("Worker already started")
        argv = build_argv(self.command, prompt, model=model, session_id=session_id)
        env = None
        if self.env:
            env = {**os.environ, **self.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except FileNotFoundError:
            raise RuntimeError(f"Worker executable not found: {argv[0]}") from None
        try:
            self._pgid = os.getpgid(self._process.pid)
        except ProcessLookupError:
            self._pgid = None
        log.debug(
            "Started worker pid=%s model=%s resume=%s",
            self._process.pid,
            model,
            session_id or "-",
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def lines(self) -> AsyncIterator[bytes]:
        """Yield output lines until EOF."""
        if self._process is None or self._process.stdout is None:
            raise RuntimeError("Worker not started")
        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT; the reader already discarded it.
                log.warning("Dropped an oversized worker output line")
                continue
            if not line:
                return
            yield line

    async def wait(self) -> int:
        if self._process is None:
            raise RuntimeError("Worker not started")
        return await self._process.wait()

    def _signal_group(self, sig: int) -> None:
        assert self._process is not None
        pgid = self._pgid
        if pgid is None or pgid == os.getpgrp():
            # Not our own group; fall back to the direct child only.
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(sig)
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(pgid, sig)

    async def terminate(self) -> int | None:
        """Stop the worker's whole process group and wait for it to exit."""
        if self._process is None:
            return None
        if self._process.returncode is not None:
            # Leader is gone; stragglers in its group still get the signal.
            self._signal_group(signal.SIGKILL)
            return self._process.returncode

        log.debug("Terminating worker group pid=%s", self._process.pid)
        self._signal_group(signal.SIGTERM)
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=self.grace_seconds)
        except TimeoutError:
            log.warning(
                "Worker pid=%s ignored SIGTERM for %.1fs; killing",
                self._process.pid,
                self.grace_seconds,
            )
        self._signal_group(signal.SIGKILL)
        return await self._process.wait()

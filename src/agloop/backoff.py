"""Exponential backoff policy and a retry wrapper for external commands.

``backoff_delay_ms`` is pure: it computes a delay and never sleeps. Callers own the
wait, which keeps the policy testable and lets async callers use ``asyncio.sleep``.
"""

from __future__ import annotations

import logging
import random
import subprocess
import time
from collections.abc import Callable, Sequence

from agloop.errors import ConfigurationError

log = logging.getLogger(__name__)

JITTER_SPREAD = 0.25


def validate_backoff(base: object, cap: object) -> None:
    """Reject non-numeric or negative base/cap values before any retry happens."""
    for name, value in (("base", base), ("cap", cap)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"Backoff {name} must be numeric (got {value!r})")
        if value < 0:
            raise ConfigurationError(f"Backoff {name} must be >= 0 (got {value!r})")


def backoff_delay_ms(
    attempt: int,
    base: float,
    cap: float,
    jitter: bool = False,
    *,
    rng: random.Random | None = None,
) -> int:
    """Delay in milliseconds before retry number ``attempt`` (1-indexed).

    ``base`` and ``cap`` are seconds. The delay is ``min(base * 2**(attempt-1), cap)``;
    with ``jitter`` it is multiplied by a uniform factor in ``[1.0, 1.25)`` so
    concurrent callers do not retry in lockstep.
    """
    validate_backoff(base, cap)
    if attempt < 1:
        raise ValueError(f"attempt is 1-indexed (got {attempt})")

    # Cap the exponent; 2**attempt for a large attempt count only matters until cap.
    exponent = min(attempt - 1, 62)
    seconds = min(base * (2**exponent), cap)
    if jitter:
        seconds *= 1.0 + (rng or random).random() * JITTER_SPREAD
    return int(seconds * 1000)


def retry_command(
    cmd: Sequence[str],
    *,
    max_attempts: int,
    base: float,
    cap: float,
    jitter: bool,
    cwd: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``cmd`` up to ``max_attempts`` times, retrying only on non-zero exit.

    Returns the last ``CompletedProcess``; its ``returncode`` is the propagated exit
    status when every attempt failed. Raises ConfigurationError for invalid
    parameters before running anything.
    """
    validate_backoff(base, cap)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ConfigurationError(f"max_attempts must be a positive integer (got {max_attempts!r})")
    if not cmd:
        raise ConfigurationError("retry_command needs a command")

    attempt = 1
    while True:
        result = subprocess.run(
            list(cmd),
            cwd=cwd,
            capture_output=True,
            text=True,
        )
        if result.returncode == 0:
            return result
        if attempt >= max_attempts:
            log.warning(
                "Command %s failed after %d attempt(s) (exit %d)",
                cmd[0],
                attempt,
                result.returncode,
            )
            return result
        delay_ms = backoff_delay_ms(attempt, base, cap, jitter, rng=rng)
        log.info(
            "Command %s exited %d (attempt %d/%d); retrying in %.1fs",
            cmd[0],
            result.returncode,
            attempt,
            max_attempts,
            delay_ms / 1000,
        )
        sleep(delay_ms / 1000)
        attempt += 1

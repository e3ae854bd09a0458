"""Turn a worker's event stream into control signals.

One :class:`SignalParser` watches one iteration. It accumulates resource
counters, keeps a sliding window of shell failures and file writes, and emits
at most one terminal signal. ``WARN`` is the only non-terminal signal; once a
terminal signal is out the parser keeps counting but stays silent.
"""

from __future__ import annotations

import enum
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field

from agloop.config import LoopConfig
from agloop.events import (
    AgentEvent,
    AssistantText,
    Clock,
    FileRead,
    FileWrite,
    RawOutput,
    ShellExecution,
    is_tool_event,
)

log = logging.getLogger(__name__)

COMPLETE_SIGIL = "<agloop>COMPLETE</agloop>"
GUTTER_SIGIL = "<agloop>GUTTER</agloop>"
REVIEW_PASS_SIGIL = "<agloop>REVIEW_PASS</agloop>"
REVIEW_FAIL_SIGIL = "<agloop>REVIEW_FAIL</agloop>"

CHARS_PER_TOKEN = 4


class Signal(enum.Enum):
    WARN = "WARN"
    ROTATE = "ROTATE"
    GUTTER = "GUTTER"
    COMPLETE = "COMPLETE"
    DEFER = "DEFER"
    NO_ACTIVITY = "NO_ACTIVITY"
    TIMEOUT = "TIMEOUT"
    NONE = "NONE"

    @property
    def is_terminal(self) -> bool:
        return self not in (Signal.WARN, Signal.NONE)

    @classmethod
    def decode(cls, text: str) -> Signal:
        """Parse the line form (``"ROTATE"``) into a Signal. Raises ValueError."""
        try:
            return cls(text.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown signal: {text!r}") from None


# Within one event, the highest-ranked candidate is the one emitted.
_PRECEDENCE = {
    Signal.DEFER: 5,
    Signal.GUTTER: 4,
    Signal.COMPLETE: 3,
    Signal.ROTATE: 2,
    Signal.WARN: 1,
}


@dataclass(frozen=True)
class SignalLine:
    signal: Signal
    reason: str = ""

    def __str__(self) -> str:
        if self.reason:
            return f"{self.signal.value} {self.reason}"
        return self.signal.value


@dataclass
class ResourceCounters:
    """Per-iteration consumption totals. Only ever grow until :meth:`reset`."""

    prompt_chars: int = 0
    bytes_read: int = 0
    bytes_written: int = 0
    assistant_chars: int = 0
    shell_output_chars: int = 0

    @property
    def total_chars(self) -> int:
        return (
            self.prompt_chars
            + self.bytes_read
            + self.bytes_written
            + self.assistant_chars
            + self.shell_output_chars
        )

    @property
    def estimated_tokens(self) -> int:
        return self.total_chars // CHARS_PER_TOKEN

    def add(self, event: AgentEvent) -> None:
        if isinstance(event, FileRead):
            self.bytes_read += max(event.size, 0)
        elif isinstance(event, FileWrite):
            self.bytes_written += max(event.size, 0)
        elif isinstance(event, AssistantText):
            self.assistant_chars += len(event.text)
        elif isinstance(event, ShellExecution):
            self.shell_output_chars += len(event.output)

    def reset(self) -> None:
        self.prompt_chars = 0
        self.bytes_read = 0
        self.bytes_written = 0
        self.assistant_chars = 0
        self.shell_output_chars = 0


@dataclass
class FailurePattern:
    """Sliding window of shell failures and file writes."""

    window_seconds: float
    failures: deque[tuple[str, int, float]] = field(default_factory=deque)
    writes: deque[tuple[str, float]] = field(default_factory=deque)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.failures and self.failures[0][2] < cutoff:
            self.failures.popleft()
        while self.writes and self.writes[0][1] < cutoff:
            self.writes.popleft()

    def record_failure(self, command: str, exit_code: int, now: float) -> int:
        """Record a failed command; return how often it failed inside the window."""
        self.failures.append((command, exit_code, now))
        self._prune(now)
        return sum(1 for cmd, _code, _ts in self.failures if cmd == command)

    def record_write(self, path: str, now: float) -> int:
        self.writes.append((path, now))
        self._prune(now)
        return sum(1 for p, _ts in self.writes if p == path)

    def clear(self) -> None:
        self.failures.clear()
        self.writes.clear()


_TRANSIENT_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "rate limit",
        re.compile(
            r"rate[ _-]?limit|too many requests|\b(?:error|status(?: code)?|http)\W{0,3}429\b",
            re.IGNORECASE,
        ),
    ),
    (
        "quota",
        re.compile(
            r"quota (?:exceeded|exhausted)|exceeded (?:your |the )?quota"
            r"|resource[ _-]?exhausted|usage limit",
            re.IGNORECASE,
        ),
    ),
    (
        "network",
        re.compile(
            r"connection (?:reset|refused)|econnreset|econnrefused|etimedout"
            r"|could not resolve host|network error|temporary failure in name resolution",
            re.IGNORECASE,
        ),
    ),
    (
        "server error",
        re.compile(
            r"HTTP/\d(?:\.\d)? 50[0234]\b|\b(?:error|status(?: code)?|http)\W{0,3}50[0234]\b"
            r"|internal server error|bad gateway|service unavailable|gateway timeout"
            r"|overloaded",
            re.IGNORECASE,
        ),
    ),
]


_SIGIL = re.compile(r"<agloop>([A-Z_]+)</agloop>")


def reported_signals(text: str) -> list[Signal]:
    """Signals the worker announced with ``<agloop>NAME</agloop>`` markers in ``text``."""
    found = []
    for match in _SIGIL.finditer(text):
        try:
            found.append(Signal.decode(match.group(1)))
        except ValueError:
            # Review verdict markers share the tag but are not loop signals.
            log.debug("Ignoring marker %s", match.group(0))
    return found


def match_transient(text: str) -> str | None:
    """Return the transient-failure category ``text`` matches, if any."""
    for category, pattern in _TRANSIENT_PATTERNS:
        if pattern.search(text):
            return category
    return None


def review_verdict(text: str) -> bool | None:
    """True for a review pass, False for a fail, None when neither marker appears.

    FAIL wins when both markers are present.
    """
    if REVIEW_FAIL_SIGIL in text:
        return False
    if REVIEW_PASS_SIGIL in text:
        return True
    return None


class SignalParser:
    """Stateful detector for one iteration's event stream."""

    def __init__(self, config: LoopConfig, *, clock: Clock = time.monotonic) -> None:
        self.warn_threshold = config.warn_threshold
        self.rotate_threshold = config.rotate_threshold
        self.idle_timeout = config.iteration_timeout
        self.failure_limit = config.gutter_failure_count
        self.write_limit = config.thrash_write_count
        self._clock = clock
        self.counters = ResourceCounters()
        self.patterns = FailurePattern(window_seconds=config.thrash_window_seconds)
        self.tool_calls = 0
        self.warned = False
        self.terminal: SignalLine | None = None
        self.emitted: list[SignalLine] = []
        self.last_activity = clock()

    def start(self, prompt_chars: int = 0) -> None:
        """Reset all per-iteration state."""
        self.counters.reset()
        self.counters.prompt_chars = prompt_chars
        self.patterns.clear()
        self.tool_calls = 0
        self.warned = False
        self.terminal = None
        self.emitted = []
        self.last_activity = self._clock()

    @property
    def estimated_tokens(self) -> int:
        return self.counters.estimated_tokens

    # -- detection --

    def _candidates(self, event: AgentEvent) -> list[SignalLine]:
        found: list[SignalLine] = []

        if isinstance(event, ShellExecution) and event.exit_code != 0:
            category = match_transient(event.output)
            if category:
                found.append(SignalLine(Signal.DEFER, f"{category}: {event.command}"))
            count = self.patterns.record_failure(event.command, event.exit_code, event.timestamp)
            if count >= self.failure_limit:
                found.append(
                    SignalLine(
                        Signal.GUTTER,
                        f"command failed {count} times: {event.command}",
                    )
                )
        elif isinstance(event, RawOutput):
            category = match_transient(event.text)
            if category:
                found.append(SignalLine(Signal.DEFER, f"{category}: {event.text.strip()[:200]}"))
        elif isinstance(event, FileWrite):
            count = self.patterns.record_write(event.path, event.timestamp)
            if count >= self.write_limit:
                found.append(
                    SignalLine(
                        Signal.GUTTER,
                        f"file written {count} times: {event.path}",
                    )
                )
        elif isinstance(event, AssistantText):
            # Workers may only announce these two; the rest are the parser's call.
            reported = reported_signals(event.text)
            if Signal.GUTTER in reported:
                found.append(SignalLine(Signal.GUTTER, "worker reported it is stuck"))
            if Signal.COMPLETE in reported:
                found.append(SignalLine(Signal.COMPLETE, "worker reported completion"))

        tokens = self.counters.estimated_tokens
        if tokens >= self.rotate_threshold:
            found.append(SignalLine(Signal.ROTATE, f"~{tokens} tokens"))
        elif tokens >= self.warn_threshold and not self.warned:
            found.append(SignalLine(Signal.WARN, f"~{tokens} tokens"))
        return found

    def _emit(self, line: SignalLine) -> list[SignalLine]:
        self.emitted.append(line)
        if line.signal.is_terminal:
            self.terminal = line
            log.info("Signal %s", line)
        else:
            log.debug("Signal %s", line)
        return [line]

    def feed(self, event: AgentEvent) -> list[SignalLine]:
        """Consume one event; return the signal lines it produced (zero or one)."""
        self.last_activity = event.timestamp
        if is_tool_event(event):
            self.tool_calls += 1
        self.counters.add(event)

        candidates = self._candidates(event)
        if self.counters.estimated_tokens >= self.warn_threshold:
            # A crossing counts even when a stronger signal wins this event.
            self.warned = True

        if self.terminal is not None or not candidates:
            return []
        best = max(candidates, key=lambda line: _PRECEDENCE[line.signal])
        return self._emit(best)

    def check_idle(self, now: float | None = None) -> list[SignalLine]:
        """Emit TIMEOUT when the worker has been silent longer than the idle window."""
        if self.terminal is not None or self.idle_timeout <= 0:
            return []
        current = self._clock() if now is None else now
        idle = current - self.last_activity
        if idle > self.idle_timeout:
            return self._emit(SignalLine(Signal.TIMEOUT, f"no output for {int(idle)}s"))
        return []

    def finish(self) -> list[SignalLine]:
        """Call at end of stream. Emits NO_ACTIVITY when no tool call was seen."""
        if self.terminal is None and self.tool_calls == 0:
            return self._emit(SignalLine(Signal.NO_ACTIVITY, "no tool calls in iteration"))
        return []

    def outcome(self) -> Signal:
        """The iteration's terminal signal, or NONE."""
        return self.terminal.signal if self.terminal is not None else Signal.NONE

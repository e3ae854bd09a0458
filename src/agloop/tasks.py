"""Checklist-backed task store.

A task is a list item with a checkbox at the start of a line::

    - [ ] Add the parser <!-- group: 1 -->
    * [x] Wire the CLI <!-- model: sonnet-4.5 --> <!-- group: 2 -->
    3. [ ] Write docs

Checkbox-looking text inside prose, inside fenced code blocks, or inside the
leading ``---`` front matter is not a task. A task's id is its 1-indexed line
number (``line_12``), so it stays stable while the lines above it are unchanged.

Parsed results are cached in ``.agloop/tasks.json`` keyed by the checklist's
modification time; every read compares the current mtime and re-parses on a
mismatch, so the cache is never observably stale.
"""

from __future__ import annotations

import json
import logging
import os
import re
import stat
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path

from agloop.errors import InvalidTaskId
from agloop.paths import TASK_CACHE_FILE, state_dir

log = logging.getLogger(__name__)

TASK_ID_PREFIX = "line_"
CACHE_VERSION = 1

_TASK_LINE_RE = re.compile(r"^(?P<lead>\s*(?:[-*+]|\d+[.)])\s+)\[(?P<mark>[ xX])\](?P<rest>.*)$")
_TRAILING_COMMENT_RE = re.compile(r"\s*<!--(?P<body>(?:(?!-->).)*)-->\s*$")
_ANNOTATION_RE = re.compile(r"(?P<key>group|model)\s*:\s*(?P<value>[^,;]+)", re.IGNORECASE)
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_FRONT_MATTER_KEY_RE = re.compile(r"^(?P<key>[A-Za-z_][\w-]*)\s*:\s*(?P<value>.*)$")


@dataclass(frozen=True)
class TaskRecord:
    id: str
    description: str
    status: str  # "pending" | "complete"
    group: int | None = None
    model: str | None = None

    @property
    def line_number(self) -> int:
        return int(self.id.removeprefix(TASK_ID_PREFIX))

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"


def task_id_for_line(line_number: int) -> str:
    return f"{TASK_ID_PREFIX}{line_number}"


def _parse_task_id(task_id: str) -> int | None:
    if not isinstance(task_id, str) or not task_id.startswith(TASK_ID_PREFIX):
        return None
    digits = task_id[len(TASK_ID_PREFIX) :]
    if not digits.isdigit():
        return None
    return int(digits)


def _split_annotations(rest: str) -> tuple[str, int | None, str | None]:
    """Strip trailing ``<!-- key: value -->`` comments, in any order."""
    group: int | None = None
    model: str | None = None
    text = rest
    while True:
        match = _TRAILING_COMMENT_RE.search(text)
        if not match:
            break
        body = match.group("body")
        annotations = list(_ANNOTATION_RE.finditer(body))
        if not annotations:
            break
        for annotation in annotations:
            key = annotation.group("key").lower()
            value = annotation.group("value").strip()
            if key == "group":
                try:
                    group = int(value)
                except ValueError:
                    log.warning("Ignoring non-integer group annotation %r", value)
            elif value:
                model = value
        text = text[: match.start()]
    return text.strip(), group, model


def _task_lines(lines: list[str]) -> list[tuple[int, re.Match[str]]]:
    """Return (1-indexed line number, match) for every real checklist item."""
    found: list[tuple[int, re.Match[str]]] = []
    start = 0
    if lines and lines[0].strip() == "---":
        for index in range(1, len(lines)):
            if lines[index].strip() == "---":
                start = index + 1
                break
    fence: str | None = None
    for index in range(start, len(lines)):
        line = lines[index]
        fence_match = _FENCE_RE.match(line)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker
            elif marker == fence:
                fence = None
            continue
        if fence is not None:
            continue
        match = _TASK_LINE_RE.match(line)
        if match:
            found.append((index + 1, match))
    return found


def parse_tasks(source: str) -> list[TaskRecord]:
    """Parse checklist text into TaskRecords in document order. Deterministic."""
    records: list[TaskRecord] = []
    for line_number, match in _task_lines(source.splitlines()):
        description, group, model = _split_annotations(match.group("rest"))
        records.append(
            TaskRecord(
                id=task_id_for_line(line_number),
                description=description,
                status="pending" if match.group("mark") == " " else "complete",
                group=group,
                model=model,
            )
        )
    return records


def parse_front_matter(source: str) -> dict[str, str]:
    """Read ``key: value`` pairs from a leading ``---`` block (quotes stripped)."""
    lines = source.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}
    values: dict[str, str] = {}
    for line in lines[1:]:
        if line.strip() == "---":
            return values
        match = _FRONT_MATTER_KEY_RE.match(line.strip())
        if not match:
            continue
        value = match.group("value").strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[match.group("key")] = value
    # Unterminated block is not front matter.
    return {}


def order_pending(tasks: list[TaskRecord], *, ungrouped_first: bool = False) -> list[TaskRecord]:
    """Pending tasks sorted by group; unannotated tasks after all groups by default."""
    pending = [t for t in tasks if not t.is_complete]

    def key(task: TaskRecord) -> tuple[int, int, int]:
        if task.group is None:
            bucket = 0 if ungrouped_first else 2
            return (bucket, 0, task.line_number)
        return (1, task.group, task.line_number)

    return sorted(pending, key=key)


def group_batches(
    tasks: list[TaskRecord], *, ungrouped_first: bool = False
) -> list[tuple[int | None, list[TaskRecord]]]:
    """Pending tasks split into ordered (group, tasks) phases."""
    phases: list[tuple[int | None, list[TaskRecord]]] = []
    for task in order_pending(tasks, ungrouped_first=ungrouped_first):
        if phases and phases[-1][0] == task.group:
            phases[-1][1].append(task)
        else:
            phases.append((task.group, [task]))
    return phases


class TaskStore:
    """Task queue over one checklist document, with an mtime-keyed cache."""

    def __init__(self, path: str | Path, *, cache_path: str | Path | None = None) -> None:
        self.path = Path(path)
        if cache_path is None:
            cache_path = state_dir(self.path.parent) / TASK_CACHE_FILE
        self.cache_path = Path(cache_path)
        self._memo: tuple[tuple[int, int], list[TaskRecord]] | None = None

    # -- reading --

    def exists(self) -> bool:
        return self.path.is_file()

    def read_source(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def _source_key(self) -> tuple[int, int]:
        stat = self.path.stat()
        return (stat.st_mtime_ns, stat.st_size)

    def tasks(self) -> list[TaskRecord]:
        """Current TaskRecords, re-parsed whenever the checklist changed on disk."""
        if not self.exists():
            return []
        key = self._source_key()
        if self._memo is not None and self._memo[0] == key:
            return list(self._memo[1])

        records = self._load_cache(key)
        if records is None:
            records = parse_tasks(self.read_source())
            self._write_cache(key, records)
        self._memo = (key, records)
        return list(records)

    def _load_cache(self, key: tuple[int, int]) -> list[TaskRecord] | None:
        try:
            payload = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        if (
            payload.get("version") != CACHE_VERSION
            or payload.get("source") != str(self.path.resolve())
            or payload.get("mtime_ns") != key[0]
            or payload.get("size") != key[1]
        ):
            log.debug("Task cache stale for %s; re-parsing", self.path)
            return None
        try:
            return [TaskRecord(**item) for item in payload["tasks"]]
        except (KeyError, TypeError):
            return None

    def _write_cache(self, key: tuple[int, int], records: list[TaskRecord]) -> None:
        payload = {
            "version": CACHE_VERSION,
            "source": str(self.path.resolve()),
            "mtime_ns": key[0],
            "size": key[1],
            "tasks": [asdict(record) for record in records],
        }
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(self.cache_path, json.dumps(payload, indent=2))
        except OSError as exc:
            # The cache is derived state; failing to write it only costs a re-parse.
            log.warning("Failed to write task cache %s: %s", self.cache_path, exc)

    def refresh(self) -> list[TaskRecord]:
        """Drop cached state and re-parse."""
        self._memo = None
        self.cache_path.unlink(missing_ok=True)
        return self.tasks()

    def get(self, task_id: str) -> TaskRecord:
        for task in self.tasks():
            if task.id == task_id:
                return task
        raise InvalidTaskId(task_id)

    def front_matter(self) -> dict[str, str]:
        if not self.exists():
            return {}
        return parse_front_matter(self.read_source())

    # -- queries --

    def next_pending(self, *, ungrouped_first: bool = False) -> TaskRecord | None:
        ordered = order_pending(self.tasks(), ungrouped_first=ungrouped_first)
        return ordered[0] if ordered else None

    def pending(self, *, ungrouped_first: bool = False) -> list[TaskRecord]:
        return order_pending(self.tasks(), ungrouped_first=ungrouped_first)

    def groups(self, *, ungrouped_first: bool = False) -> list[tuple[int | None, list[TaskRecord]]]:
        return group_batches(self.tasks(), ungrouped_first=ungrouped_first)

    def remaining_count(self) -> int:
        return sum(1 for task in self.tasks() if not task.is_complete)

    def progress(self) -> tuple[int, int]:
        tasks = self.tasks()
        done = sum(1 for task in tasks if task.is_complete)
        return done, len(tasks)

    def is_complete(self) -> bool:
        """True when the checklist has no pending items (the authoritative signal)."""
        return self.exists() and self.remaining_count() == 0

    def models(self) -> list[str]:
        return sorted({task.model for task in self.tasks() if task.model})

    # -- mutation --

    def mark_complete(self, task_id: str) -> TaskRecord:
        """Check the box on exactly the line ``task_id`` names.

        Idempotent for an already-checked item. Raises InvalidTaskId when no
        checklist item exists at that position; the file is left untouched.
        """
        line_number = _parse_task_id(task_id)
        if line_number is None or not self.exists():
            raise InvalidTaskId(task_id)

        source = self.read_source()
        lines = source.splitlines(keepends=True)
        matches = dict(_task_lines([line.rstrip("\r\n") for line in lines]))
        match = matches.get(line_number)
        if match is None:
            raise InvalidTaskId(task_id)

        if match.group("mark") != " ":
            return self.get(task_id)

        original = lines[line_number - 1]
        box = match.start("mark")
        lines[line_number - 1] = original[:box] + "x" + original[box + 1 :]
        _atomic_write(self.path, "".join(lines))
        # Same size, and possibly the same mtime tick: drop the cache explicitly.
        self.refresh()
        log.info("Marked %s complete in %s", task_id, self.path.name)
        return self.get(task_id)


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        if path.exists():
            # mkstemp creates 0600; keep the mode the file already had.
            os.chmod(tmp, stat.S_IMODE(path.stat().st_mode))
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise

"""Decode the worker's stream-json output into agloop events.

The worker writes one JSON object per line. Only four kinds of record matter to
the signal parser (file read, file write, shell execution, assistant text); the
session handle is kept for ``--resume``; everything else is ignored. Lines that
are not JSON at all (stderr is merged into the stream) become :class:`RawOutput`.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from jsonschema import Draft202012Validator

log = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class FileRead:
    path: str
    size: int
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class FileWrite:
    path: str
    size: int
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class ShellExecution:
    command: str
    exit_code: int
    output: str = ""
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class AssistantText:
    text: str
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class SessionStarted:
    session_id: str
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class RawOutput:
    text: str
    timestamp: float = field(default_factory=time.monotonic)


AgentEvent = Union[FileRead, FileWrite, ShellExecution, AssistantText, SessionStarted, RawOutput]
TOOL_EVENTS = (FileRead, FileWrite, ShellExecution)


RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"type": "string"},
        "subtype": {"type": "string"},
        "session_id": {"type": "string"},
    },
}

TOOL_CALL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["tool_call"],
    "properties": {
        "tool_call": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "args": {"type": "object"},
                    "result": {"type": "object"},
                },
            },
        },
    },
}

ASSISTANT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["message"],
    "properties": {
        "message": {
            "type": "object",
            "required": ["content"],
            "properties": {
                "content": {
                    "type": "array",
                    "items": {"type": "object"},
                },
            },
        },
    },
}

_record_validator = Draft202012Validator(RECORD_SCHEMA)
_tool_call_validator = Draft202012Validator(TOOL_CALL_SCHEMA)
_assistant_validator = Draft202012Validator(ASSISTANT_SCHEMA)


def _is_valid(validator: Draft202012Validator, record: dict[str, Any]) -> bool:
    error = next(iter(validator.iter_errors(record)), None)
    if error is None:
        return True
    log.debug("Ignoring malformed %s record: %s", record.get("type"), error.message)
    return False


def _int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def _result_payload(call: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Return (payload, succeeded) from a tool call's ``result`` block."""
    result = call.get("result") or {}
    if isinstance(result.get("success"), dict):
        return result["success"], True
    if isinstance(result.get("failure"), dict):
        return result["failure"], False
    if isinstance(result.get("error"), dict):
        return result["error"], False
    return {}, "error" not in result


def _decode_tool_call(record: dict[str, Any], now: float) -> AgentEvent | None:
    if record.get("subtype") != "completed":
        return None
    if not _is_valid(_tool_call_validator, record):
        return None

    (kind, call), *_ = record["tool_call"].items()
    args = call.get("args") or {}
    payload, succeeded = _result_payload(call)

    if kind == "readToolCall":
        size = _int(payload.get("totalChars"), _int(payload.get("contentSize")))
        return FileRead(path=str(args.get("path", "")), size=size, timestamp=now)

    if kind in ("writeToolCall", "editToolCall"):
        size = _int(payload.get("fileSize"), -1)
        if size < 0:
            text = args.get("fileText") or args.get("contents") or args.get("newString") or ""
            size = len(text) if isinstance(text, str) else 0
        return FileWrite(path=str(args.get("path", "")), size=size, timestamp=now)

    if kind == "shellToolCall":
        default_exit = 0 if succeeded else 1
        exit_code = _int(payload.get("exitCode"), default_exit)
        parts = [payload.get("stdout"), payload.get("stderr"), payload.get("message")]
        output = "\n".join(part for part in parts if isinstance(part, str) and part)
        return ShellExecution(
            command=str(args.get("command", "")),
            exit_code=exit_code,
            output=output,
            timestamp=now,
        )

    log.debug("Ignoring tool call of kind %s", kind)
    return None


def _decode_assistant(record: dict[str, Any], now: float) -> AgentEvent | None:
    if not _is_valid(_assistant_validator, record):
        return None
    chunks = [
        item.get("text", "")
        for item in record["message"]["content"]
        if item.get("type") == "text" and isinstance(item.get("text"), str)
    ]
    text = "".join(chunks)
    if not text:
        return None
    return AssistantText(text=text, timestamp=now)


def decode_record(record: dict[str, Any], *, now: float) -> AgentEvent | None:
    if not _is_valid(_record_validator, record):
        return None
    kind = record["type"]
    if kind == "tool_call":
        return _decode_tool_call(record, now)
    if kind == "assistant":
        return _decode_assistant(record, now)
    if kind == "system" and record.get("subtype") == "init" and record.get("session_id"):
        return SessionStarted(session_id=record["session_id"], timestamp=now)
    return None


def decode_line(line: str | bytes, *, clock: Clock = time.monotonic) -> AgentEvent | None:
    """Classify one line of worker output. Returns None for ignored records."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    text = line.rstrip("\r\n")
    if not text.strip():
        return None
    now = clock()
    try:
        record = json.loads(text)
    except json.JSONDecodeError:
        return RawOutput(text=text, timestamp=now)
    if not isinstance(record, dict):
        return RawOutput(text=text, timestamp=now)
    return decode_record(record, now=now)


def is_tool_event(event: AgentEvent) -> bool:
    return isinstance(event, TOOL_EVENTS)

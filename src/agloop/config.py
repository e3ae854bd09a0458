"""Loop configuration.

Values come from, in increasing precedence: dataclass defaults, the project's
``.agloop/config.toml``, ``AGLOOP_*`` environment variables, and explicit
overrides (CLI flags). The resulting :class:`LoopConfig` is passed into every
component; nothing else reads the environment.

Example ``.agloop/config.toml``::

    model = "sonnet-4.5"
    review_model = "gpt-5.2-high"
    max_iterations = 30
    warn_threshold = 60000
    rotate_threshold = 75000
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shlex
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agloop.errors import ConfigurationError
from agloop.paths import CONFIG_FILE_NAME, state_dir

log = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = ("cursor-agent", "-p", "--force", "--output-format", "stream-json")
DEFAULT_MODEL = "opus-4.6-thinking"
ENV_PREFIX = "AGLOOP_"


@dataclass
class LoopConfig:
    """Every tunable the controller, parser, and scheduler consume."""

    agent_command: tuple[str, ...] = DEFAULT_AGENT_COMMAND
    model: str = DEFAULT_MODEL
    review_model: str | None = None
    max_review_attempts: int = 2
    max_iterations: int = 20
    warn_threshold: int = 70_000
    rotate_threshold: int = 80_000
    iteration_timeout: float = 600.0
    max_parallel: int = 3
    skip_merge: bool = False
    min_disk_mb: int = 100
    min_memory_mb: int = 500
    defer_base_seconds: float = 15.0
    defer_cap_seconds: float = 120.0
    defer_jitter: bool = True
    gutter_failure_count: int = 3
    thrash_write_count: int = 5
    thrash_window_seconds: float = 600.0
    task_file: str = "TASKS.md"
    grace_seconds: float = 2.0
    extra_env: dict[str, str] = field(default_factory=dict)

    def validate(self) -> LoopConfig:
        """Raise ConfigurationError on any invalid value. Returns self for chaining."""
        if not self.agent_command or not all(self.agent_command):
            raise ConfigurationError("agent_command must be a non-empty command")
        if not self.model:
            raise ConfigurationError("model must be set")
        for name in (
            "max_iterations",
            "max_review_attempts",
            "max_parallel",
            "gutter_failure_count",
            "thrash_write_count",
        ):
            _require_positive_int(name, getattr(self, name))
        for name in ("warn_threshold", "rotate_threshold"):
            _require_number(name, getattr(self, name))
        if not 0 < self.warn_threshold < self.rotate_threshold:
            raise ConfigurationError(
                "Thresholds must satisfy 0 < warn_threshold < rotate_threshold "
                f"(got {self.warn_threshold} / {self.rotate_threshold})"
            )
        for name in (
            "iteration_timeout",
            "defer_base_seconds",
            "defer_cap_seconds",
            "thrash_window_seconds",
            "grace_seconds",
            "min_disk_mb",
            "min_memory_mb",
        ):
            value = getattr(self, name)
            _require_number(name, value)
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0 (got {value})")
        if not self.task_file:
            raise ConfigurationError("task_file must be set")
        return self

    def with_overrides(self, **overrides: Any) -> LoopConfig:
        """Return a copy with every non-None override applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(self, **applied)


def _require_number(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be numeric (got {value!r})")


def _require_positive_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"{name} must be a positive integer (got {value!r})")


_FIELD_TYPES: dict[str, str] = {f.name: str(f.type) for f in dataclasses.fields(LoopConfig)}


def _coerce(name: str, raw: object, *, source: str) -> Any:
    """Coerce a TOML or environment value to the field's declared type."""
    kind = _FIELD_TYPES[name]
    if kind == "tuple[str, ...]":
        if isinstance(raw, str):
            return tuple(shlex.split(raw))
        if isinstance(raw, list) and all(isinstance(part, str) for part in raw):
            return tuple(raw)
        raise ConfigurationError(f"{source}: {name} must be a command string or list")
    if kind == "dict[str, str]":
        if isinstance(raw, dict):
            return {str(k): str(v) for k, v in raw.items()}
        raise ConfigurationError(f"{source}: {name} must be a table")
    if kind == "bool":
        return _parse_bool(raw, name=name, source=source)
    if kind == "int":
        try:
            if isinstance(raw, bool):
                raise ValueError
            return int(raw)  # type: ignore[call-overload]
        except (TypeError, ValueError):
            raise ConfigurationError(f"{source}: {name} must be an integer (got {raw!r})") from None
    if kind == "float":
        try:
            if isinstance(raw, bool):
                raise ValueError
            return float(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ConfigurationError(f"{source}: {name} must be a number (got {raw!r})") from None
    if raw == "" and "None" in kind:
        return None
    return str(raw)


def _parse_bool(raw: object, *, name: str, source: str) -> bool:
    if isinstance(raw, bool):
        return raw
    normalized = str(raw).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{source}: invalid boolean value for {name}: {raw!r}")


def load_file_config(workspace: str | Path) -> dict[str, Any]:
    """Load ``.agloop/config.toml`` from a workspace.

    Returns an empty dict when the file does not exist. Malformed TOML or unknown
    keys are configuration errors.
    """
    path = state_dir(workspace) / CONFIG_FILE_NAME
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Failed to parse {path}: {exc}") from None

    unknown = sorted(set(data) - set(_FIELD_TYPES))
    if unknown:
        raise ConfigurationError(f"{path}: unknown keys {unknown}")
    return {key: _coerce(key, value, source=str(path)) for key, value in data.items()}


def load_env_config(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``AGLOOP_<FIELD>`` overrides from an environment mapping."""
    values: dict[str, Any] = {}
    for name in _FIELD_TYPES:
        if name == "extra_env":
            continue
        env_name = ENV_PREFIX + name.upper()
        raw = environ.get(env_name)
        if raw is None:
            continue
        values[name] = _coerce(name, raw.strip(), source=env_name)
    return values


def load_config(
    workspace: str | Path,
    *,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> LoopConfig:
    """Build and validate the effective config for a workspace."""
    env = os.environ if environ is None else environ
    merged: dict[str, Any] = {}
    merged.update(load_file_config(workspace))
    merged.update(load_env_config(env))
    merged.update({key: value for key, value in overrides.items() if value is not None})
    log.debug("Effective config overrides for %s: %s", workspace, sorted(merged))
    return LoopConfig(**merged).validate()

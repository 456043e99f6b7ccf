"""Run settings for plan/apply executions.

Settings come from ``STRATUM_*`` environment variables, overridden by
explicit keyword arguments (the CLI passes its options through).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any

from .exceptions import ValidationError

ENV_PREFIX = "STRATUM_"

DESTROY_CHECK_SCOPES = ("state", "graph")

DEFAULT_STATE_PATH = "stratum.state.json"


@dataclass(frozen=True)
class RunOptions:
    """
    Settings for one run.

    Attributes:
        parallelism: Max provider calls in flight (refresh and apply)
        max_attempts: Attempts per provider call before a transient error is fatal
        backoff_base: First retry delay in seconds (doubles per attempt)
        backoff_max: Ceiling for a single retry delay in seconds
        destroy_check_scope: Where destroy-time dependency checks look for
            live references: "state" (every record) or "graph" (records of
            nodes in the current configuration graph)
        refresh: Read remote objects before planning
        state_path: Local state file, used when no backend is configured
        lock_timeout: Seconds to keep retrying a held lock (0 = fail at once)
    """

    parallelism: int = 10
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    destroy_check_scope: str = "state"
    refresh: bool = True
    state_path: str = DEFAULT_STATE_PATH
    lock_timeout: float = 0.0

    def __post_init__(self) -> None:
        if self.parallelism < 1:
            raise ValidationError("parallelism", self.parallelism, "must be at least 1")
        if self.max_attempts < 1:
            raise ValidationError("max_attempts", self.max_attempts, "must be at least 1")
        if self.backoff_base < 0:
            raise ValidationError("backoff_base", self.backoff_base, "must not be negative")
        if self.backoff_max < self.backoff_base:
            raise ValidationError("backoff_max", self.backoff_max, "must be >= backoff_base")
        if self.destroy_check_scope not in DESTROY_CHECK_SCOPES:
            raise ValidationError(
                "destroy_check_scope",
                self.destroy_check_scope,
                f"expected one of: {', '.join(DESTROY_CHECK_SCOPES)}",
            )
        if self.lock_timeout < 0:
            raise ValidationError("lock_timeout", self.lock_timeout, "must not be negative")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return float(min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max))

    def with_overrides(self, **overrides: Any) -> RunOptions:
        """Copy with the given non-None values replaced."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> RunOptions:
        """Build options from STRATUM_* environment variables plus overrides."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _convert(f.name, raw, f.type)
        options = cls(**values)
        return options.with_overrides(**overrides)


def _convert(name: str, raw: str, type_name: Any) -> Any:
    type_name = str(type_name)
    try:
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
        if type_name == "bool":
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
    except ValueError:
        raise ValidationError(name, raw, f"expected a {type_name}") from None
    return raw

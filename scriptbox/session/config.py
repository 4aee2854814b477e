"""Configuration for session behavior."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from typing import Mapping, Optional

from ..subprocess.constants import (
    DEFAULT_GRACE_PERIOD_MS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_TRANSCRIPT_CAPACITY,
)

ENV_PREFIX = "SCRIPTBOX_"


@dataclass
class SessionConfig:
    """Configuration for session behavior.

    Timeouts on the host side are seconds, run-level knobs are milliseconds
    to match the wire protocol. ``from_env`` overrides any field from a
    ``SCRIPTBOX_<FIELD_NAME>`` environment variable.
    """

    # Run defaults
    default_timeout_ms: int = 5000
    grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    transcript_capacity: int = DEFAULT_TRANSCRIPT_CAPACITY
    auto_run_delay_ms: int = 500

    # Extra time the worker gets past the run timeout before it is killed
    hard_kill_grace_ms: int = 1000

    # Worker process
    python_path: str = field(default_factory=lambda: sys.executable)
    ready_timeout: float = 10.0
    shutdown_timeout: float = 2.0

    def __post_init__(self) -> None:
        for name in ("default_timeout_ms", "poll_interval_ms", "transcript_capacity"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("grace_period_ms", "auto_run_delay_ms", "hard_kill_grace_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> SessionConfig:
        environ = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.name == "python_path":
                overrides[f.name] = raw
                continue
            convert = float if f.name in ("ready_timeout", "shutdown_timeout") else int
            try:
                overrides[f.name] = convert(raw)
            except ValueError:
                raise ValueError(
                    f"{ENV_PREFIX}{f.name.upper()} must be {convert.__name__}, got {raw!r}"
                ) from None
        return cls(**overrides)  # type: ignore[arg-type]

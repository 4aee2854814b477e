"""Cooperative deadline enforcement for script frames."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from .constants import SCRIPT_FILENAME


class ExecutionTimeout(BaseException):
    """Raised inside script frames once the run's deadline has passed.

    Derives from BaseException so a script's ``except Exception`` does not
    absorb it.
    """


class Deadline:
    """Monotonic wall-clock deadline for one run."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout
        self._expires_at: Optional[float] = None

    @property
    def timeout(self) -> float:
        return self._timeout

    def start(self) -> None:
        self._expires_at = time.monotonic() + self._timeout

    def expire(self) -> None:
        """Force the deadline into the past."""
        self._expires_at = time.monotonic()

    def remaining(self) -> float:
        if self._expires_at is None:
            return self._timeout
        return max(0.0, self._expires_at - time.monotonic())

    def is_expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at


def create_deadline_tracer(
    deadline: Deadline,
    check_interval: int = 100,
    filename: str = SCRIPT_FILENAME,
) -> Callable[[Any, str, Any], Any]:
    """Create a trace function that stops script frames after the deadline.

    Only frames compiled from ``filename`` get a local tracer, so engine and
    library code run untraced.

    Args:
        deadline: Deadline to check
        check_interval: Check every N line events

    Returns:
        Trace function for sys.settrace
    """
    event_count = 0

    def tracer(frame: Any, event: str, arg: Any) -> Any:  # type: ignore[misc]
        nonlocal event_count

        if event == "call":
            if frame.f_code.co_filename != filename:
                return None
            if deadline.is_expired():
                raise ExecutionTimeout("Execution timeout")
            return tracer

        if event == "line":
            event_count += 1
            if event_count >= check_interval:
                event_count = 0
                if deadline.is_expired():
                    raise ExecutionTimeout("Execution timeout")

        return tracer

    return tracer

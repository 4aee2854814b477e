"""Output interception for scripts.

Builds the globals dict a script runs in. Every observable output call the
script can make (``console.*``, ``print``, dialog functions, writes to
``sys.stdout``/``sys.stderr``) lands in the run's transcript instead of the
worker's real streams.
"""

from __future__ import annotations

import asyncio
import builtins
import dataclasses
import inspect
import io
import json
import sys
from collections.abc import Mapping, Set
from types import SimpleNamespace
from typing import Any, Dict, Optional, TextIO

import structlog

from ..protocol.messages import RecordKind
from .constants import ALERT_PREFIX, CONFIRM_PREFIX, PROMPT_PREFIX, SCRIPT_FILENAME
from .tracker import PendingWorkTracker
from .transcript import TranscriptBuffer

logger = structlog.get_logger()


def stringify(value: Any) -> str:
    """Render one logged value.

    Checks run in a fixed order: text, primitives, awaitables, structured
    containers, then plain ``str()``.
    """
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, int, float, complex)):
        return str(value)
    if inspect.isawaitable(value):
        return f"<{type(value).__name__} (awaitable)>"
    structured = _structured(value)
    if structured is not None:
        try:
            return json.dumps(structured, indent=2, default=str)
        except (TypeError, ValueError):
            # circular references and unsortable keys end up here
            pass
    try:
        return str(value)
    except Exception:
        return f"<unprintable {type(value).__name__}>"


def _structured(value: Any) -> Any:
    if isinstance(value, (Mapping, list, tuple)):
        return value
    if isinstance(value, Set):
        return list(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump) and not isinstance(value, type):
        try:
            return model_dump(mode="json")
        except Exception:
            return None
    return None


def script_line() -> Optional[int]:
    """Line of the innermost script frame on the current stack."""
    frame = sys._getframe(1)
    while frame is not None:
        if frame.f_code.co_filename == SCRIPT_FILENAME:
            return frame.f_lineno
        frame = frame.f_back
    return None


class TranscriptStream(io.TextIOBase):
    """Line-buffered text stream that appends each line as a record."""

    encoding = "utf-8"
    errors = "replace"

    def __init__(self, surface: OutputSurface, kind: RecordKind) -> None:
        super().__init__()
        self._surface = surface
        self._kind = kind
        self._buffer = ""

    def write(self, data: str) -> int:
        if not isinstance(data, str):
            raise TypeError(f"write() argument must be str, not {type(data).__name__}")
        self._buffer += data
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._surface.emit(self._kind, line)
        return len(data)

    def flush(self) -> None:
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._surface.emit(self._kind, line)

    def isatty(self) -> bool:
        return False

    def writable(self) -> bool:
        return True

    def fileno(self) -> int:
        raise io.UnsupportedOperation("fileno")


class OutputSurface:
    """Shims installed into a script's globals for one run."""

    def __init__(self, transcript: TranscriptBuffer, tracker: PendingWorkTracker) -> None:
        self._transcript = transcript
        self._tracker = tracker
        self._stdout = TranscriptStream(self, RecordKind.LOG)
        self._stderr = TranscriptStream(self, RecordKind.ERROR)
        self._saved_streams: Optional[tuple[TextIO, TextIO]] = None

    def emit(self, kind: RecordKind, content: str, line: Optional[int] = None) -> None:
        if line is None:
            line = script_line()
        self._transcript.append(kind, content, line)

    # --- console ----------------------------------------------------------

    def log(self, *values: Any) -> None:
        self.emit(RecordKind.LOG, " ".join(stringify(v) for v in values))

    def error(self, *values: Any) -> None:
        self.emit(RecordKind.ERROR, " ".join(stringify(v) for v in values))

    def warn(self, *values: Any) -> None:
        self.emit(RecordKind.WARN, " ".join(stringify(v) for v in values))

    # --- builtins replacements --------------------------------------------

    def print(
        self,
        *values: Any,
        sep: Optional[str] = " ",
        end: Optional[str] = "\n",
        file: Any = None,
        flush: bool = False,
    ) -> None:
        if file is not None and file is not sys.stdout and file is not sys.stderr:
            builtins.print(*values, sep=sep, end=end, file=file, flush=flush)
            return

        sep = " " if sep is None else sep
        end = "\n" if end is None else end
        text = sep.join(str(v) for v in values)
        if end.endswith("\n"):
            end = end[:-1]
        kind = RecordKind.ERROR if file is not None and file is sys.stderr else RecordKind.LOG
        self.emit(kind, text + end)

    def input(self, prompt: Any = "") -> str:
        return self.prompt(prompt)

    # --- dialogs ----------------------------------------------------------

    def alert(self, message: Any = "") -> None:
        self.emit(RecordKind.LOG, f"{ALERT_PREFIX} {stringify(message)}")

    def confirm(self, message: Any = "") -> bool:
        self.emit(RecordKind.LOG, f"{CONFIRM_PREFIX} {stringify(message)}")
        return True

    def prompt(self, message: Any = "", default: Any = None) -> str:
        answer = "" if default is None else str(default)
        self.emit(RecordKind.LOG, f"{PROMPT_PREFIX} {stringify(message)} (default: {answer})")
        return answer

    # --- environment ------------------------------------------------------

    def build_globals(self) -> Dict[str, Any]:
        """Fresh globals dict for one script evaluation."""
        tracker = self._tracker
        console = SimpleNamespace(
            log=self.log,
            info=self.log,
            debug=self.log,
            error=self.error,
            warn=self.warn,
        )
        return {
            "__name__": "__main__",
            "__doc__": None,
            "__package__": None,
            "__loader__": None,
            "__spec__": None,
            "__annotations__": {},
            "__builtins__": builtins,
            "asyncio": asyncio,
            "console": console,
            "print": self.print,
            "input": self.input,
            "alert": self.alert,
            "confirm": self.confirm,
            "prompt": self.prompt,
            "set_timeout": tracker.set_timeout,
            "set_interval": tracker.set_interval,
            "clear_timeout": tracker.clear_timeout,
            "clear_interval": tracker.clear_interval,
            "setTimeout": tracker.set_timeout,
            "setInterval": tracker.set_interval,
            "clearTimeout": tracker.clear_timeout,
            "clearInterval": tracker.clear_interval,
        }

    def install_streams(self) -> None:
        if self._saved_streams is not None:
            return
        self._saved_streams = (sys.stdout, sys.stderr)
        sys.stdout = self._stdout
        sys.stderr = self._stderr

    def flush_streams(self) -> None:
        """Emit any partial line still buffered in the captured streams."""
        self._stdout.flush()
        self._stderr.flush()

    def restore_streams(self) -> None:
        if self._saved_streams is None:
            return
        self.flush_streams()
        sys.stdout, sys.stderr = self._saved_streams
        self._saved_streams = None

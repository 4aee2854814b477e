"""One script run, from evaluation to a settled transcript.

The source is compiled with ``PyCF_ALLOW_TOP_LEVEL_AWAIT`` so it behaves as
the body of an implicitly async function. After the body finishes the session
waits a short grace period and then polls the pending-work tracker until no
timers or script tasks remain. A safety timer bounds the whole run; whichever
path resolves the completion future first wins.
"""

from __future__ import annotations

import ast
import asyncio
import contextvars
import inspect
import sys
import time
import traceback
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from ..protocol.messages import RecordKind, RunRequest, RunResult
from .constants import (
    DEFAULT_GRACE_PERIOD_MS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_TRANSCRIPT_CAPACITY,
    SCRIPT_FILENAME,
    TIMEOUT_MESSAGE,
)
from .deadline import Deadline, ExecutionTimeout, create_deadline_tracer
from .surface import OutputSurface
from .tracker import SCRIPT_SCOPE, PendingWorkTracker
from .transcript import TranscriptBuffer

logger = structlog.get_logger()

PyCF_ALLOW_TOP_LEVEL_AWAIT = getattr(ast, "PyCF_ALLOW_TOP_LEVEL_AWAIT", 0x2000)


class ExecutionState(str, Enum):
    """Execution session lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    SETTLING = "settling"
    COMPLETED = "completed"


def describe_exception(error: BaseException) -> tuple[str, Optional[int]]:
    """Render an exception as record content plus the script line it came from."""
    if isinstance(error, SyntaxError) and error.filename == SCRIPT_FILENAME:
        return f"{type(error).__name__}: {error.msg}", error.lineno

    content = "".join(traceback.format_exception_only(type(error), error)).strip()
    line: Optional[int] = None
    for frame in traceback.extract_tb(error.__traceback__):
        if frame.filename == SCRIPT_FILENAME:
            line = frame.lineno
    return content, line


class ExecutionSession:
    """Runs exactly one RunRequest inside the current event loop."""

    def __init__(
        self,
        request: RunRequest,
        *,
        grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        transcript_capacity: int = DEFAULT_TRANSCRIPT_CAPACITY,
        cooperative_deadline: bool = True,
    ) -> None:
        self._request = request
        self._grace_period = grace_period_ms / 1000.0
        self._poll_interval = poll_interval_ms / 1000.0
        self._cooperative_deadline = cooperative_deadline
        self._state = ExecutionState.IDLE
        self._transcript = TranscriptBuffer(transcript_capacity)
        self._deadline = Deadline(request.timeout_ms / 1000.0)
        self._timed_out = False
        self._started_at = 0.0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tracker: Optional[PendingWorkTracker] = None
        self._surface: Optional[OutputSurface] = None
        self._completion: Optional[asyncio.Future[RunResult]] = None
        self._safety_timer: Optional[asyncio.TimerHandle] = None
        self._previous_trace: Any = None
        self._tracing = False

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def transcript(self) -> TranscriptBuffer:
        return self._transcript

    @property
    def pending_count(self) -> int:
        return self._tracker.pending_count if self._tracker else 0

    async def run(self) -> RunResult:
        """Run the script and return its transcript once the run settles."""
        if self._state != ExecutionState.IDLE:
            raise RuntimeError(f"Cannot run session in state {self._state.value}")

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._completion = loop.create_future()
        self._tracker = PendingWorkTracker(loop, on_error=self._record_error)
        self._tracker.clear()
        self._surface = OutputSurface(self._transcript, self._tracker)
        self._started_at = time.monotonic()
        self._state = ExecutionState.RUNNING

        self._deadline.start()
        self._safety_timer = loop.call_later(self._deadline.timeout, self._on_timeout)
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._on_loop_exception)
        self._tracker.install_task_factory()
        self._surface.install_streams()
        self._install_tracer()

        driver = loop.create_task(self._drive())
        try:
            return await self._completion
        finally:
            self._uninstall_tracer()
            self._surface.restore_streams()
            self._tracker.uninstall_task_factory()
            self._tracker.cancel_all()
            loop.set_exception_handler(previous_handler)
            if self._safety_timer is not None:
                self._safety_timer.cancel()
            if not driver.done():
                driver.cancel()
                await asyncio.wait({driver})

    async def _drive(self) -> None:
        assert self._loop is not None and self._tracker is not None

        try:
            code = compile(
                self._request.source,
                SCRIPT_FILENAME,
                "exec",
                flags=PyCF_ALLOW_TOP_LEVEL_AWAIT,
                dont_inherit=True,
            )
        except (SyntaxError, ValueError) as e:
            self._fail(e)
            return

        context = contextvars.copy_context()
        context.run(SCRIPT_SCOPE.set, True)
        env = self._surface.build_globals() if self._surface else {}
        is_async = bool(code.co_flags & inspect.CO_COROUTINE)

        try:
            value = context.run(eval, code, env)
        except ExecutionTimeout:
            self._on_timeout()
            return
        except SystemExit as e:
            self._record_exit(e, force=True)
            self._finish_now()
            return
        except Exception as e:
            self._fail(e)
            return

        if is_async:
            task = context.run(self._loop.create_task, self._script_main(value))
            await asyncio.wait({task})
            if self._is_done():
                return
            if task.cancelled():
                self._record_error(asyncio.CancelledError("Script task was cancelled"), force=True)
            elif task.exception() is not None:
                # only BaseExceptions the body wrapper lets through land here
                error = task.exception()
                if isinstance(error, ExecutionTimeout):
                    self._on_timeout()
                    return
                self._record_error(error, force=True)
            elif isinstance(task.result(), SystemExit):
                self._record_exit(task.result(), force=True)
                self._finish_now()
                return
            elif task.result() is not None:
                self._record_error(task.result(), force=True)

        self._state = ExecutionState.SETTLING
        await asyncio.sleep(self._grace_period)
        while not self._is_done() and self._tracker.pending_count > 0:
            await asyncio.sleep(self._poll_interval)
        self._complete()

    @staticmethod
    async def _script_main(body: Any) -> Optional[BaseException]:
        # failures are returned, not raised, so the tracker does not report
        # them a second time and a SystemExit cannot stop the event loop
        try:
            await body
        except (Exception, SystemExit, KeyboardInterrupt) as e:
            return e
        return None

    # --- completion paths -------------------------------------------------

    def _is_done(self) -> bool:
        return self._completion is None or self._completion.done()

    def _fail(self, error: BaseException) -> None:
        """Record a syntax or runtime failure and complete immediately."""
        self._record_error(error, force=True)
        self._finish_now()

    def _finish_now(self) -> None:
        if self._tracker is not None:
            self._tracker.cancel_all()
        self._complete()

    def _on_timeout(self) -> None:
        if self._is_done():
            return
        self._timed_out = True
        self._deadline.expire()
        self._uninstall_tracer()
        cancelled = self._tracker.cancel_all() if self._tracker else 0
        logger.info(
            "execution_timeout",
            timeout_ms=self._request.timeout_ms,
            cancelled=cancelled,
        )
        self._transcript.append(
            RecordKind.ERROR,
            TIMEOUT_MESSAGE.format(timeout_ms=self._request.timeout_ms),
            force=True,
        )
        self._complete()

    def _complete(self) -> None:
        if self._is_done():
            return
        assert self._completion is not None
        self._state = ExecutionState.COMPLETED
        if self._safety_timer is not None:
            self._safety_timer.cancel()
        if self._surface is not None:
            self._surface.flush_streams()
        records = self._transcript.freeze()
        self._completion.set_result(
            RunResult(
                transcript=list(records),
                timed_out=self._timed_out,
                execution_time=time.monotonic() - self._started_at,
            )
        )

    # --- error reporting --------------------------------------------------

    def _record_error(self, error: BaseException, force: bool = False) -> None:
        if isinstance(error, SystemExit):
            self._record_exit(error, force=force)
            return
        content, line = describe_exception(error)
        self._transcript.append(RecordKind.ERROR, content, line, force=force)

    def _record_exit(self, error: SystemExit, force: bool = False) -> None:
        if error.code in (None, 0):
            return
        self._transcript.append(RecordKind.ERROR, f"SystemExit: {error.code}", force=force)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        if error is None or isinstance(error, (ExecutionTimeout, asyncio.CancelledError)):
            logger.debug("loop_exception", message=context.get("message"))
            return
        if self._is_done():
            return
        self._record_error(error)

    # --- cooperative deadline ---------------------------------------------

    def _install_tracer(self) -> None:
        if not self._cooperative_deadline or self._tracing:
            return
        self._previous_trace = sys.gettrace()
        sys.settrace(create_deadline_tracer(self._deadline))
        self._tracing = True

    def _uninstall_tracer(self) -> None:
        if not self._tracing:
            return
        sys.settrace(self._previous_trace)
        self._previous_trace = None
        self._tracing = False

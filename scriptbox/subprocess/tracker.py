"""Pending-work tracking for timers, intervals and script tasks."""

from __future__ import annotations

import asyncio
import contextvars
import itertools
from typing import Any, Callable, Coroutine, Dict, Optional, Union

import structlog

from .constants import MIN_INTERVAL_MS
from .deadline import ExecutionTimeout

logger = structlog.get_logger()

# Set inside the context the script body runs in; inherited by every timer
# callback and task the script schedules.
SCRIPT_SCOPE: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "scriptbox_script_scope", default=False
)

Cancellable = Union[asyncio.TimerHandle, "asyncio.Task[Any]"]


class PendingWorkTracker:
    """Tracks the asynchronous work a script leaves behind.

    ``set_timeout`` / ``set_interval`` schedule real loop timers and record
    their handle in the pending set. Tasks created from script scope are
    recorded through a task factory installed on the loop. An empty pending
    set means no outstanding work is known; work the tracker cannot see
    (bare futures, executor jobs, raw ``loop.call_later``) is not counted.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._loop = loop
        self._on_error = on_error
        self._ids = itertools.count(1)
        self._pending: Dict[int, Cancellable] = {}
        self._task_ids: Dict["asyncio.Task[Any]", int] = {}
        self._previous_factory: Any = None
        self._factory_installed = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def clear(self) -> None:
        """Forget all handles without cancelling them."""
        self._pending.clear()
        self._task_ids.clear()

    # --- timers -----------------------------------------------------------

    def set_timeout(self, callback: Callable[..., Any], delay_ms: float = 0, *args: Any) -> int:
        if not callable(callback):
            raise TypeError("set_timeout() callback must be callable")

        handle_id = next(self._ids)

        def fire() -> None:
            # a one-shot timer stops being pending as soon as it fires
            self._pending.pop(handle_id, None)
            self._invoke(callback, args)

        self._pending[handle_id] = self._loop.call_later(_seconds(delay_ms), fire)
        return handle_id

    def set_interval(self, callback: Callable[..., Any], delay_ms: float = 0, *args: Any) -> int:
        if not callable(callback):
            raise TypeError("set_interval() callback must be callable")

        handle_id = next(self._ids)
        period = _seconds(max(delay_ms or 0, MIN_INTERVAL_MS))

        def fire() -> None:
            if handle_id not in self._pending:
                return
            # re-arm first so a failing callback keeps its schedule
            self._pending[handle_id] = self._loop.call_later(period, fire)
            self._invoke(callback, args)

        self._pending[handle_id] = self._loop.call_later(period, fire)
        return handle_id

    def clear_timeout(self, handle: Any = None) -> None:
        self._cancel(handle)

    def clear_interval(self, handle: Any = None) -> None:
        self._cancel(handle)

    def _cancel(self, handle: Any) -> None:
        try:
            entry = self._pending.pop(handle, None)
        except TypeError:
            # unhashable handle, nothing to clear
            return
        if entry is not None:
            entry.cancel()

    def _invoke(self, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                self._loop.create_task(result)
        except ExecutionTimeout:
            # the safety timer reports the timeout
            return
        except (Exception, SystemExit, KeyboardInterrupt) as e:
            self._report(e)

    def _report(self, error: BaseException) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.warning("script_work_error", error=str(error))

    # --- tasks ------------------------------------------------------------

    def install_task_factory(self) -> None:
        if self._factory_installed:
            return
        self._previous_factory = self._loop.get_task_factory()
        self._loop.set_task_factory(self._task_factory)
        self._factory_installed = True

    def uninstall_task_factory(self) -> None:
        if not self._factory_installed:
            return
        self._loop.set_task_factory(self._previous_factory)
        self._previous_factory = None
        self._factory_installed = False

    def _task_factory(
        self,
        loop: asyncio.AbstractEventLoop,
        coro: Coroutine[Any, Any, Any],
        **kwargs: Any,
    ) -> "asyncio.Task[Any]":
        context = kwargs.get("context")
        in_script = context.get(SCRIPT_SCOPE, False) if context is not None else SCRIPT_SCOPE.get()
        if in_script:
            coro = self._guarded(coro)

        if self._previous_factory is not None:
            task = self._previous_factory(loop, coro, **kwargs)
        else:
            task = asyncio.Task(coro, loop=loop, **kwargs)

        if in_script:
            self.track_task(task)
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, Any]) -> Any:
        # SystemExit or KeyboardInterrupt leaving a task would stop the loop
        try:
            return await coro
        except (SystemExit, KeyboardInterrupt) as e:
            self._report(e)
            return None

    def track_task(self, task: "asyncio.Task[Any]") -> int:
        handle_id = next(self._ids)
        self._pending[handle_id] = task
        self._task_ids[task] = handle_id
        task.add_done_callback(self._task_done)
        return handle_id

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        handle_id = self._task_ids.pop(task, None)
        if handle_id is not None:
            self._pending.pop(handle_id, None)
        if task.cancelled():
            return
        # retrieving the exception here keeps it out of the loop's GC report
        error = task.exception()
        if isinstance(error, Exception):
            self._report(error)

    # --- teardown ---------------------------------------------------------

    def cancel_all(self) -> int:
        """Cancel every pending timer, interval and task."""
        entries = list(self._pending.values())
        self._pending.clear()
        self._task_ids.clear()
        for entry in entries:
            entry.cancel()
        if entries:
            logger.debug("pending_work_cancelled", count=len(entries))
        return len(entries)


def _seconds(delay_ms: Any) -> float:
    try:
        delay = float(delay_ms or 0)
    except (TypeError, ValueError):
        delay = 0.0
    return max(delay, 0.0) / 1000.0

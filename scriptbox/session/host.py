"""Caller-facing bridge to isolated script runs."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import Any

import structlog

from ..protocol.messages import OutputRecord, RunRequest, RunResult
from .config import SessionConfig
from .manager import RunAbandoned, Session, SessionStartError

logger = structlog.get_logger()

TranscriptCallback = Callable[[list[OutputRecord]], Any]


class SessionHost:
    """Runs scripts one at a time, each in a brand new worker process.

    Starting a run always retires the previous one first, so at most one
    worker is alive per host. A run that is superseded by a later
    ``execute`` or by ``terminate`` raises ``RunAbandoned`` instead of
    delivering its result.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self._config = config or SessionConfig()
        self._session: Session | None = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._submissions: set[asyncio.Task[None]] = set()

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def current_session(self) -> Session | None:
        return self._session

    async def execute(self, source: str, timeout_ms: int | None = None) -> RunResult:
        """Run ``source`` and return its transcript."""
        request = RunRequest(
            source=source,
            timeout_ms=timeout_ms if timeout_ms is not None else self._config.default_timeout_ms,
        )
        return await self.run(request)

    async def run(self, request: RunRequest) -> RunResult:
        async with self._lock:
            self._generation += 1
            generation = self._generation
            await self._retire()
            session = Session(config=self._config)
            self._session = session

        logger.debug(
            "run_started",
            session_id=session.session_id,
            generation=generation,
            timeout_ms=request.timeout_ms,
        )
        try:
            await session.start()
            result = await session.run(request)
        except SessionStartError:
            if generation != self._generation:
                raise RunAbandoned("Run superseded during worker startup") from None
            raise
        finally:
            if self._session is session:
                self._session = None
            # the worker serves exactly one run
            await session.terminate()

        if generation != self._generation:
            raise RunAbandoned("Run superseded before its result was delivered")

        logger.debug(
            "run_finished",
            session_id=session.session_id,
            records=len(result.transcript),
            timed_out=result.timed_out,
        )
        return result

    def submit(self, request: RunRequest, callback: TranscriptCallback) -> asyncio.Task[None]:
        """Run in the background and hand the transcript to ``callback`` once.

        ``callback`` is never invoked for a run that gets abandoned.
        """
        task = asyncio.create_task(self.run_with_callback(request, callback))
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)
        return task

    async def run_with_callback(self, request: RunRequest, callback: TranscriptCallback) -> None:
        """Run and deliver the transcript; abandoned runs deliver nothing."""
        try:
            result = await self.run(request)
        except RunAbandoned:
            logger.debug("Submitted run abandoned")
            return
        except SessionStartError as e:
            logger.error("Submitted run failed to start", error=str(e))
            return

        try:
            callback(list(result.transcript))
        except Exception as e:
            logger.error("Transcript callback failed", error=str(e))

    async def terminate(self) -> None:
        """Tear down the current worker, if any. Never raises."""
        async with self._lock:
            self._generation += 1
            await self._retire()

    async def _retire(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.terminate()
        except Exception as e:
            logger.warning("Error retiring session", session_id=session.session_id, error=str(e))

    async def close(self) -> None:
        await self.terminate()
        for task in list(self._submissions):
            task.cancel()
        for task in list(self._submissions):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> SessionHost:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class DebouncedRunner:
    """Auto-run helper for editors: only the last request in a burst runs.

    Every ``schedule`` call restarts the delay; when it elapses the most
    recent request runs through the host and ``callback`` receives the
    transcript.
    """

    def __init__(
        self,
        host: SessionHost,
        callback: TranscriptCallback,
        auto_run_delay_ms: int | None = None,
    ) -> None:
        self._host = host
        self._callback = callback
        self._delay_ms = (
            auto_run_delay_ms if auto_run_delay_ms is not None else host.config.auto_run_delay_ms
        )
        self._pending: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self, request: RunRequest, auto_run_delay_ms: int | None = None) -> None:
        self.cancel()
        delay_ms = auto_run_delay_ms if auto_run_delay_ms is not None else self._delay_ms
        self._pending = asyncio.create_task(self._run_after(request, delay_ms / 1000.0))

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def _run_after(self, request: RunRequest, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._host.run_with_callback(request, self._callback)

    async def aclose(self) -> None:
        task, self._pending = self._pending, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

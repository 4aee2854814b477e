from __future__ import annotations

import asyncio
import contextlib
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import psutil
import structlog

from ..protocol.messages import (
    CompleteMessage,
    ErrorMessage,
    ExecuteMessage,
    Message,
    MessageType,
    OutputRecord,
    ReadyMessage,
    RecordKind,
    RunRequest,
    RunResult,
    TerminateMessage,
)
from ..protocol.transport import PipeTransport, ProtocolError
from ..subprocess.constants import TIMEOUT_MESSAGE
from .config import SessionConfig

logger = structlog.get_logger()

WORKER_MODULE = "scriptbox.subprocess.worker"

# Directory containing the scriptbox package, prepended to the worker's
# PYTHONPATH so the worker imports the same code as the host
_PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])


class SessionState(str, Enum):
    """Session lifecycle states."""

    CREATING = "creating"
    WARMING = "warming"
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"
    TERMINATED = "terminated"


class SessionStartError(RuntimeError):
    """The worker process could not be started or never became ready."""


class RunAbandoned(Exception):
    """The run was superseded or terminated before it completed."""


@dataclass
class SessionInfo:
    """Information about a session."""

    session_id: str
    state: SessionState
    created_at: float
    pid: int | None = None
    execution_count: int = 0


def _worker_env() -> dict[str, str]:
    env = dict(os.environ)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = (
        _PACKAGE_ROOT if not existing else os.pathsep.join([_PACKAGE_ROOT, existing])
    )
    return env


def kill_process_tree(pid: int) -> int:
    """Kill a process and all of its descendants. Returns the number signalled."""
    try:
        parent = psutil.Process(pid)
        victims = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return 0

    killed = 0
    for proc in victims:
        with contextlib.suppress(psutil.NoSuchProcess):
            proc.kill()
            killed += 1
    return killed


def _synthesized_result(content: str, *, timed_out: bool, started_at: float) -> RunResult:
    return RunResult(
        transcript=[OutputRecord(type=RecordKind.ERROR, content=content)],
        timed_out=timed_out,
        execution_time=time.monotonic() - started_at,
    )


class Session:
    """One isolated context: a worker subprocess that serves a single run."""

    def __init__(
        self,
        session_id: str | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self._config = config or SessionConfig()
        self._process: asyncio.subprocess.Process | None = None
        self._transport: PipeTransport | None = None
        self._state = SessionState.CREATING
        self._info = SessionInfo(
            session_id=self.session_id,
            state=self._state,
            created_at=time.time(),
        )
        self._lock = asyncio.Lock()
        self._ready_event = asyncio.Event()
        self._exited_event = asyncio.Event()
        self._cancel_event = asyncio.Event()
        self._completions: dict[str, asyncio.Future[CompleteMessage | ErrorMessage]] = {}
        self._receive_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def info(self) -> SessionInfo:
        """Get session information."""
        self._info.state = self._state
        return self._info

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        """Check if session process is alive."""
        if not self._process:
            return False
        return self._process.returncode is None and self._state not in (
            SessionState.TERMINATED,
            SessionState.ERROR,
            SessionState.CREATING,
        )

    async def start(self) -> None:
        """Start the worker process and wait until it reports ready."""
        async with self._lock:
            if self._state != SessionState.CREATING:
                raise RuntimeError(f"Cannot start session in state {self._state.value}")

            try:
                self._process = await asyncio.create_subprocess_exec(
                    self._config.python_path,
                    "-m",
                    WORKER_MODULE,
                    self.session_id,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=_worker_env(),
                )
            except OSError as e:
                self._state = SessionState.ERROR
                logger.error("Failed to spawn worker", session_id=self.session_id, error=str(e))
                raise SessionStartError(f"Failed to spawn worker: {e}") from e

            self._info.pid = self._process.pid
            self._transport = PipeTransport(self._process, use_msgpack=True)
            await self._transport.start()
            self._receive_task = asyncio.create_task(self._receive_loop())
            self._stderr_task = asyncio.create_task(self._drain_stderr())
            if not self._cancel_event.is_set():
                self._state = SessionState.WARMING

        ready = asyncio.create_task(self._ready_event.wait())
        exited = asyncio.create_task(self._exited_event.wait())
        cancelled = asyncio.create_task(self._cancel_event.wait())
        try:
            await asyncio.wait(
                {ready, exited, cancelled},
                timeout=self._config.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for t in (ready, exited, cancelled):
                t.cancel()

        if self._cancel_event.is_set():
            # terminate() may have run before the process existed
            await self.terminate()
            raise SessionStartError("Session terminated during startup")

        if not self._ready_event.is_set():
            reason = "exited during startup" if self._exited_event.is_set() else "timed out"
            await self.terminate()
            self._state = SessionState.ERROR
            raise SessionStartError(f"Worker {reason} before becoming ready")

        async with self._lock:
            self._state = SessionState.READY
        logger.info("Session started", session_id=self.session_id, pid=self.pid)

    async def _receive_loop(self) -> None:
        """Background task to receive messages from the worker."""
        try:
            while self._transport is not None:
                try:
                    message = await self._transport.receive_message()
                except ProtocolError as e:
                    if self._state not in (SessionState.TERMINATED,):
                        logger.debug("Worker channel closed", session_id=self.session_id, error=str(e))
                    break
                self._route_message(message)
        finally:
            self._exited_event.set()

    def _route_message(self, message: Message) -> None:
        if message.type == MessageType.READY:
            assert isinstance(message, ReadyMessage)
            logger.debug("Received ready message", session_id=message.session_id)
            self._ready_event.set()

        elif message.type == MessageType.COMPLETE:
            assert isinstance(message, CompleteMessage)
            future = self._completions.get(message.execution_id)
            if future is None or future.done():
                logger.warning(
                    "Discarding unexpected completion",
                    session_id=self.session_id,
                    execution_id=message.execution_id,
                )
                return
            future.set_result(message)

        elif message.type == MessageType.ERROR:
            assert isinstance(message, ErrorMessage)
            logger.error(
                "Worker reported error",
                session_id=self.session_id,
                execution_id=message.execution_id,
                exception_type=message.exception_type,
                exception_message=message.exception_message,
            )
            future = self._completions.get(message.execution_id or "")
            if future is not None and not future.done():
                future.set_result(message)

        else:
            logger.warning("Unexpected message from worker", type=message.type, id=message.id)

    async def _drain_stderr(self) -> None:
        """Relay worker stderr (its structlog output) into the host log."""
        if not self._process or not self._process.stderr:
            return
        stream = self._process.stderr
        while True:
            try:
                line = await stream.readline()
            except (ConnectionError, ValueError):
                break
            if not line:
                break
            logger.debug(
                "worker_stderr",
                session_id=self.session_id,
                line=line.decode("utf-8", errors="replace").rstrip(),
            )

    async def run(self, request: RunRequest) -> RunResult:
        """Send one run to the worker and wait for its single completion.

        The worker enforces the run timeout itself. If it has not answered
        ``hard_kill_grace_ms`` after the timeout, the process tree is killed
        and a timeout transcript is synthesized.

        Raises:
            RunAbandoned: If the session is terminated before the run completes
        """
        async with self._lock:
            if self._cancel_event.is_set():
                raise RunAbandoned("Session terminated")
            if self._state != SessionState.READY or not self._transport:
                raise RuntimeError(f"Cannot run in state {self._state.value}")
            self._state = SessionState.BUSY
            self._info.execution_count += 1

        message = ExecuteMessage(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            code=request.source,
            timeout=request.timeout_ms,
            grace_period_ms=self._config.grace_period_ms,
            poll_interval_ms=self._config.poll_interval_ms,
            transcript_capacity=self._config.transcript_capacity,
        )
        future: asyncio.Future[CompleteMessage | ErrorMessage] = (
            asyncio.get_running_loop().create_future()
        )
        self._completions[message.id] = future
        started_at = time.monotonic()

        try:
            try:
                await self._transport.send_message(message)
            except ProtocolError as e:
                if self._cancel_event.is_set():
                    raise RunAbandoned("Session terminated") from e
                logger.warning("Failed to send execute", session_id=self.session_id, error=str(e))

            hard_limit = (request.timeout_ms + self._config.hard_kill_grace_ms) / 1000.0
            return await self._await_completion(future, hard_limit, request, started_at)
        finally:
            self._completions.pop(message.id, None)

    async def _await_completion(
        self,
        future: asyncio.Future[CompleteMessage | ErrorMessage],
        hard_limit: float,
        request: RunRequest,
        started_at: float,
    ) -> RunResult:
        cancel_wait = asyncio.create_task(self._cancel_event.wait())
        exit_wait = asyncio.create_task(self._exited_event.wait())
        try:
            done, _ = await asyncio.wait(
                {future, cancel_wait, exit_wait},
                timeout=hard_limit,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for t in (cancel_wait, exit_wait):
                if not t.done():
                    t.cancel()

        if future.done() and not future.cancelled():
            complete = future.result()
            if isinstance(complete, ErrorMessage):
                return _synthesized_result(
                    f"Worker error: {complete.exception_type}: {complete.exception_message}",
                    timed_out=False,
                    started_at=started_at,
                )
            return RunResult(
                transcript=complete.logs,
                timed_out=complete.timed_out,
                execution_time=complete.execution_time,
            )

        if self._cancel_event.is_set():
            raise RunAbandoned("Session terminated")

        if self._exited_event.is_set():
            returncode = await self._wait_exit()
            logger.warning(
                "Worker exited before completing",
                session_id=self.session_id,
                returncode=returncode,
            )
            return _synthesized_result(
                f"Worker exited unexpectedly (exit code {returncode})",
                timed_out=False,
                started_at=started_at,
            )

        logger.warning(
            "Worker missed hard deadline, killing",
            session_id=self.session_id,
            timeout_ms=request.timeout_ms,
        )
        await self.terminate()
        return _synthesized_result(
            TIMEOUT_MESSAGE.format(timeout_ms=request.timeout_ms),
            timed_out=True,
            started_at=started_at,
        )

    async def _wait_exit(self) -> int | None:
        if not self._process:
            return None
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=self._config.shutdown_timeout)
        except TimeoutError:
            return self._process.returncode

    async def shutdown(self) -> None:
        """Ask the worker to stop, then make sure it is gone."""
        if self._state == SessionState.TERMINATED:
            return
        if self._transport and self.is_alive:
            try:
                await self._transport.send_message(
                    TerminateMessage(id=str(uuid.uuid4()), timestamp=time.time())
                )
                await self._wait_exit()
            except ProtocolError as e:
                logger.debug("Terminate message not delivered", session_id=self.session_id, error=str(e))
        await self.terminate()

    async def terminate(self) -> None:
        """Forcefully terminate the session. Safe in any state."""
        self._cancel_event.set()
        already_terminated = self._state == SessionState.TERMINATED
        self._state = SessionState.TERMINATED

        # repeat calls still reap a worker spawned after the first call
        if self._process and self._process.returncode is None:
            killed = kill_process_tree(self._process.pid)
            logger.debug("Killed worker process tree", session_id=self.session_id, count=killed)
        if self._process:
            with contextlib.suppress(ProcessLookupError):
                await self._process.wait()

        for task in (self._receive_task, self._stderr_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if self._transport:
            try:
                await self._transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport (non-critical): {e}")
            self._transport = None

        for future in self._completions.values():
            if not future.done():
                future.cancel()

        if not already_terminated:
            logger.info("Session terminated", session_id=self.session_id)

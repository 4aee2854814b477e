from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Optional

import structlog

_LOG_LEVEL = logging.getLevelName(os.environ.get("SCRIPTBOX_WORKER_LOG_LEVEL", "INFO").upper())
if not isinstance(_LOG_LEVEL, int):
    _LOG_LEVEL = logging.INFO

# Configure logger to use stderr, not stdout
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=False),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(_LOG_LEVEL),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    cache_logger_on_first_use=True,
)

from ..protocol.messages import (
    CompleteMessage,
    ErrorMessage,
    ExecuteMessage,
    Message,
    MessageType,
    ReadyMessage,
    RunRequest,
)
from ..protocol.transport import MessageTransport, ProtocolError
from .execution import ExecutionSession

logger = structlog.get_logger()


class SubprocessWorker:
    """Worker process side of one isolated context.

    Accepts a single ``execute`` request, runs it in a fresh
    ``ExecutionSession`` and answers with exactly one ``complete`` message.
    A ``terminate`` message stops the worker at any point.
    """

    def __init__(self, transport: MessageTransport, session_id: str) -> None:
        self._transport = transport
        self._session_id = session_id
        self._running = False
        self._stop_event = asyncio.Event()
        self._active_task: Optional[asyncio.Task[None]] = None
        self._handled_execute = False

    async def start(self) -> None:
        """Start the worker and send ready message."""
        self._running = True
        ready_msg = ReadyMessage(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            session_id=self._session_id,
        )
        await self._transport.send_message(ready_msg)

    async def execute(self, message: ExecuteMessage) -> None:
        """Run one script and send its transcript back."""
        execution_id = message.id
        logger.info("execute_started", execution_id=execution_id, timeout_ms=message.timeout)

        session = ExecutionSession(
            RunRequest(source=message.code, timeout_ms=message.timeout),
            grace_period_ms=message.grace_period_ms,
            poll_interval_ms=message.poll_interval_ms,
            transcript_capacity=message.transcript_capacity,
        )

        try:
            result = await session.run()
            await self._transport.send_message(
                CompleteMessage(
                    id=str(uuid.uuid4()),
                    timestamp=time.time(),
                    execution_id=execution_id,
                    logs=result.transcript,
                    timed_out=result.timed_out,
                    execution_time=result.execution_time,
                )
            )
            logger.info(
                "execute_completed",
                execution_id=execution_id,
                records=len(result.transcript),
                timed_out=result.timed_out,
                execution_time=round(result.execution_time, 4),
            )
        except ProtocolError as e:
            logger.error("Failed to send completion", execution_id=execution_id, error=str(e))
            await self._send_error(e, execution_id)
        except Exception as e:
            logger.error("Execution management error", execution_id=execution_id, error=str(e))
            await self._send_error(e, execution_id)
        finally:
            # one run per worker
            self.stop()

    async def _send_error(self, error: BaseException, execution_id: Optional[str]) -> None:
        error_msg = ErrorMessage(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            traceback="".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
            exception_type=type(error).__name__,
            exception_message=str(error),
            execution_id=execution_id,
        )
        try:
            await self._transport.send_message(error_msg)
        except ProtocolError:
            logger.warning("Failed to send error message", execution_id=execution_id)

    async def _next_message(self) -> Optional[Message]:
        """Wait for a message unless the worker is stopped first."""
        receive = asyncio.create_task(self._transport.receive_message())
        stopped = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {receive, stopped}, return_when=asyncio.FIRST_COMPLETED
            )
            if receive in done:
                return receive.result()
            return None
        finally:
            for t in (receive, stopped):
                if not t.done():
                    t.cancel()
            await asyncio.gather(receive, stopped, return_exceptions=True)

    async def run(self) -> None:
        """Main message loop."""
        await self.start()

        try:
            while self._running:
                try:
                    message = await self._next_message()
                except ProtocolError as e:
                    logger.info("Transport closed", error=str(e))
                    break

                if message is None:
                    break

                if message.type == MessageType.EXECUTE:
                    assert isinstance(message, ExecuteMessage)
                    if self._handled_execute:
                        await self._send_error(
                            RuntimeError("Worker already handled an execute request"),
                            message.id,
                        )
                        continue
                    self._handled_execute = True
                    # run in background so terminate can still be received
                    self._active_task = asyncio.create_task(self.execute(message))

                elif message.type == MessageType.TERMINATE:
                    logger.info("Terminate requested", session_id=self._session_id)
                    break

                else:
                    logger.warning("Unexpected message", type=message.type, id=message.id)
        finally:
            self._running = False
            if self._active_task and not self._active_task.done():
                self._active_task.cancel()
                await asyncio.gather(self._active_task, return_exceptions=True)

    def stop(self) -> None:
        """Stop the worker."""
        self._running = False
        self._stop_event.set()


def _isolate_stdio() -> tuple[int, int]:
    """Move the protocol pipes off fds 0/1.

    Returns duplicated (read_fd, write_fd) for the protocol. Afterwards fd 0
    reads from /dev/null and fd 1 is an alias of stderr, so nothing a script
    does with the standard streams can corrupt the frame protocol.
    """
    read_fd = os.dup(0)
    write_fd = os.dup(1)

    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    os.dup2(2, 1)

    sys.stdin = open(os.devnull, "r")
    return read_fd, write_fd


async def main() -> None:
    """Main entry point for subprocess worker."""
    if len(sys.argv) < 2:
        logger.error("Session ID required")
        sys.exit(1)

    session_id = sys.argv[1]
    loop = asyncio.get_running_loop()

    logger.info(
        "worker_start",
        session_id=session_id,
        python_version=sys.version.split()[0],
        pid=os.getpid(),
    )

    read_fd, write_fd = _isolate_stdio()

    reader = asyncio.StreamReader()
    reader_protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: reader_protocol, os.fdopen(read_fd, "rb", buffering=0))

    # Need to use StreamReaderProtocol for proper drain support
    writer_transport, writer_protocol = await loop.connect_write_pipe(
        lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()),
        os.fdopen(write_fd, "wb", buffering=0),
    )
    writer = asyncio.StreamWriter(writer_transport, writer_protocol, reader, loop)

    transport = MessageTransport(reader=reader, writer=writer, use_msgpack=True)
    await transport.start()

    worker = SubprocessWorker(transport, session_id)
    try:
        await worker.run()
    finally:
        worker.stop()
        await transport.close()
        logger.info("worker_exit", session_id=session_id)


if __name__ == "__main__":
    asyncio.run(main())

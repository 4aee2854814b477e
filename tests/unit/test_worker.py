"""Unit tests for the worker message loop with an in-memory transport."""

import pytest
import asyncio

from scriptbox.protocol.messages import (
    CompleteMessage,
    ErrorMessage,
    MessageType,
    ReadyMessage,
)
from scriptbox.protocol.transport import ProtocolError
from scriptbox.subprocess.worker import SubprocessWorker
from tests.fixtures.messages import MessageFactory, assert_message_type


class QueueTransport:
    """Stands in for MessageTransport; messages are fed through a queue."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []

    async def send_message(self, message):
        self.sent.append(message)

    async def receive_message(self, timeout=None):
        message = await self.incoming.get()
        if isinstance(message, Exception):
            raise message
        return message


@pytest.mark.unit
class TestSubprocessWorker:
    """Test SubprocessWorker request handling."""

    @pytest.mark.asyncio
    async def test_ready_then_single_completion(self):
        transport = QueueTransport()
        worker = SubprocessWorker(transport, "session-1")
        execute = MessageFactory.execute(
            "console.log('a')\nset_timeout(lambda: console.log('b'), 0)\nconsole.log('c')",
            timeout=1000,
            grace_period_ms=10,
            poll_interval_ms=5,
        )
        await transport.incoming.put(execute)

        await asyncio.wait_for(worker.run(), timeout=5.0)

        assert [m.type for m in transport.sent] == [MessageType.READY, MessageType.COMPLETE]
        ready, complete = transport.sent
        assert isinstance(ready, ReadyMessage)
        assert ready.session_id == "session-1"
        assert_message_type(complete, MessageType.COMPLETE)
        assert isinstance(complete, CompleteMessage)
        assert complete.execution_id == execute.id
        assert [r.content for r in complete.logs] == ["a", "c", "b"]
        assert not complete.timed_out

    @pytest.mark.asyncio
    async def test_timeout_is_reported_in_completion(self):
        transport = QueueTransport()
        worker = SubprocessWorker(transport, "session-2")
        await transport.incoming.put(MessageFactory.execute("while True: pass", timeout=100))

        await asyncio.wait_for(worker.run(), timeout=5.0)

        complete = transport.sent[-1]
        assert complete.timed_out
        assert complete.logs[-1].content == "Execution timeout after 100ms"

    @pytest.mark.asyncio
    async def test_terminate_stops_worker(self):
        transport = QueueTransport()
        worker = SubprocessWorker(transport, "session-3")
        await transport.incoming.put(MessageFactory.terminate())

        await asyncio.wait_for(worker.run(), timeout=5.0)

        assert [m.type for m in transport.sent] == [MessageType.READY]

    @pytest.mark.asyncio
    async def test_terminate_cancels_running_script(self):
        transport = QueueTransport()
        worker = SubprocessWorker(transport, "session-4")
        await transport.incoming.put(MessageFactory.execute("await asyncio.sleep(10)", timeout=5000))
        await transport.incoming.put(MessageFactory.terminate())

        await asyncio.wait_for(worker.run(), timeout=5.0)

        assert MessageType.COMPLETE not in [m.type for m in transport.sent]

    @pytest.mark.asyncio
    async def test_second_execute_is_rejected(self):
        transport = QueueTransport()
        worker = SubprocessWorker(transport, "session-5")
        first = MessageFactory.execute("await asyncio.sleep(0.05)", timeout=1000, grace_period_ms=10)
        second = MessageFactory.execute("console.log('second')", timeout=1000)
        await transport.incoming.put(first)
        await transport.incoming.put(second)

        await asyncio.wait_for(worker.run(), timeout=5.0)

        errors = [m for m in transport.sent if isinstance(m, ErrorMessage)]
        completes = [m for m in transport.sent if isinstance(m, CompleteMessage)]
        assert len(errors) == 1
        assert errors[0].execution_id == second.id
        assert [c.execution_id for c in completes] == [first.id]

    @pytest.mark.asyncio
    async def test_closed_transport_ends_loop(self):
        transport = QueueTransport()
        worker = SubprocessWorker(transport, "session-6")
        await transport.incoming.put(ProtocolError("Connection closed"))

        await asyncio.wait_for(worker.run(), timeout=5.0)

        assert [m.type for m in transport.sent] == [MessageType.READY]

    @pytest.mark.asyncio
    async def test_undeliverable_completion_is_reported_as_error(self):
        transport = OversizedTransport()
        worker = SubprocessWorker(transport, "session-7")
        execute = MessageFactory.execute("console.log('x')", timeout=1000, grace_period_ms=10)
        await transport.incoming.put(execute)

        await asyncio.wait_for(worker.run(), timeout=5.0)

        assert [m.type for m in transport.sent] == [MessageType.READY, MessageType.ERROR]
        error = transport.sent[-1]
        assert error.execution_id == execute.id
        assert error.exception_type == "ProtocolError"
        assert "Frame too large" in error.exception_message


class OversizedTransport(QueueTransport):
    """Refuses completions the way an over-limit frame is refused."""

    async def send_message(self, message):
        if isinstance(message, CompleteMessage):
            raise ProtocolError("Frame too large: 20000000 bytes")
        await super().send_message(message)

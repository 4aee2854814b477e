"""Integration tests for session management."""

import pytest
import asyncio

import psutil

from scriptbox.protocol.messages import RunRequest
from scriptbox.session.config import SessionConfig
from scriptbox.session.manager import (
    RunAbandoned,
    Session,
    SessionStartError,
    SessionState,
)
from tests.fixtures.sessions import create_session


@pytest.mark.integration
class TestSessionLifecycle:
    """Test session lifecycle management."""

    @pytest.mark.asyncio
    async def test_session_startup_and_terminate(self):
        """Test that a session can start and terminate cleanly."""
        async with create_session() as session:
            assert session.state == SessionState.READY
            assert session.is_alive
            pid = session.pid
            assert pid is not None

        assert session.state == SessionState.TERMINATED
        assert not session.is_alive
        assert not psutil.pid_exists(pid)

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self):
        async with create_session() as session:
            with pytest.raises(RuntimeError):
                await session.start()

    @pytest.mark.asyncio
    async def test_bad_interpreter_fails_to_start(self):
        session = Session(config=SessionConfig(python_path="/nonexistent/python"))
        with pytest.raises(SessionStartError):
            await session.start()
        assert session.state == SessionState.ERROR

    @pytest.mark.asyncio
    async def test_terminate_before_start(self):
        session = Session()
        await session.terminate()
        await session.terminate()
        assert session.state == SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_shutdown_is_graceful(self):
        session = Session(config=SessionConfig(ready_timeout=10.0))
        await session.start()
        await session.shutdown()
        assert session.state == SessionState.TERMINATED


@pytest.mark.integration
class TestSessionRuns:
    """Test single runs on a session."""

    @pytest.mark.asyncio
    async def test_single_run(self):
        async with create_session() as session:
            result = await session.run(RunRequest(source="console.log('hi')", timeout_ms=1000))

            assert [r.content for r in result.transcript] == ["hi"]
            assert session.info.execution_count == 1

    @pytest.mark.asyncio
    async def test_terminate_during_run_abandons(self):
        async with create_session() as session:
            run = asyncio.create_task(
                session.run(RunRequest(source="await asyncio.sleep(10)", timeout_ms=5000))
            )
            await asyncio.sleep(0.1)
            await session.terminate()

            with pytest.raises(RunAbandoned):
                await run

    @pytest.mark.asyncio
    async def test_run_after_terminate_abandons(self):
        async with create_session() as session:
            await session.terminate()
            with pytest.raises(RunAbandoned):
                await session.run(RunRequest(source="console.log(1)", timeout_ms=1000))

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_hard_kill_takes_process_tree(self):
        async with create_session(hard_kill_grace_ms=500) as session:
            pid = session.pid
            result = await session.run(
                RunRequest(
                    source=(
                        "import subprocess, sys, time\n"
                        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
                        "time.sleep(60)"
                    ),
                    timeout_ms=200,
                )
            )

            assert result.timed_out
            assert session.state == SessionState.TERMINATED
            assert not psutil.pid_exists(pid)

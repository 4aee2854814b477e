"""Integration tests for SessionHost with real worker processes."""

import pytest
import asyncio
import time

from scriptbox.protocol.messages import RecordKind, RunRequest
from scriptbox.session.host import DebouncedRunner, SessionHost
from scriptbox.session.manager import RunAbandoned


@pytest.mark.integration
class TestHostExecution:
    """Test end-to-end runs through the host."""

    @pytest.mark.asyncio
    async def test_round_trip(self, host, test_scripts):
        result = await host.execute(test_scripts["ordering"])

        assert [r.content for r in result.transcript] == ["a", "c", "b"]
        assert [r.line for r in result.transcript] == [2, 4, 3]
        assert not result.timed_out
        assert host.current_session is None

    @pytest.mark.asyncio
    async def test_syntax_error(self, host, test_scripts):
        result = await host.execute(test_scripts["syntax_error"])

        assert len(result.transcript) == 1
        assert result.transcript[0].type == RecordKind.ERROR
        assert result.has_errors()

    @pytest.mark.asyncio
    async def test_fresh_context_per_run(self, host):
        await host.execute("import builtins\nbuiltins.leaked = 1\nshared = 2")
        result = await host.execute(
            "import builtins\n"
            "console.log(hasattr(builtins, 'leaked'), 'shared' in globals())"
        )

        assert [r.content for r in result.transcript] == ["False False"]

    @pytest.mark.asyncio
    async def test_log_flood_is_capped(self, host, test_scripts):
        result = await host.execute(test_scripts["flood"])

        assert len(result.transcript) == 1001
        assert result.transcript[-1].type == RecordKind.WARN

    @pytest.mark.asyncio
    async def test_large_transcript_fits_one_frame(self, host):
        result = await host.execute("for i in range(600):\n    console.log('x' * 20000)")

        assert not result.timed_out
        logs = [r for r in result.transcript if r.type == RecordKind.LOG]
        assert 0 < len(logs) < 600
        assert all(r.content == "x" * 20000 for r in logs)
        assert result.transcript[-1].type == RecordKind.WARN
        assert "bytes" in result.transcript[-1].content

    @pytest.mark.asyncio
    async def test_oversized_record_is_clipped(self, host):
        result = await host.execute("console.log('y' * 200000)")

        assert len(result.transcript) == 1
        assert result.transcript[0].content.endswith("chars]")
        assert len(result.transcript[0].content) < 200000

    @pytest.mark.asyncio
    async def test_raw_fd_writes_do_not_corrupt_protocol(self, host):
        result = await host.execute(
            "import os\n"
            "os.write(1, b'not a frame')\n"
            "console.log('still here')"
        )

        assert [r.content for r in result.transcript] == ["still here"]

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(self, host):
        result = await host.execute("await asyncio.sleep(30)")

        assert result.timed_out
        assert result.transcript[-1].content == (
            f"Execution timeout after {host.config.default_timeout_ms}ms"
        )


@pytest.mark.integration
class TestHostTimeouts:
    """Test timeout enforcement across the process boundary."""

    @pytest.mark.asyncio
    async def test_interval_times_out(self, host, test_scripts):
        result = await host.execute(test_scripts["interval_forever"], timeout_ms=300)

        assert result.timed_out
        assert result.transcript[-1].content == "Execution timeout after 300ms"

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self, host, test_scripts):
        started = time.monotonic()
        result = await host.execute(test_scripts["infinite_loop"], timeout_ms=300)
        elapsed = time.monotonic() - started

        assert result.timed_out
        assert [r.content for r in result.transcript] == ["Execution timeout after 300ms"]
        assert 0.3 <= result.execution_time < 0.3 + host.config.hard_kill_grace_ms / 1000.0
        # wall clock also covers spawning the worker
        assert 0.3 <= elapsed < 5.0

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_blocking_call_is_killed(self, host):
        result = await host.execute("import time\ntime.sleep(60)", timeout_ms=200)

        assert result.timed_out
        assert [r.content for r in result.transcript] == ["Execution timeout after 200ms"]

    @pytest.mark.asyncio
    async def test_worker_crash_is_reported(self, host):
        result = await host.execute("console.log('bye')\nimport os\nos._exit(7)")

        assert not result.timed_out
        assert [r.content for r in result.transcript] == [
            "Worker exited unexpectedly (exit code 7)"
        ]


@pytest.mark.integration
class TestHostSupersession:
    """Test that newer runs and terminate() abandon older runs."""

    @pytest.mark.asyncio
    async def test_new_run_supersedes_old(self, host):
        first = asyncio.create_task(host.execute("await asyncio.sleep(10)", timeout_ms=5000))
        await asyncio.sleep(0.2)

        second = await host.execute("console.log('second')")

        assert [r.content for r in second.transcript] == ["second"]
        with pytest.raises(RunAbandoned):
            await first

    @pytest.mark.asyncio
    async def test_terminate_abandons_run(self, host):
        run = asyncio.create_task(host.execute("await asyncio.sleep(10)", timeout_ms=5000))
        await asyncio.sleep(0.2)

        await host.terminate()

        with pytest.raises(RunAbandoned):
            await run
        assert host.current_session is None

    @pytest.mark.asyncio
    async def test_terminate_is_safe_in_any_state(self, host):
        await host.terminate()
        await host.terminate()
        await host.execute("console.log(1)")
        await host.terminate()

    @pytest.mark.asyncio
    async def test_submit_delivers_once(self, host):
        delivered = []

        task = host.submit(RunRequest(source="console.log('cb')", timeout_ms=1000), delivered.append)
        await task

        assert len(delivered) == 1
        assert [r.content for r in delivered[0]] == ["cb"]

    @pytest.mark.asyncio
    async def test_superseded_submit_never_delivers(self, host):
        delivered = []

        first = host.submit(
            RunRequest(source="await asyncio.sleep(10)", timeout_ms=5000), delivered.append
        )
        await asyncio.sleep(0.2)
        second = host.submit(RunRequest(source="console.log('last')", timeout_ms=1000), delivered.append)
        await asyncio.gather(first, second)

        assert len(delivered) == 1
        assert [r.content for r in delivered[0]] == ["last"]


@pytest.mark.integration
class TestDebouncedRunner:
    """Test auto-run debouncing."""

    @pytest.mark.asyncio
    async def test_only_last_request_runs(self, host):
        delivered = []
        done = asyncio.Event()

        def callback(records):
            delivered.append(records)
            done.set()

        runner = DebouncedRunner(host, callback, auto_run_delay_ms=50)
        for i in range(3):
            runner.schedule(RunRequest(source=f"console.log({i})", timeout_ms=1000))
            await asyncio.sleep(0.01)

        await asyncio.wait_for(done.wait(), timeout=10.0)
        await asyncio.sleep(0.2)

        assert len(delivered) == 1
        assert [r.content for r in delivered[0]] == ["2"]
        assert not runner.pending
        await runner.aclose()

    @pytest.mark.asyncio
    async def test_cancel_prevents_run(self, fast_config):
        delivered = []
        async with SessionHost(fast_config) as host:
            runner = DebouncedRunner(host, delivered.append)
            runner.schedule(RunRequest(source="console.log(1)", timeout_ms=1000), auto_run_delay_ms=50)
            assert runner.pending

            runner.cancel()
            await asyncio.sleep(0.2)

            assert delivered == []
            assert host.current_session is None

#!/usr/bin/env python3
"""scriptbox - run scripts in throwaway worker processes."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import structlog

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from scriptbox.protocol.messages import OutputRecord, RunRequest, RunResult
from scriptbox.session.config import SessionConfig
from scriptbox.session.host import DebouncedRunner, SessionHost
from scriptbox.session.manager import RunAbandoned

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def show(result: RunResult) -> None:
    for record in result.transcript:
        line = "" if record.line is None else f":{record.line}"
        print(f"  [{record.type.value:5}{line:>4}] {record.content}")
    state = "timed out" if result.timed_out else "settled"
    print(f"  -> {state} in {result.execution_time:.3f}s\n")


async def demo_ordering(host: SessionHost) -> None:
    """Synchronous output first, then timers in due order."""
    print("=== Ordering Demo ===\n")
    code = """
console.log("start")
set_timeout(lambda: console.log("timer 20ms"), 20)
set_timeout(lambda: console.log("timer 0ms"), 0)

async def fetch():
    await asyncio.sleep(0.05)
    console.log({"status": "ok", "items": [1, 2, 3]})

asyncio.create_task(fetch())
print("end of script body")
"""
    show(await host.execute(code))


async def demo_errors(host: SessionHost) -> None:
    """Syntax errors, runtime errors and failing callbacks."""
    print("=== Error Demo ===\n")
    show(await host.execute("const x = ;"))
    show(await host.execute("console.log('before')\nundefined_name"))
    show(await host.execute("set_timeout(lambda: 1 / 0, 0)\nconsole.log('body done')"))


async def demo_timeouts(host: SessionHost) -> None:
    """Runaway scripts are stopped and the transcript still comes back."""
    print("=== Timeout Demo ===\n")
    show(await host.execute("set_interval(lambda: console.log('tick'), 100)", timeout_ms=350))
    show(await host.execute("while True:\n    pass", timeout_ms=300))


async def demo_auto_run(host: SessionHost) -> None:
    """Simulates an editor: only the last keystroke's script runs."""
    print("=== Auto-run Demo ===\n")
    delivered = asyncio.Event()

    def on_transcript(records: list[OutputRecord]) -> None:
        show(RunResult(transcript=records))
        delivered.set()

    runner = DebouncedRunner(host, on_transcript, auto_run_delay_ms=200)
    for draft in ("console.log('h')", "console.log('he')", "console.log('hello')"):
        runner.schedule(RunRequest(source=draft, timeout_ms=1000))
        await asyncio.sleep(0.05)

    await delivered.wait()
    await runner.aclose()


async def main() -> None:
    """Main entry point."""
    print("scriptbox - isolated script runs")
    print("=" * 40)

    try:
        async with SessionHost(SessionConfig.from_env()) as host:
            await demo_ordering(host)
            await demo_errors(host)
            await demo_timeouts(host)
            await demo_auto_run(host)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
    except RunAbandoned:
        logger.warning("Demo run abandoned")
    except Exception as e:
        logger.error("Demo error", error=str(e), exc_info=True)


if __name__ == "__main__":
    asyncio.run(main())

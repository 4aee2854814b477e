from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from functools import partial
from pathlib import Path
from typing import Never, Sequence

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

from .protocol.messages import RecordKind, RunResult
from .session.config import SessionConfig
from .session.host import SessionHost

_CONSOLE = Console()

_KIND_STYLES = {
    RecordKind.LOG: "white",
    RecordKind.WARN: "bold yellow",
    RecordKind.ERROR: "bold red",
}


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich."""

    def error(self, message: str) -> Never:
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_usage()
        raise SystemExit(2)


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {raw!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number of milliseconds, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = _RichArgumentParser(
        prog="scriptbox",
        description=(
            "Run a Python script in an isolated worker process and print its transcript.\n"
            "console.log/error/warn, print, alert/confirm/prompt and\n"
            "set_timeout/set_interval are available to the script."
        ),
        epilog=(
            "Examples:\n"
            "  scriptbox demo.py\n"
            "  scriptbox demo.py --timeout-ms 3000 --json\n"
            "  echo 'console.log(1 + 1)' | scriptbox -"
        ),
        formatter_class=partial(RawTextRichHelpFormatter, max_help_position=34),
    )
    parser.add_argument("script", help="Path of the script to run, or - for stdin")
    parser.add_argument(
        "--timeout-ms",
        type=_positive_int,
        default=None,
        help="Wall-clock budget for the run (default: SCRIPTBOX_DEFAULT_TIMEOUT_MS or 5000)",
    )
    parser.add_argument("--json", action="store_true", help="Print records as JSON lines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show host debug logging")
    return parser


def render_transcript(result: RunResult, console: Console = _CONSOLE) -> None:
    table = Table(show_header=True, header_style="bold", expand=True)
    table.add_column("#", justify="right", style="dim", width=5)
    table.add_column("Type", width=6)
    table.add_column("Line", justify="right", style="dim", width=5)
    table.add_column("Content", overflow="fold")

    for index, record in enumerate(result.transcript, start=1):
        style = _KIND_STYLES[record.type]
        table.add_row(
            str(index),
            f"[{style}]{record.type.value}[/{style}]",
            "" if record.line is None else str(record.line),
            record.content,
            style=None if record.type == RecordKind.LOG else style,
        )

    console.print(table)
    status = "[bold red]timed out[/bold red]" if result.timed_out else "[green]settled[/green]"
    console.print(f"{status} in {result.execution_time:.3f}s, {len(result.transcript)} records")


def _configure_logging(verbose: bool) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


async def _run(source: str, timeout_ms: int | None, config: SessionConfig) -> RunResult:
    async with SessionHost(config) as host:
        return await host.execute(source, timeout_ms)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = SessionConfig.from_env()
    except ValueError as e:
        parser.error(f"invalid environment configuration: {e}")

    if args.script == "-":
        source = sys.stdin.read()
    else:
        path = Path(args.script)
        if not path.is_file():
            _CONSOLE.print(f"[bold red]No such script:[/bold red] {path}")
            return 2
        source = path.read_text(encoding="utf-8")

    result = asyncio.run(_run(source, args.timeout_ms, config))

    if args.json:
        for record in result.transcript:
            sys.stdout.write(json.dumps(record.model_dump(mode="json", exclude_none=True)) + "\n")
    else:
        render_transcript(result)

    return 1 if result.has_errors() else 0


if __name__ == "__main__":
    sys.exit(main())

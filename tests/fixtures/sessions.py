"""Session-related test fixtures."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from scriptbox.session.config import SessionConfig
from scriptbox.session.manager import Session


@asynccontextmanager
async def create_session(
    ready_timeout: float = 10.0,
    hard_kill_grace_ms: int = 1500,
) -> AsyncGenerator[Session, None]:
    """Create a started session with automatic cleanup."""
    config = SessionConfig(
        grace_period_ms=20,
        poll_interval_ms=10,
        hard_kill_grace_ms=hard_kill_grace_ms,
        ready_timeout=ready_timeout,
        shutdown_timeout=2.0,
    )
    session = Session(config=config)
    try:
        await session.start()
        yield session
    finally:
        await session.terminate()

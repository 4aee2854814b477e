"""Pytest configuration and shared fixtures for the scriptbox test suite."""

import pytest
import pytest_asyncio
import sys
import logging
from pathlib import Path
from typing import AsyncGenerator

# Add the repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from scriptbox.session.config import SessionConfig
from scriptbox.session.host import SessionHost


# Configure logging for tests
logging.basicConfig(level=logging.WARNING)


@pytest.fixture
def fast_config() -> SessionConfig:
    """Session config with short settling and startup limits."""
    return SessionConfig(
        default_timeout_ms=2000,
        grace_period_ms=20,
        poll_interval_ms=10,
        hard_kill_grace_ms=1500,
        ready_timeout=10.0,
        shutdown_timeout=2.0,
    )


@pytest_asyncio.fixture
async def host(fast_config: SessionConfig) -> AsyncGenerator[SessionHost, None]:
    """Create a session host that's properly cleaned up."""
    host = SessionHost(fast_config)
    yield host
    await host.close()


@pytest.fixture
def test_scripts() -> dict[str, str]:
    """Collection of test scripts."""
    return {
        "ordering": """
console.log("a")
set_timeout(lambda: console.log("b"), 0)
console.log("c")
""",
        "syntax_error": "const x = ;",
        "runtime_error": "console.log(undefined_name)",
        "async": """
await asyncio.sleep(0.01)
console.log("Done")
""",
        "interval_forever": "set_interval(lambda: console.log('tick'), 10)",
        "infinite_loop": "while True: pass",
        "flood": "for i in range(2000):\n    console.log(i)",
    }


# Test markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Tests that spawn worker processes")
    config.addinivalue_line("markers", "slow: Tests that take >1s")


# Timeout configuration
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add timeout based on markers."""
    for item in items:
        if item.get_closest_marker("timeout"):
            continue
        if item.get_closest_marker("slow"):
            item.add_marker(pytest.mark.timeout(30))
        elif item.get_closest_marker("unit"):
            item.add_marker(pytest.mark.timeout(5))
        else:
            item.add_marker(pytest.mark.timeout(20))

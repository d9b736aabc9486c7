"""
pytest configuration for the test suite.

Adds src directory to Python path for imports and resets shared state
between tests.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _reset_global_state():
    """Drop registered circuit breakers and log context after each test."""
    yield
    from core.logging.context import clear_log_context
    from core.resilience.circuit_breaker import reset_circuit_breakers

    reset_circuit_breakers()
    clear_log_context()

"""
Core library: Reusable, infrastructure-agnostic components.

Modules:
    resilience  - Circuit breaker, retry with backoff, bounded concurrency
    logging     - Structured JSON logging with correlation IDs
    errors      - Error classification and exception hierarchy

Design Principles:
    - No dependencies on a specific stream source or storage backend
    - All modules are independently testable
    - Async-first where applicable
"""

from .types import ErrorKind

__version__ = "0.1.0"

__all__ = [
    "ErrorKind",
]

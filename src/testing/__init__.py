"""Test doubles for the deployment and backup layers.

An in-memory container runtime with an httpx transport that answers as the
containers bound to each port, and a simulated clock.
"""

from src.testing.mocks import (
    HEALTHY,
    HTTP_FAIL,
    SLOW,
    UNHEALTHY,
    FakeClock,
    MockContainerRuntime,
)

__all__ = [
    "HEALTHY",
    "HTTP_FAIL",
    "SLOW",
    "UNHEALTHY",
    "FakeClock",
    "MockContainerRuntime",
]

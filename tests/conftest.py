"""
Shared pytest configuration for spansend tests.

This module configures pytest and imports all fixtures for use in tests.
"""

import pytest

# Import all fixtures from spansend.testing
from spansend.testing import (
    collector,
    client_registry,
    client_factory,
    metrics,
    sender_settings,
    config_store,
    sender,
    pki,
)

# Re-export fixtures so they're available to all tests
__all__ = [
    "collector",
    "client_registry",
    "client_factory",
    "metrics",
    "sender_settings",
    "config_store",
    "sender",
    "pki",
]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests",
    )


def pytest_runtest_setup(item):
    """
    Skip slow tests unless --run-slow is passed.
    """
    if "slow" in item.keywords and not item.config.getoption("--run-slow"):
        pytest.skip("slow tests not enabled (use --run-slow)")


@pytest.fixture
def payload():
    """
    Provides a small encoded span batch.
    """
    from spansend import EncodedPayload

    return EncodedPayload(
        data=b'[{"traceId":"5af7183fb1d4cf5f","id":"6b221d5bc9e6496c","name":"get"}]',
        content_type="application/json",
    )

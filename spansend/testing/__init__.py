"""
spansend - Testing Utilities

Test doubles and pytest fixtures for code built on spansend:
    from spansend.testing import RecordingCollector, collector
"""

from .mocks import (
    RecordedRequest,
    RecordingCollector,
    TestPKI,
)

from .fixtures import (
    collector,
    client_registry,
    client_factory,
    metrics,
    sender_settings,
    config_store,
    sender,
    pki,
)

__all__ = [
    # Mocks
    "RecordedRequest",
    "RecordingCollector",
    "TestPKI",

    # Fixtures
    "collector",
    "client_registry",
    "client_factory",
    "metrics",
    "sender_settings",
    "config_store",
    "sender",
    "pki",
]

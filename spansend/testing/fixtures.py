"""
Pytest fixtures for spansend testing.

Import these fixtures in your conftest.py or test files.
"""

import pytest
from typing import Any, Dict

from prometheus_client import CollectorRegistry

from spansend.config import ConfigStore
from spansend.observability.metrics import SenderMetrics
from spansend.sender import HttpSender
from spansend.transport.client import TransportClientFactory
from spansend.transport.registry import ClientRegistry
from .mocks import RecordingCollector, TestPKI


TEST_PREFIX = "reporter.tracing.output"
TEST_BASE_URL = "http://collector.test:9411"
TEST_PATH = "/api/v2/spans"


@pytest.fixture
def collector():
    """
    Provides an in-process collector.

    Returns:
        RecordingCollector answering 202 to every request

    Example:
        def test_headers(sender, collector):
            sender.send(EncodedPayload(b"[]")).result(timeout=5)
            assert collector.requests[0].headers["b3"] == "0"
    """
    collector = RecordingCollector()
    yield collector
    collector.release()


@pytest.fixture
def client_registry():
    """
    Provides an isolated client registry, cleared after the test.
    """
    registry = ClientRegistry()
    yield registry
    registry.clear(grace_period=0.1)


@pytest.fixture
def client_factory(collector):
    """
    Provides a client factory routed to the test collector.
    """
    return TransportClientFactory(transport=collector.transport)


@pytest.fixture
def metrics():
    """
    Provides sender metrics on a private Prometheus registry.
    """
    return SenderMetrics(registry=CollectorRegistry())


@pytest.fixture
def sender_settings() -> Dict[str, Any]:
    """
    Provides a valid sender configuration.

    Returns:
        Dict of dotted keys, sending uncompressed to the test collector
    """
    return {
        "reporter.outputServer.bootstrapServer": TEST_BASE_URL,
        "reporter.outputServer.enabled": True,
        f"{TEST_PREFIX}.url": TEST_PATH,
        f"{TEST_PREFIX}.compress": False,
        f"{TEST_PREFIX}.maxRequests": 4,
    }


@pytest.fixture
def config_store(sender_settings):
    """
    Provides a ConfigStore populated from ``sender_settings``.
    """
    return ConfigStore(sender_settings)


@pytest.fixture
def sender(config_store, client_registry, client_factory, metrics):
    """
    Provides an initialized HttpSender wired to the test collector.

    Closed after the test.
    """
    sender = HttpSender(
        registry=client_registry,
        client_factory=client_factory,
        metrics=metrics,
        grace_period=0.5,
    )
    sender.init(config_store, TEST_PREFIX)
    yield sender
    sender.close()


@pytest.fixture(scope="session")
def pki():
    """
    Provides a CA and client certificate/key (generated once per session).
    """
    return TestPKI.generate()

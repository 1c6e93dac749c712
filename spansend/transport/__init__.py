"""
spansend - Transport Layer

Components:
    - RequestDispatcher: bounded worker pool with a zero-capacity handoff
    - Call / NoOpCall: async handles for submitted requests
    - TransportClientFactory / ManagedClient: httpx client + dispatcher
    - ClientRegistry: one published client per endpoint identity
    - build_ssl_context: mutual TLS from PEM strings

Example:
    from spansend.transport import ClientRegistry, TransportClientFactory

    registry = ClientRegistry()
    factory = TransportClientFactory()
    client = registry.acquire(config.identity, lambda: factory.build(config))
"""

from .call import (
    Call,
    CallState,
    NoOpCall,
    SkipReason,
)

from .dispatcher import (
    RequestDispatcher,
    DEFAULT_KEEP_ALIVE,
)

from .client import (
    ManagedClient,
    TransportClientFactory,
    basic_auth_hook,
    credential_hook,
    DEFAULT_GRACE_PERIOD,
)

from .registry import (
    ClientRegistry,
    default_registry,
    needs_renewal,
)

from .tls import build_ssl_context

__all__ = [
    # Calls
    "Call",
    "CallState",
    "NoOpCall",
    "SkipReason",

    # Dispatcher
    "RequestDispatcher",
    "DEFAULT_KEEP_ALIVE",

    # Clients
    "ManagedClient",
    "TransportClientFactory",
    "basic_auth_hook",
    "credential_hook",
    "DEFAULT_GRACE_PERIOD",

    # Registry
    "ClientRegistry",
    "default_registry",
    "needs_renewal",

    # TLS
    "build_ssl_context",
]

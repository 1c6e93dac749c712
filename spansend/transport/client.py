"""
Managed transport clients.

A ManagedClient pairs one ``httpx.Client`` with the RequestDispatcher that
runs its requests. TransportClientFactory builds them from a SenderConfig:
timeouts, connection limits, the basic-auth request stage and, when enabled,
the mutual TLS context.

Building a client is the expensive part of publishing one, so the registry
calls the factory outside of its lock.
"""

import logging
import time
from typing import Any, Callable, Optional

import httpx

from spansend.config import Identity, SenderConfig, basic_credential
from spansend.transport.dispatcher import DEFAULT_KEEP_ALIVE, RequestDispatcher
from spansend.transport.tls import build_ssl_context


logger = logging.getLogger(__name__)

AUTH_HEADER = "Authorization"
DEFAULT_GRACE_PERIOD = 1.0

RequestHook = Callable[[httpx.Request], None]


def credential_hook(credential: str) -> RequestHook:
    """Request stage that sets the Authorization header on every request."""

    def set_authorization(request: httpx.Request) -> None:
        request.headers[AUTH_HEADER] = credential

    return set_authorization


def basic_auth_hook(username: str, password: str) -> RequestHook:
    """Request stage that sets basic credentials built from a user/password."""
    return credential_hook(basic_credential(username, password))


class ManagedClient:
    """One HTTP client and its bounded dispatcher, published under an Identity.

    Shared read-only by every sender resolving to the same Identity until it
    is closed.
    """

    def __init__(
        self,
        identity: Identity,
        http: httpx.Client,
        dispatcher: RequestDispatcher,
    ) -> None:
        self._identity = identity
        self._http = http
        self._dispatcher = dispatcher
        self._created_at = time.time()
        self._closed = False

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def http(self) -> httpx.Client:
        return self._http

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> bool:
        """Drain and close the client.

        Stops the dispatcher accepting work, waits up to ``grace_period``
        seconds for in-flight requests, then cancels whatever is left and
        closes the connection pool.

        Returns:
            True if in-flight work finished within the grace period
        """
        if self._closed:
            return True
        self._closed = True

        self._dispatcher.shutdown()
        drained = self._dispatcher.await_termination(grace_period)
        if not drained:
            self._dispatcher.cancel_all()

        self._http.close()
        logger.debug(
            f"Closed managed client for {self._identity.url} (drained: {drained})"
        )
        return drained

    def get_stats(self) -> dict[str, Any]:
        return {
            "url": self._identity.url,
            "created_at": self._created_at,
            "closed": self._closed,
            "dispatcher": self._dispatcher.get_stats(),
        }

    def __repr__(self) -> str:
        return f"<ManagedClient {self._identity.url} closed={self._closed}>"


class TransportClientFactory:
    """Builds ManagedClients from sender configuration.

    Args:
        transport: Optional httpx transport used instead of the network,
            mainly for tests
        keep_alive: Seconds an idle dispatcher worker lives
    """

    def __init__(
        self,
        transport: Optional[httpx.BaseTransport] = None,
        keep_alive: float = DEFAULT_KEEP_ALIVE,
    ) -> None:
        self._transport = transport
        self._keep_alive = keep_alive

    def build(self, config: SenderConfig) -> ManagedClient:
        """Build a ManagedClient for ``config``.

        Raises:
            TLSMaterialError: If TLS is enabled and its material is malformed
        """
        request_hooks: list[RequestHook] = []
        if config.auth_enabled:
            request_hooks.append(credential_hook(config.credential))

        verify: Any = True
        if config.tls_enabled:
            verify = build_ssl_context(
                config.tls_ca_cert, config.tls_cert, config.tls_key
            )

        http = httpx.Client(
            timeout=httpx.Timeout(config.timeout_seconds),
            limits=httpx.Limits(
                max_connections=config.max_requests,
                max_keepalive_connections=config.max_requests,
            ),
            verify=verify,
            event_hooks={"request": request_hooks},
            follow_redirects=False,
            transport=self._transport,
        )
        dispatcher = RequestDispatcher(config.max_requests, keep_alive=self._keep_alive)

        logger.debug(
            f"Built managed client for {config.url} "
            f"(max requests: {config.max_requests}, "
            f"timeout: {config.timeout_ms}ms, "
            f"auth: {config.auth_enabled}, tls: {config.tls_enabled})"
        )
        return ManagedClient(config.identity, http, dispatcher)

"""
HTTP sender for encoded telemetry batches.

HttpSender turns encoded batches into HTTP POSTs to a collector and owns the
lifecycle of the managed client it sends through:

- ``init`` resolves the first configuration snapshot and acquires the
  managed client for its identity from the registry.
- ``send`` builds one request and submits it to the client's dispatcher,
  blocking while the dispatcher is saturated.
- ``update_configs`` merges changes, re-resolves the snapshot and renews the
  client when the URL, credentials or TLS material changed.
- ``close`` retires the client registered under the current identity.

Failures never reach the caller of ``send``. A disabled sender or a request
that cannot be assembled yields an already-succeeded NoOpCall whose
``skipped`` attribute says why; network failures fail the returned Call.

Note:
    Managed clients are shared by every sender with the same identity and are
    not reference counted. Closing or renewing one sender retires the client
    for all of them; their later sends fail through the returned Call.
"""

import logging
import threading
from typing import Any, Mapping, Optional

import httpx

from spansend.config import ConfigStore, SenderConfig, resolve_sender_config
from spansend.exceptions import DispatcherShutdownError
from spansend.observability.metrics import SenderMetrics
from spansend.payload import EncodedPayload, gzip_bytes
from spansend.transport.call import Call, NoOpCall, SkipReason
from spansend.transport.client import (
    AUTH_HEADER,
    DEFAULT_GRACE_PERIOD,
    ManagedClient,
    TransportClientFactory,
)
from spansend.transport.registry import (
    ClientRegistry,
    default_registry,
    needs_renewal,
)


logger = logging.getLogger(__name__)

SENDER_NAME = "http"

# Stops B3-aware proxies in front of the collector from tracing the export
# requests themselves.
B3_HEADER = "b3"
B3_NOT_SAMPLED = "0"


class HttpSender:
    """Sends encoded batches to a collector over HTTP.

    Example:
        store = ConfigStore.from_file("reporter.yaml")
        sender = HttpSender()
        sender.init(store, "reporter.tracing.output")
        call = sender.send(EncodedPayload(data, "application/json"))
        call.add_done_callback(on_done)
        ...
        sender.close()
    """

    def __init__(
        self,
        registry: Optional[ClientRegistry] = None,
        client_factory: Optional[TransportClientFactory] = None,
        metrics: Optional[SenderMetrics] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        """Initialize the sender.

        Args:
            registry: Client registry (defaults to the process-wide one)
            client_factory: Builds managed clients
            metrics: Metrics collector (disabled by default)
            grace_period: Seconds in-flight requests get before a retired
                client cancels them
        """
        self._registry = registry if registry is not None else default_registry()
        self._factory = client_factory or TransportClientFactory()
        self._metrics = metrics or SenderMetrics(enabled=False)
        self._grace_period = grace_period

        self._lock = threading.Lock()
        self._store: Optional[ConfigStore] = None
        self._prefix = ""
        # (snapshot, client) replaced as one unit so send() never sees a mix
        self._state: tuple[SenderConfig, Optional[ManagedClient]] = (
            SenderConfig(),
            None,
        )
        self._closed = False

    @property
    def name(self) -> str:
        return SENDER_NAME

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def config(self) -> SenderConfig:
        return self._state[0]

    @property
    def client(self) -> Optional[ManagedClient]:
        return self._state[1]

    def init(self, config: ConfigStore, prefix: str) -> None:
        """Resolve configuration and acquire the managed client.

        Args:
            config: Configuration store, kept and updated by update_configs
            prefix: Sender key prefix, e.g. ``reporter.tracing.output``

        Raises:
            TLSMaterialError: If TLS is enabled and its material is malformed
        """
        with self._lock:
            self._store = config
            self._prefix = prefix
            self._closed = False

            snapshot = resolve_sender_config(config, prefix)
            self._state = (snapshot, None)
            if snapshot.enabled:
                self._state = (snapshot, self._acquire(snapshot))

        logger.info(
            f"Initialized {SENDER_NAME} sender '{prefix}' "
            f"(url: {snapshot.url or '<none>'}, enabled: {snapshot.enabled})"
        )

    def is_available(self) -> bool:
        return self._state[0].enabled and not self._closed

    def send(self, payload: EncodedPayload) -> Call:
        """Submit one payload.

        Blocks while the client's dispatcher has ``max_requests`` requests in
        flight. Never raises.

        Returns:
            A Call for the request, or a NoOpCall when nothing was sent
        """
        while True:
            if self._closed:
                return self._skip(SkipReason.CLOSED)

            state = self._state
            config, client = state
            if not config.enabled:
                return self._skip(SkipReason.DISABLED)

            try:
                if client is None:
                    client = self._ensure_client()
                request = self._new_request(client.http, config, payload)
            except Exception as e:
                logger.debug(f"Send failed for '{self._prefix}', dropping batch: {e}")
                return self._skip(SkipReason.ASSEMBLY_FAILED)

            call = Call(client.http, request)
            try:
                client.dispatcher.submit(call)
            except DispatcherShutdownError as e:
                # Lost a race with renewal or close; retry against the new state
                if self._closed or self._state is not state:
                    logger.debug(
                        f"Client for '{self._prefix}' changed during send, retrying"
                    )
                    continue
                self._metrics.track_call(self._prefix, call)
                call.fail(e)
                self._metrics.record_send(self._prefix, "rejected")
                return call

            self._metrics.track_call(self._prefix, call)
            self._metrics.record_send(self._prefix, "submitted")
            return call

    def update_configs(self, changes: Mapping[str, Any]) -> None:
        """Apply configuration changes.

        The new snapshot always replaces the old one. The managed client is
        renewed only when the URL, credentials or TLS material changed: the
        old client is retired first, then a new one is acquired. Sends made
        meanwhile block until the new client is ready and go out through it.

        Raises:
            RuntimeError: If called before init()
            TLSMaterialError: If the renewed client cannot be built; the
                sender then retries the build on the next send
        """
        with self._lock:
            if self._store is None:
                raise RuntimeError("init() must be called before update_configs()")

            self._store.update(changes)
            old_config, old_client = self._state
            new_config = resolve_sender_config(self._store, self._prefix)

            if not needs_renewal(old_config, new_config):
                self._state = (new_config, old_client)
                if old_client is None and new_config.enabled and not self._closed:
                    self._state = (new_config, self._acquire(new_config))
                return

            logger.info(
                f"Renewing client for sender '{self._prefix}' "
                f"({old_config.url or '<none>'} -> {new_config.url or '<none>'})"
            )
            # Sends arriving while the old client drains wait on the lock in
            # _ensure_client and go out through the new client
            self._state = (new_config, None)
            self._registry.retire(old_config.identity, self._grace_period)
            self._metrics.record_renewal(self._prefix)

            if new_config.enabled and not self._closed:
                self._state = (new_config, self._acquire(new_config))

    def close(self) -> None:
        """Retire the client registered under the current identity.

        Waits up to the grace period for in-flight requests, then cancels
        the rest. Later sends return a NoOpCall.
        """
        with self._lock:
            config, _ = self._state
            self._closed = True
            self._registry.retire(config.identity, self._grace_period)
            self._state = (config, None)

        logger.info(f"Closed {SENDER_NAME} sender '{self._prefix}'")

    def get_stats(self) -> dict[str, Any]:
        config, client = self._state
        return {
            "name": SENDER_NAME,
            "prefix": self._prefix,
            "url": config.url,
            "enabled": config.enabled,
            "available": self.is_available(),
            "compress": config.compress,
            "auth": config.auth_enabled,
            "tls": config.tls_enabled,
            "client": client.get_stats() if client else None,
        }

    def _acquire(self, config: SenderConfig) -> ManagedClient:
        return self._registry.acquire(
            config.identity, lambda: self._factory.build(config)
        )

    def _ensure_client(self) -> ManagedClient:
        with self._lock:
            config, client = self._state
            if client is None:
                if not config.enabled or self._closed:
                    raise RuntimeError(f"Sender '{self._prefix}' has no client")
                client = self._acquire(config)
                self._state = (config, client)
            return client

    def _new_request(
        self,
        http: httpx.Client,
        config: SenderConfig,
        payload: EncodedPayload,
    ) -> httpx.Request:
        headers = {
            B3_HEADER: B3_NOT_SAMPLED,
            "Content-Type": payload.content_type,
        }
        if config.auth_enabled:
            headers[AUTH_HEADER] = config.credential

        body = bytes(payload.data)
        if config.compress:
            body = gzip_bytes(body)
            headers["Content-Encoding"] = "gzip"

        return http.build_request("POST", config.parsed_url, content=body, headers=headers)

    def _skip(self, reason: SkipReason) -> NoOpCall:
        self._metrics.record_send(self._prefix, f"skipped_{reason.value}")
        return NoOpCall(reason)

    def __enter__(self) -> "HttpSender":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

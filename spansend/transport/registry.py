"""
Registry of managed clients keyed by endpoint identity.

The registry guarantees that at most one ManagedClient is published per
Identity. Building a client happens outside the registry lock; only the
final check-then-publish step is serialized. When two callers race for the
same Identity, the loser's client is closed before anyone else can see it
and the winner's client is returned to both.

Identities are created by configuration events, not per request, so the
single registry lock sees negligible contention.

Note:
    Identity does not include TLS material. A TLS-only change keeps the same
    key and is handled by retiring the old client before building the new
    one, which ``needs_renewal`` triggers.
"""

import logging
import threading
from typing import Any, Callable, Optional

from spansend.config import Identity, SenderConfig
from spansend.transport.client import DEFAULT_GRACE_PERIOD, ManagedClient


logger = logging.getLogger(__name__)

RENEWAL_FIELDS = ("url", "username", "password", "tls_ca_cert", "tls_cert", "tls_key")


def needs_renewal(old: SenderConfig, new: SenderConfig) -> bool:
    """Whether a config change requires replacing the managed client."""
    return any(getattr(old, name) != getattr(new, name) for name in RENEWAL_FIELDS)


class ClientRegistry:
    """Thread-safe store of published ManagedClients.

    Usually shared process-wide through ``default_registry()``; tests create
    their own for isolation.

    Example:
        registry = ClientRegistry()
        client = registry.acquire(config.identity, lambda: factory.build(config))
        ...
        registry.retire(config.identity)
    """

    def __init__(self) -> None:
        self._clients: dict[Identity, ManagedClient] = {}
        self._lock = threading.Lock()

        # Metrics
        self._total_published = 0
        self._total_discarded = 0
        self._total_retired = 0

    def get(self, identity: Identity) -> Optional[ManagedClient]:
        with self._lock:
            return self._clients.get(identity)

    def acquire(
        self,
        identity: Identity,
        build: Callable[[], ManagedClient],
    ) -> ManagedClient:
        """Return the published client for ``identity``, publishing one if needed.

        Args:
            identity: Endpoint identity
            build: Builds a new, unpublished client; called without the lock

        Returns:
            The single published ManagedClient for ``identity``

        Raises:
            Exception: Whatever ``build`` raises, e.g. TLSMaterialError
        """
        existing = self.get(identity)
        if existing is not None:
            return existing

        candidate = build()

        with self._lock:
            winner = self._clients.get(identity)
            if winner is None:
                self._clients[identity] = candidate
                self._total_published += 1
                logger.info(f"Published managed client for {identity.url}")
                return candidate
            self._total_discarded += 1

        logger.debug(f"Discarding duplicate managed client for {identity.url}")
        candidate.close(grace_period=0)
        return winner

    def remove(self, identity: Identity) -> Optional[ManagedClient]:
        """Unpublish the client for ``identity`` without closing it."""
        with self._lock:
            return self._clients.pop(identity, None)

    def retire(
        self,
        identity: Identity,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> bool:
        """Unpublish and close the client for ``identity``.

        The entry is removed first, so a new client can be published as soon
        as this returns. In-flight requests get up to ``grace_period``
        seconds before they are cancelled.

        Returns:
            True if a client was registered under ``identity``
        """
        client = self.remove(identity)
        if client is None:
            return False

        with self._lock:
            self._total_retired += 1

        drained = client.close(grace_period)
        logger.info(
            f"Retired managed client for {identity.url}"
            + ("" if drained else " (in-flight requests cancelled)")
        )
        return True

    def clear(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        """Retire every published client."""
        with self._lock:
            identities = list(self._clients)
        for identity in identities:
            self.retire(identity, grace_period)

    def __contains__(self, identity: Identity) -> bool:
        with self._lock:
            return identity in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "clients": len(self._clients),
                "total_published": self._total_published,
                "total_discarded": self._total_discarded,
                "total_retired": self._total_retired,
            }


_default_registry = ClientRegistry()


def default_registry() -> ClientRegistry:
    """Get the process-wide client registry."""
    return _default_registry

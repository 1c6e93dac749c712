"""
Prometheus metrics for spansend senders.

Tracks what happens to every ``send``: whether it was submitted or skipped,
how submitted calls ended, how long they took, and how often the managed
client was renewed.
"""

import time
from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    REGISTRY,
)


class SenderMetrics:
    """
    Collects Prometheus metrics for one or more senders.

    Metrics include:
    - Send counters by outcome (submitted, skipped_disabled, ...)
    - Call result counters by final state
    - Call duration histogram
    - In-flight call gauge
    - Client renewal counter

    All metrics carry a ``sender`` label.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        enabled: bool = True,
    ):
        """
        Initialize metrics collector.

        Args:
            registry: Prometheus registry (defaults to global REGISTRY)
            enabled: Whether metrics collection is enabled
        """
        self.registry = registry or REGISTRY
        self.enabled = enabled

        if not self.enabled:
            return

        self.sends_total = Counter(
            "spansend_sends_total",
            "Total number of send() calls by outcome",
            ["sender", "outcome"],
            registry=self.registry,
        )

        self.call_results_total = Counter(
            "spansend_call_results_total",
            "Total number of submitted calls by final state",
            ["sender", "state"],
            registry=self.registry,
        )

        self.call_duration_seconds = Histogram(
            "spansend_call_duration_seconds",
            "Time from submission to completion of a call",
            ["sender"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )

        self.inflight_calls = Gauge(
            "spansend_inflight_calls",
            "Number of submitted calls not yet completed",
            ["sender"],
            registry=self.registry,
        )

        self.client_renewals_total = Counter(
            "spansend_client_renewals_total",
            "Total number of managed client renewals",
            ["sender"],
            registry=self.registry,
        )

    def record_send(self, sender: str, outcome: str) -> None:
        """
        Record the outcome of one send().

        Args:
            sender: Sender key prefix
            outcome: submitted, rejected, or skipped_<reason>
        """
        if not self.enabled:
            return

        self.sends_total.labels(sender=sender, outcome=outcome).inc()

    def track_call(self, sender: str, call) -> None:
        """
        Track a submitted call until it completes.

        Args:
            sender: Sender key prefix
            call: Call returned by the dispatcher submission
        """
        if not self.enabled:
            return

        start_time = time.time()
        self.inflight_calls.labels(sender=sender).inc()

        def _done(finished) -> None:
            self.inflight_calls.labels(sender=sender).dec()
            self.call_duration_seconds.labels(sender=sender).observe(
                time.time() - start_time
            )
            self.call_results_total.labels(
                sender=sender, state=finished.state.value
            ).inc()

        call.add_done_callback(_done)

    def record_renewal(self, sender: str) -> None:
        if not self.enabled:
            return

        self.client_renewals_total.labels(sender=sender).inc()

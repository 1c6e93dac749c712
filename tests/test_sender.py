"""
Tests for HttpSender.

Covers the wire format, disabled and fail-open paths, client sharing by
identity, renewal on reconfiguration, backpressure and close.
"""

import gzip
import threading
import time

import pytest

from spansend import EncodedPayload, HttpSender
from spansend.config import ConfigStore
from spansend.exceptions import TLSMaterialError, TransportError
from spansend.testing.fixtures import TEST_BASE_URL, TEST_PATH, TEST_PREFIX
from spansend.transport.call import CallState, NoOpCall, SkipReason

URL = TEST_BASE_URL + TEST_PATH


def new_sender(store, client_registry, client_factory, prefix=TEST_PREFIX, **kwargs):
    sender = HttpSender(
        registry=client_registry,
        client_factory=client_factory,
        grace_period=kwargs.pop("grace_period", 0.5),
        **kwargs,
    )
    sender.init(store, prefix)
    return sender


class TestWireFormat:
    """Test what reaches the collector."""

    def test_post_with_b3_header(self, sender, collector, payload):
        """Test every request is a POST carrying b3: 0."""
        call = sender.send(payload)
        call.result(timeout=5)

        assert call.state is CallState.SUCCEEDED
        assert call.skipped is None
        request = collector.requests[0]
        assert request.method == "POST"
        assert request.url == URL
        assert request.headers["b3"] == "0"
        assert request.headers["content-type"] == "application/json"

    def test_uncompressed_body_verbatim(self, sender, collector, payload):
        """Test compress=false sends the payload bytes unchanged."""
        sender.send(payload).result(timeout=5)

        request = collector.requests[0]
        assert request.body == payload.data
        assert "content-encoding" not in request.headers

    def test_compressed_body_is_gzip(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test compress=true sends gzip of the payload."""
        config_store.update({f"{TEST_PREFIX}.compress": True})
        sender = new_sender(config_store, client_registry, client_factory)

        sender.send(payload).result(timeout=5)
        sender.close()

        request = collector.requests[0]
        assert request.headers["content-encoding"] == "gzip"
        assert gzip.decompress(request.body) == payload.data

    def test_payload_not_mutated(self, config_store, client_registry, client_factory, payload):
        """Test compression writes into a new buffer."""
        config_store.update({f"{TEST_PREFIX}.compress": True})
        original = bytes(payload.data)
        sender = new_sender(config_store, client_registry, client_factory)

        sender.send(payload).result(timeout=5)
        sender.close()

        assert payload.data == original

    def test_basic_auth_header(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test Authorization is sent when username and password are set."""
        config_store.update({
            "reporter.outputServer.username": "Aladdin",
            "reporter.outputServer.password": "open sesame",
        })
        sender = new_sender(config_store, client_registry, client_factory)

        sender.send(payload).result(timeout=5)
        sender.close()

        assert collector.requests[0].headers["authorization"] == (
            "Basic QWxhZGRpbjpvcGVuIHNlc2FtZQ=="
        )

    def test_no_auth_header_without_credentials(self, sender, collector, payload):
        """Test no Authorization header when auth is inactive."""
        sender.send(payload).result(timeout=5)

        assert "authorization" not in collector.requests[0].headers

    def test_runs_on_dispatcher_thread(self, sender, collector, payload):
        """Test the network exchange runs on a dispatcher worker."""
        sender.send(payload).result(timeout=5)

        assert collector.requests[0].thread.startswith("spansend-dispatcher-")


class TestDisabled:
    """Test senders that must not touch the network."""

    @pytest.mark.parametrize("url", ["", "::not a url::", "ftp://collector/spans"])
    def test_invalid_url_disables(self, client_registry, client_factory, collector, payload, url):
        """Test an unusable URL yields a no-op sender with no client."""
        store = ConfigStore({f"{TEST_PREFIX}.url": url})
        sender = new_sender(store, client_registry, client_factory)

        call = sender.send(payload)

        assert sender.is_available() is False
        assert isinstance(call, NoOpCall)
        assert call.state is CallState.SUCCEEDED
        assert call.skipped is SkipReason.DISABLED
        assert sender.client is None
        assert len(client_registry) == 0
        assert collector.requests == []

    def test_global_switch_disables(self, config_store, client_registry, client_factory, payload):
        """Test the shared enable switch turns the sender off."""
        config_store.update({"reporter.outputServer.enabled": "false"})
        sender = new_sender(config_store, client_registry, client_factory)

        assert sender.is_available() is False
        assert sender.send(payload).skipped is SkipReason.DISABLED


class TestFailOpen:
    """Test failures never reach the caller of send()."""

    def test_assembly_failure_is_skipped_call(self, sender, collector):
        """Test an unencodable payload degrades to a skipped no-op."""
        call = sender.send(EncodedPayload(data="not bytes"))

        assert call.state is CallState.SUCCEEDED
        assert call.skipped is SkipReason.ASSEMBLY_FAILED
        assert collector.requests == []

    def test_compression_failure_is_skipped_call(
        self, config_store, client_registry, client_factory, collector, monkeypatch
    ):
        """Test a compression error degrades to a skipped no-op."""
        import spansend.sender as sender_module

        def broken(data):
            raise OSError("disk on fire")

        monkeypatch.setattr(sender_module, "gzip_bytes", broken)
        config_store.update({f"{TEST_PREFIX}.compress": True})
        sender = new_sender(config_store, client_registry, client_factory)

        call = sender.send(EncodedPayload(b"[]"))
        sender.close()

        assert call.skipped is SkipReason.ASSEMBLY_FAILED
        assert collector.requests == []

    def test_error_status_fails_call(self, sender, collector, payload):
        """Test non-2xx responses surface through the call."""
        collector.status_code = 500

        call = sender.send(payload)

        with pytest.raises(TransportError, match="500"):
            call.result(timeout=5)
        assert call.state is CallState.FAILED

    def test_network_error_fails_call(self, sender, collector, payload):
        """Test connection errors surface through the call."""
        collector.set_failure_mode("connection")

        call = sender.send(payload)

        assert isinstance(call.exception(timeout=5), TransportError)

    def test_sender_keeps_working_after_bad_batch(self, sender, collector, payload):
        """Test one bad batch does not affect the next."""
        sender.send(EncodedPayload(data=None))

        sender.send(payload).result(timeout=5)

        assert len(collector.requests) == 1


class TestClientSharing:
    """Test managed clients are shared by identity."""

    def test_same_identity_shares_client(self, config_store, client_registry, client_factory):
        """Test two senders with equal identity use one client object."""
        config_store.update({"reporter.metric.output.url": TEST_PATH})
        tracing = new_sender(config_store, client_registry, client_factory)
        metric = new_sender(
            config_store, client_registry, client_factory, prefix="reporter.metric.output"
        )

        assert tracing.config.identity == metric.config.identity
        assert tracing.client is metric.client
        assert tracing.client.dispatcher is metric.client.dispatcher
        assert len(client_registry) == 1

    def test_different_url_gets_own_client(self, config_store, client_registry, client_factory):
        """Test a different URL gets a separate client."""
        config_store.update({"reporter.metric.output.url": "/api/metrics"})
        tracing = new_sender(config_store, client_registry, client_factory)
        metric = new_sender(
            config_store, client_registry, client_factory, prefix="reporter.metric.output"
        )

        assert tracing.client is not metric.client
        assert len(client_registry) == 2

    def test_close_affects_shared_client(
        self, config_store, client_registry, client_factory, payload
    ):
        """Test closing one sender retires the client the other shares."""
        config_store.update({"reporter.metric.output.url": TEST_PATH})
        tracing = new_sender(config_store, client_registry, client_factory)
        metric = new_sender(
            config_store, client_registry, client_factory, prefix="reporter.metric.output"
        )

        tracing.close()
        call = metric.send(payload)

        assert call.state is CallState.FAILED
        assert isinstance(call.exception(timeout=1), TransportError)


class TestRenewal:
    """Test update_configs renews the client when identity or TLS changes."""

    @pytest.mark.parametrize(
        "changes",
        [
            {f"{TEST_PREFIX}.url": "http://collector2.test:9411/api/v2/spans"},
            {f"{TEST_PREFIX}.username": "u", f"{TEST_PREFIX}.password": "p"},
        ],
    )
    def test_identity_change_renews(self, sender, client_registry, changes):
        """Test URL and credential changes replace the client."""
        old_client = sender.client
        old_identity = sender.config.identity

        sender.update_configs(changes)

        assert sender.client is not old_client
        assert old_client.closed
        assert old_client.dispatcher.is_shutdown
        assert old_identity not in client_registry
        assert sender.config.identity in client_registry

    def test_tls_change_renews(self, sender, client_registry, pki):
        """Test TLS-only changes replace the client under the same identity."""
        old_client = sender.client
        identity = sender.config.identity

        sender.update_configs({
            "reporter.outputServer.tls.enable": "true",
            "reporter.outputServer.tls.ca_cert": pki.ca_cert,
            "reporter.outputServer.tls.cert": pki.client_cert,
            "reporter.outputServer.tls.key": pki.client_key,
        })

        assert sender.config.identity == identity
        assert sender.client is not old_client
        assert old_client.closed
        assert client_registry.get(identity) is sender.client

    def test_non_decisive_change_keeps_client(self, sender, collector, payload):
        """Test compress changes apply without replacing the client."""
        old_client = sender.client

        sender.update_configs({f"{TEST_PREFIX}.compress": "true"})
        sender.send(payload).result(timeout=5)

        assert sender.client is old_client
        assert sender.config.compress is True
        assert collector.requests[0].headers["content-encoding"] == "gzip"

    def test_renewed_sender_sends_to_new_url(self, sender, collector, payload):
        """Test requests go to the new URL after renewal."""
        sender.update_configs({f"{TEST_PREFIX}.url": "http://collector2.test/spans"})

        sender.send(payload).result(timeout=5)

        assert collector.requests[0].url == "http://collector2.test/spans"

    def test_old_client_rejects_submissions(self, sender, payload):
        """Test the prior client stops accepting work."""
        from spansend.exceptions import DispatcherShutdownError
        from spansend.transport.call import Call

        old_client = sender.client
        sender.update_configs({f"{TEST_PREFIX}.url": "http://collector2.test/spans"})

        with pytest.raises(DispatcherShutdownError):
            old_client.dispatcher.submit(Call())

    def test_update_to_invalid_url_disables(self, sender, client_registry, payload):
        """Test reconfiguring to a bad URL disables without raising."""
        sender.update_configs({f"{TEST_PREFIX}.url": "https://"})

        assert sender.is_available() is False
        assert sender.client is None
        assert len(client_registry) == 0
        assert sender.send(payload).skipped is SkipReason.DISABLED

    def test_update_enables_disabled_sender(
        self, client_registry, client_factory, collector, payload
    ):
        """Test a sender configured later starts sending."""
        store = ConfigStore({})
        sender = new_sender(store, client_registry, client_factory)
        assert sender.is_available() is False

        sender.update_configs({f"{TEST_PREFIX}.url": URL})
        sender.send(payload).result(timeout=5)
        sender.close()

        assert len(collector.requests) == 1

    def test_malformed_tls_fails_renewal(self, sender, client_registry, payload):
        """Test malformed TLS propagates from update_configs but send stays safe."""
        with pytest.raises(TLSMaterialError):
            sender.update_configs({
                "reporter.outputServer.tls.enable": "true",
                "reporter.outputServer.tls.ca_cert": "garbage",
                "reporter.outputServer.tls.cert": "garbage",
                "reporter.outputServer.tls.key": "garbage",
            })

        assert sender.client is None
        assert sender.send(payload).skipped is SkipReason.ASSEMBLY_FAILED

    def test_update_before_init(self):
        """Test update_configs requires init."""
        with pytest.raises(RuntimeError):
            HttpSender().update_configs({"a": "b"})

    def test_renewal_metric(self, sender, metrics):
        """Test renewals are counted."""
        sender.update_configs({f"{TEST_PREFIX}.url": "http://collector2.test/spans"})

        value = metrics.registry.get_sample_value(
            "spansend_client_renewals_total", {"sender": TEST_PREFIX}
        )
        assert value == 1.0

    def test_send_during_renewal_goes_to_new_client(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test sends made while the old client drains reach the new URL."""
        new_url = "http://collector2.test/spans"
        sender = new_sender(config_store, client_registry, client_factory, grace_period=1.0)
        collector.hold()
        first = sender.send(payload)
        assert collector.wait_for_requests(1)
        old_client = sender.client

        renewal = threading.Thread(
            target=sender.update_configs, args=({f"{TEST_PREFIX}.url": new_url},)
        )
        renewal.start()
        deadline = time.monotonic() + 5
        while not old_client.dispatcher.is_shutdown and time.monotonic() < deadline:
            time.sleep(0.01)
        assert old_client.dispatcher.is_shutdown

        second = sender.send(payload)
        renewal.join(5)
        collector.release()
        second.result(timeout=5)
        sender.close()

        assert second.state is CallState.SUCCEEDED
        assert collector.requests[-1].url == new_url
        assert first.state is CallState.CANCELLED


class TestBackpressure:
    """Test that saturated senders block the producer."""

    def test_send_blocks_beyond_max_requests(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test submission max+1 blocks until a request completes."""
        config_store.update({f"{TEST_PREFIX}.maxRequests": 2})
        sender = new_sender(config_store, client_registry, client_factory)
        collector.hold()

        calls = [sender.send(payload), sender.send(payload)]
        assert collector.wait_for_requests(2)

        third_returned = threading.Event()

        def produce():
            calls.append(sender.send(payload))
            third_returned.set()

        producer = threading.Thread(target=produce)
        producer.start()

        assert not third_returned.wait(0.3)
        assert collector.in_flight == 2

        collector.release()
        assert third_returned.wait(5)
        producer.join(5)
        for call in calls:
            call.result(timeout=5)
        sender.close()

        assert collector.max_in_flight == 2
        assert len(collector.requests) == 3

    def test_cancelled_call_frees_its_slot(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test cancelling a stuck request lets the next send through."""
        config_store.update({f"{TEST_PREFIX}.maxRequests": 1})
        sender = new_sender(config_store, client_registry, client_factory)
        collector.hold()
        first = sender.send(payload)
        assert collector.wait_for_requests(1)

        first.cancel()

        assert sender.client.dispatcher.running_count == 0

        calls = []
        returned = threading.Event()

        def produce():
            calls.append(sender.send(payload))
            returned.set()

        threading.Thread(target=produce, daemon=True).start()

        assert returned.wait(1)
        collector.release()
        calls[0].result(timeout=5)
        sender.close()

        assert first.state is CallState.CANCELLED
        assert len(collector.requests) == 2

    @pytest.mark.slow
    def test_slow_endpoint_caps_concurrency(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test many producers never exceed max_requests in flight."""
        config_store.update({f"{TEST_PREFIX}.maxRequests": 3})
        sender = new_sender(config_store, client_registry, client_factory)
        collector.delay = 0.05
        calls = []
        lock = threading.Lock()

        def produce():
            for _ in range(4):
                call = sender.send(payload)
                with lock:
                    calls.append(call)

        producers = [threading.Thread(target=produce) for _ in range(5)]
        for producer in producers:
            producer.start()
        for producer in producers:
            producer.join(10)
        for call in calls:
            call.result(timeout=10)
        sender.close()

        assert len(collector.requests) == 20
        assert collector.max_in_flight <= 3


class TestClose:
    """Test shutting the sender down."""

    def test_close_removes_registry_entry(self, sender, client_registry):
        """Test close retires the current identity's client."""
        identity = sender.config.identity
        client = sender.client

        sender.close()

        assert identity not in client_registry
        assert client.closed
        assert sender.is_available() is False

    def test_close_with_requests_in_flight(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test close returns within the grace window and cancels the rest."""
        sender = new_sender(
            config_store, client_registry, client_factory, grace_period=0.2
        )
        identity = sender.config.identity
        collector.hold()
        call = sender.send(payload)
        assert collector.wait_for_requests(1)

        start = time.monotonic()
        sender.close()
        elapsed = time.monotonic() - start

        assert elapsed < 2.0
        assert identity not in client_registry
        assert call.state is CallState.CANCELLED

    def test_close_waits_for_quick_requests(
        self, config_store, client_registry, client_factory, collector, payload
    ):
        """Test requests finishing inside the grace window are not cancelled."""
        sender = new_sender(config_store, client_registry, client_factory, grace_period=2.0)
        collector.delay = 0.1
        call = sender.send(payload)

        sender.close()

        assert call.state is CallState.SUCCEEDED

    def test_send_after_close_is_skipped(self, sender, collector, payload):
        """Test sends after close do not touch the network."""
        sender.close()

        call = sender.send(payload)

        assert call.skipped is SkipReason.CLOSED
        assert collector.requests == []

    def test_context_manager_closes(self, config_store, client_registry, client_factory):
        """Test leaving the context closes the sender."""
        with new_sender(config_store, client_registry, client_factory) as sender:
            identity = sender.config.identity
            assert identity in client_registry

        assert identity not in client_registry


class TestSenderInfo:
    """Test introspection and metrics."""

    def test_name_and_stats(self, sender):
        """Test name and stats reflect the configuration."""
        stats = sender.get_stats()

        assert sender.name == "http"
        assert sender.prefix == TEST_PREFIX
        assert stats["url"] == URL
        assert stats["available"] is True
        assert stats["client"]["dispatcher"]["max_requests"] == 4

    def test_send_metrics(self, sender, metrics, payload):
        """Test sends and results are counted by outcome."""
        sender.send(payload).result(timeout=5)
        sender.send(EncodedPayload(data=None))
        # Completion callbacks have run once the workers are gone
        sender.close()

        registry = metrics.registry
        assert registry.get_sample_value(
            "spansend_sends_total", {"sender": TEST_PREFIX, "outcome": "submitted"}
        ) == 1.0
        assert registry.get_sample_value(
            "spansend_sends_total",
            {"sender": TEST_PREFIX, "outcome": "skipped_assembly_failed"},
        ) == 1.0
        assert registry.get_sample_value(
            "spansend_call_results_total", {"sender": TEST_PREFIX, "state": "succeeded"}
        ) == 1.0

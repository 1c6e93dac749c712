"""
spansend

HTTP export transport for encoded telemetry batches. Delivers trace and
metric payloads produced upstream to a remote collector, with optional gzip
compression, basic auth and mutual TLS, bounded concurrency that blocks the
producer instead of buffering, and reconfiguration without restart.

Example:
    from spansend import ConfigStore, EncodedPayload, HttpSender

    store = ConfigStore({
        "reporter.outputServer.bootstrapServer": "http://collector:9411",
        "reporter.tracing.output.url": "/api/v2/spans",
    })
    sender = HttpSender()
    sender.init(store, "reporter.tracing.output")
    sender.send(EncodedPayload(encoded_spans)).result(timeout=30)
"""

__version__ = "1.0.0"

from spansend.config import ConfigStore, Identity, SenderConfig, resolve_sender_config
from spansend.exceptions import (
    SpanSendError,
    ConfigurationError,
    TLSMaterialError,
    TransportError,
    DispatcherShutdownError,
    CallCancelledError,
)
from spansend.payload import EncodedPayload
from spansend.sender import HttpSender
from spansend.transport import Call, CallState, NoOpCall, SkipReason

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "ConfigStore",
    "Identity",
    "SenderConfig",
    "resolve_sender_config",
    # Sender
    "HttpSender",
    "EncodedPayload",
    "Call",
    "CallState",
    "NoOpCall",
    "SkipReason",
    # Errors
    "SpanSendError",
    "ConfigurationError",
    "TLSMaterialError",
    "TransportError",
    "DispatcherShutdownError",
    "CallCancelledError",
]

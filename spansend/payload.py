"""Encoded payloads handed to the sender by an upstream encoder."""

import gzip
from dataclasses import dataclass


DEFAULT_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class EncodedPayload:
    """Opaque encoded batch.

    Attributes:
        data: Encoded bytes, never modified by the sender
        content_type: Declared media type of ``data``
    """
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    def __len__(self) -> int:
        return len(self.data)


def gzip_bytes(data: bytes) -> bytes:
    """Gzip ``data`` into a new buffer."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"payload data must be bytes, got {type(data).__name__}")
    return gzip.compress(bytes(data))

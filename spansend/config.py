"""
Configuration management for spansend.

Two layers live here:

- ConfigStore: a hierarchical, dotted-key store that can be loaded from a
  dict, a YAML file or environment variables, and updated at runtime.
- SenderConfig: an immutable, validated snapshot of everything one sender
  needs, produced by ``resolve_sender_config``.

Every sender field is resolved in the same order: the sender-specific key
under its prefix, then the shared ``reporter.outputServer`` key, then a
hardcoded default. A snapshot is never mutated; reconfiguration produces a
new one.

An empty or unparsable URL, or a disabled global switch, does not raise.
The snapshot is simply marked ``enabled=False``.
"""

import base64
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping, NamedTuple, Optional

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from spansend.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


# Shared keys
OUTPUT_SERVER = "reporter.outputServer"
BOOTSTRAP_SERVERS = f"{OUTPUT_SERVER}.bootstrapServer"
OUTPUT_SERVERS_ENABLE = f"{OUTPUT_SERVER}.enabled"
OUTPUT_SERVERS_TIMEOUT = f"{OUTPUT_SERVER}.timeout"
SERVER_USERNAME_KEY = f"{OUTPUT_SERVER}.username"
SERVER_PASSWORD_KEY = f"{OUTPUT_SERVER}.password"
SERVER_COMPRESS_KEY = f"{OUTPUT_SERVER}.compress"
TLS_ENABLE = f"{OUTPUT_SERVER}.tls.enable"
TLS_KEY = f"{OUTPUT_SERVER}.tls.key"  # PKCS#8 PEM
TLS_CERT = f"{OUTPUT_SERVER}.tls.cert"
TLS_CA_CERT = f"{OUTPUT_SERVER}.tls.ca_cert"

# Per-sender key suffixes
ENABLED_KEY = "enabled"
URL_KEY = "url"
USERNAME_KEY = "username"
PASSWORD_KEY = "password"
COMPRESS_KEY = "compress"
MAX_REQUESTS_KEY = "maxRequests"

MIN_TIMEOUT_MS = 30_000
DEFAULT_MAX_REQUESTS = 65

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


def join(*parts: str) -> str:
    """Join key segments with dots, skipping empty ones."""
    return ".".join(p.strip(".") for p in parts if p)


def _flatten(data: Mapping[str, Any], parent: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        full_key = join(parent, str(key))
        if isinstance(value, Mapping):
            flat.update(_flatten(value, full_key))
        else:
            flat[full_key] = value
    return flat


class ConfigStore:
    """
    Thread-safe hierarchical configuration store.

    Keys are dotted paths (``reporter.outputServer.timeout``) and are matched
    case-insensitively, so values coming from environment variables line up
    with camelCase keys. Nested mappings are flattened on the way in.

    Example:
        store = ConfigStore({"reporter": {"outputServer": {"timeout": 5000}}})
        store.get_int("reporter.outputServer.timeout")  # 5000
    """

    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        self._lock = threading.RLock()
        self._values: dict[str, Any] = {}
        if data:
            self.update(data)

    @staticmethod
    def _normalize(key: str) -> str:
        return key.lower()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(self._normalize(key), default)

    def get_str(self, key: str) -> Optional[str]:
        """Get a value as a string, or None when unset."""
        value = self.get(key)
        if value is None:
            return None
        return str(value)

    def get_bool(self, key: str) -> Optional[bool]:
        """Get a boolean value, or None when unset or unrecognised."""
        value = self.get(key)
        if value is None or isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        logger.warning(f"Invalid boolean value for {key}: {value}")
        return None

    def get_int(self, key: str) -> Optional[int]:
        """Get an integer value, or None when unset or not a number."""
        value = self.get(key)
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid integer value for {key}: {value}")
            return None

    def update(self, changes: Mapping[str, Any]) -> None:
        """Merge changes into the store.

        Nested mappings are flattened. Listeners are not notified; that is
        the caller's concern.
        """
        flat = _flatten(changes)
        with self._lock:
            for key, value in flat.items():
                self._values[self._normalize(key)] = value

    def snapshot(self) -> "ConfigStore":
        """Return an independent copy that later updates will not touch."""
        with self._lock:
            copy = ConfigStore()
            copy._values = dict(self._values)
            return copy

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return self._normalize(key) in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    @classmethod
    def from_file(cls, path: str | Path) -> "ConfigStore":
        """
        Load a store from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Populated ConfigStore

        Raises:
            ConfigurationError: If the file cannot be read or is not a mapping
        """
        try:
            config_path = Path(path)
            if not config_path.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {path}",
                    details={"path": str(path)},
                )

            with open(config_path) as f:
                data = yaml.safe_load(f)

            if data is None:
                return cls()

            if not isinstance(data, dict):
                raise ConfigurationError(
                    "Configuration file must contain a YAML dictionary",
                    details={"path": str(path)},
                )

            return cls(data)

        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e
        except OSError as e:
            raise ConfigurationError(
                f"Failed to read configuration: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e

    @classmethod
    def from_env(
        cls,
        prefix: str = "SPANSEND_",
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ConfigStore":
        """
        Load a store from environment variables.

        Double underscores separate key segments:

            SPANSEND_REPORTER__OUTPUTSERVER__TIMEOUT=5000
            SPANSEND_REPORTER__TRACING__OUTPUT__URL=/api/v2/spans

        Args:
            prefix: Environment variable prefix (default: "SPANSEND_")
            environ: Mapping to read instead of ``os.environ``

        Returns:
            Populated ConfigStore
        """
        source = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for key, value in source.items():
            if not key.startswith(prefix):
                continue
            dotted = key[len(prefix):].lower().replace("__", ".")
            if dotted:
                values[dotted] = value
        return cls(values)


class Identity(NamedTuple):
    """Key deciding which senders share one managed client."""

    url: str
    username: Optional[str]
    password: Optional[str]


class SenderConfig(BaseModel):
    """
    Immutable configuration snapshot for one sender.

    Build it with ``resolve_sender_config``; direct construction is mostly
    useful in tests.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    url: str = Field(default="", description="Resolved collector URL")
    parsed_url: Optional[httpx.URL] = Field(
        default=None, description="Parsed URL, None when the URL is invalid"
    )
    username: Optional[str] = Field(default=None, description="Basic auth user")
    password: Optional[str] = Field(default=None, description="Basic auth password")
    credential: Optional[str] = Field(
        default=None, description="Precomputed Authorization header value"
    )
    compress: bool = Field(default=True, description="Gzip request bodies")
    timeout_ms: int = Field(
        default=MIN_TIMEOUT_MS, description="Connect/read/write timeout"
    )
    max_requests: int = Field(
        default=DEFAULT_MAX_REQUESTS, gt=0, description="Max in-flight requests"
    )
    tls_enabled: bool = Field(default=False, description="Enable mutual TLS")
    tls_ca_cert: Optional[str] = Field(default=None, description="CA cert PEM")
    tls_cert: Optional[str] = Field(default=None, description="Client cert PEM")
    tls_key: Optional[str] = Field(default=None, description="Client key PEM")
    enabled: bool = Field(default=False, description="Sender may send")

    @field_validator("timeout_ms")
    @classmethod
    def clamp_timeout(cls, v: int) -> int:
        """Timeouts are only ever raised to the floor, never lowered."""
        return max(v, MIN_TIMEOUT_MS)

    @property
    def auth_enabled(self) -> bool:
        return bool(self.username) and bool(self.password)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def identity(self) -> Identity:
        return Identity(self.url, self.username, self.password)


def basic_credential(username: str, password: str) -> str:
    """Build a ``Basic`` Authorization header value."""
    token = base64.b64encode(f"{username}:{password}".encode("utf-8"))
    return f"Basic {token.decode('ascii')}"


def parse_url(url: str) -> Optional[httpx.URL]:
    """Parse an absolute http(s) URL, returning None when it is not one."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    if parsed.scheme not in ("http", "https") or not parsed.host:
        return None
    return parsed


def _first_non_empty(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


def resolve_url(store: ConfigStore, prefix: str) -> str:
    """Resolve the sender URL, prepending the shared base when relative."""
    base = store.get_str(BOOTSTRAP_SERVERS)
    url = store.get_str(join(prefix, URL_KEY)) or ""
    if base and not url.startswith("http"):
        url = base + url
    return url


def resolve_username(store: ConfigStore, prefix: str) -> Optional[str]:
    return _first_non_empty(
        store.get_str(join(prefix, USERNAME_KEY)),
        store.get_str(SERVER_USERNAME_KEY),
    )


def resolve_password(store: ConfigStore, prefix: str) -> Optional[str]:
    return _first_non_empty(
        store.get_str(join(prefix, PASSWORD_KEY)),
        store.get_str(SERVER_PASSWORD_KEY),
    )


def resolve_sender_config(store: ConfigStore, prefix: str) -> SenderConfig:
    """
    Resolve one consistent SenderConfig from a store.

    The store is copied first, so concurrent updates cannot leak a mix of
    old and new values into the snapshot.

    Args:
        store: Configuration store
        prefix: Sender key prefix, e.g. ``reporter.tracing.output``

    Returns:
        Immutable SenderConfig
    """
    store = store.snapshot()

    url = resolve_url(store, prefix)
    username = resolve_username(store, prefix)
    password = resolve_password(store, prefix)

    compress = store.get_bool(join(prefix, COMPRESS_KEY))
    if compress is None:
        compress = store.get_bool(SERVER_COMPRESS_KEY)
    if compress is None:
        compress = True

    timeout_ms = store.get_int(OUTPUT_SERVERS_TIMEOUT)
    if timeout_ms is None:
        timeout_ms = MIN_TIMEOUT_MS

    max_requests = store.get_int(join(prefix, MAX_REQUESTS_KEY))
    if max_requests is None:
        max_requests = DEFAULT_MAX_REQUESTS
    elif max_requests <= 0:
        logger.warning(
            f"Invalid {join(prefix, MAX_REQUESTS_KEY)}: {max_requests}, "
            f"using {DEFAULT_MAX_REQUESTS}"
        )
        max_requests = DEFAULT_MAX_REQUESTS

    enabled = store.get_bool(join(prefix, ENABLED_KEY))
    if enabled is None:
        enabled = True

    parsed_url = None
    if not url or store.get_bool(OUTPUT_SERVERS_ENABLE) is False:
        enabled = False
    else:
        parsed_url = parse_url(url)
        if parsed_url is None:
            logger.error(f"Invalid Url: {url}")
            enabled = False

    credential = None
    if username and password:
        credential = basic_credential(username, password)

    return SenderConfig(
        url=url,
        parsed_url=parsed_url,
        username=username,
        password=password,
        credential=credential,
        compress=compress,
        timeout_ms=timeout_ms,
        max_requests=max_requests,
        tls_enabled=bool(store.get_bool(TLS_ENABLE)),
        tls_ca_cert=store.get_str(TLS_CA_CERT),
        tls_cert=store.get_str(TLS_CERT),
        tls_key=store.get_str(TLS_KEY),
        enabled=enabled,
    )

"""Configuration and construction of per-instance WhatsApp protocol clients.

The wire protocol itself lives in an external client library. This module
owns what the gateway decides about it: the device signature presented to
the network, timing and retry policy, feature flags and the event shapes the
lifecycle manager consumes.
"""
from __future__ import annotations

import enum
import hashlib
import importlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Optional, Protocol


LOGGER = logging.getLogger("wagateway.protocol")

# Legacy WhatsApp Web signature; the network treats reconnects with the same
# tuple as the same linked device.
LEGACY_BROWSER_SIGNATURE: tuple[str, str, str, str] = ("WhatsApp", "2.23.24.84", "Chrome", "1.0")

CONNECT_TIMEOUT = 30.0
KEEP_ALIVE_INTERVAL = 30.0
DEFAULT_QUERY_TIMEOUT = 60.0
RETRY_REQUEST_DELAY = 3.0
MAX_RESTART_AFTER = 30.0
CONNECT_COOLDOWN = 10.0

IGNORED_JID_MARKERS = ("@newsletter", "@broadcast")


class AdapterConstructionError(RuntimeError):
    """Raised when a protocol client cannot be built for an instance."""


class DisconnectReason(enum.IntEnum):
    LOGGED_OUT = 401
    FORBIDDEN = 403
    METHOD_NOT_ALLOWED = 405
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


TERMINAL_REASONS = frozenset({DisconnectReason.LOGGED_OUT, DisconnectReason.FORBIDDEN})


class FailureClass(str, enum.Enum):
    FORBIDDEN = "forbidden"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    REQUEST_TIMEOUT = "request_timeout"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    LOGGED_OUT = "logged_out"
    DISCONNECT = "disconnect"
    END = "end"
    UNKNOWN = "unknown"


_STATUS_FAILURES: Mapping[int, FailureClass] = {
    401: FailureClass.LOGGED_OUT,
    403: FailureClass.FORBIDDEN,
    405: FailureClass.METHOD_NOT_ALLOWED,
    408: FailureClass.REQUEST_TIMEOUT,
    428: FailureClass.DISCONNECT,
    429: FailureClass.RATE_LIMITED,
    503: FailureClass.SERVICE_UNAVAILABLE,
}

RETRY_DELAYS: Mapping[FailureClass, float] = MappingProxyType(
    {
        FailureClass.FORBIDDEN: 5.0,
        FailureClass.METHOD_NOT_ALLOWED: 15.0,
        FailureClass.REQUEST_TIMEOUT: 3.0,
        FailureClass.RATE_LIMITED: 10.0,
        FailureClass.SERVICE_UNAVAILABLE: 20.0,
        FailureClass.DISCONNECT: 15.0,
        FailureClass.END: 15.0,
    }
)


def classify_failure(status_code: Optional[int], reason: Optional[str] = None) -> FailureClass:
    message = (reason or "").lower()
    if "method not allowed" in message:
        return FailureClass.METHOD_NOT_ALLOWED
    if status_code is not None and status_code in _STATUS_FAILURES:
        return _STATUS_FAILURES[status_code]
    if status_code is None and ("stream ended" in message or "connection ended" in message):
        return FailureClass.END
    return FailureClass.UNKNOWN


def retry_delay(failure: FailureClass, table: Mapping[FailureClass, float] = RETRY_DELAYS) -> float:
    return float(table.get(failure, RETRY_REQUEST_DELAY))


def is_terminal(status_code: Optional[int]) -> bool:
    return status_code in TERMINAL_REASONS


def should_ignore_jid(jid: str) -> bool:
    return any(marker in (jid or "") for marker in IGNORED_JID_MARKERS)


def _silent_logger() -> logging.Logger:
    logger = logging.getLogger("wagateway.protocol.client")
    logger.propagate = False
    logger.setLevel(logging.CRITICAL + 1)
    if not any(isinstance(h, logging.NullHandler) for h in logger.handlers):
        logger.addHandler(logging.NullHandler())
    return logger


@dataclass(frozen=True, slots=True)
class ClientOptions:
    credentials: Any = None
    browser: tuple[str, str, str, str] = LEGACY_BROWSER_SIGNATURE
    print_qr_in_terminal: bool = False
    connect_timeout: float = CONNECT_TIMEOUT
    keep_alive_interval: float = KEEP_ALIVE_INTERVAL
    default_query_timeout: float = DEFAULT_QUERY_TIMEOUT
    retry_request_delay: float = RETRY_REQUEST_DELAY
    max_restart_after: float = MAX_RESTART_AFTER
    connect_cooldown: float = CONNECT_COOLDOWN
    retry_delays: Mapping[FailureClass, float] = field(default_factory=lambda: RETRY_DELAYS)
    sync_full_history: bool = False
    mark_online_on_connect: bool = False
    generate_high_quality_link_preview: bool = False
    should_sync_history_message: Callable[[Any], bool] = lambda _message: False
    should_ignore_jid: Callable[[str], bool] = should_ignore_jid
    logger: logging.Logger = field(default_factory=_silent_logger)


class UpdateKind(str, enum.Enum):
    QR = "qr"
    OPEN = "open"
    CLOSE = "close"
    CREDENTIALS = "credentials"


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    kind: UpdateKind
    qr: Optional[str] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None
    credentials: Any = None


def _lookup(obj: Any, *path: str) -> Any:
    current = obj
    for name in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(name)
        else:
            current = getattr(current, name, None)
    return current


def parse_connection_update(raw: Mapping[str, Any]) -> list[ConnectionUpdate]:
    """Translate one raw ``connection.update`` payload into typed updates.

    A single payload may carry credentials, a QR token and a connection state
    at once; they are returned in that order.
    """

    updates: list[ConnectionUpdate] = []
    creds = raw.get("creds")
    if creds is not None:
        updates.append(ConnectionUpdate(UpdateKind.CREDENTIALS, credentials=creds))
    qr = raw.get("qr")
    if qr:
        updates.append(ConnectionUpdate(UpdateKind.QR, qr=str(qr)))
    connection = raw.get("connection")
    if connection == "open":
        updates.append(ConnectionUpdate(UpdateKind.OPEN))
    elif connection == "close":
        error = _lookup(raw, "lastDisconnect", "error")
        status_code = _lookup(error, "output", "statusCode")
        if status_code is None:
            status_code = _lookup(error, "status_code")
        try:
            status_code = int(status_code) if status_code is not None else None
        except (TypeError, ValueError):
            status_code = None
        message = _lookup(error, "message")
        if message is None and error is not None and not isinstance(error, Mapping):
            message = str(error) or None
        updates.append(
            ConnectionUpdate(UpdateKind.CLOSE, status_code=status_code, reason=message)
        )
    return updates


def normalize_updates(update: Any) -> list[ConnectionUpdate]:
    if isinstance(update, ConnectionUpdate):
        return [update]
    if isinstance(update, Mapping):
        return parse_connection_update(update)
    raise TypeError(f"unsupported connection update: {type(update).__name__}")


UpdateHandler = Callable[[Any], Awaitable[None]]


class ProtocolClient(Protocol):
    """Capability surface the gateway needs from a protocol client."""

    credentials: Any

    def subscribe(self, handler: UpdateHandler) -> None: ...

    async def connect(self) -> None: ...

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> Any: ...

    async def close(self) -> None: ...


ClientFactory = Callable[[str, ClientOptions], ProtocolClient]


def load_client_factory(path: str) -> ClientFactory:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise AdapterConstructionError(f"invalid client factory path: {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise AdapterConstructionError(f"client factory module unavailable: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise AdapterConstructionError(f"client factory {path!r} is not callable")
    return factory


def _missing_factory(instance_id: str, options: ClientOptions) -> ProtocolClient:
    raise AdapterConstructionError("protocol client factory not configured")


def ensure_crypto_runtime() -> None:
    try:
        import ssl  # noqa: F401
    except ImportError as exc:
        raise AdapterConstructionError("ssl module not available in this runtime") from exc
    if "sha256" not in hashlib.algorithms_available:
        raise AdapterConstructionError("sha256 digest not available in this runtime")


class ProtocolClientAdapter:
    """Builds configured protocol clients; never opens connections itself."""

    def __init__(
        self,
        factory: Optional[ClientFactory] = None,
        *,
        options: Optional[ClientOptions] = None,
    ) -> None:
        self._factory = factory or _missing_factory
        self._options = options or ClientOptions()

    @classmethod
    def from_path(cls, path: Optional[str]) -> "ProtocolClientAdapter":
        if not path:
            LOGGER.warning("stage=client_factory_missing")
            return cls()
        try:
            factory = load_client_factory(path)
        except AdapterConstructionError as exc:
            LOGGER.error("stage=client_factory_invalid path=%s error=%s", path, exc)

            def _broken(instance_id: str, options: ClientOptions, _error: str = str(exc)) -> ProtocolClient:
                raise AdapterConstructionError(_error)

            return cls(_broken)
        return cls(factory)

    @property
    def options(self) -> ClientOptions:
        return self._options

    def options_for(self, credentials: Any) -> ClientOptions:
        return replace(self._options, credentials=credentials)

    def create(self, instance_id: str, credentials: Any = None) -> ProtocolClient:
        ensure_crypto_runtime()
        options = self.options_for(credentials)
        try:
            client = self._factory(instance_id, options)
        except AdapterConstructionError:
            raise
        except Exception as exc:
            raise AdapterConstructionError(f"protocol client construction failed: {exc}") from exc
        LOGGER.info(
            "stage=client_created instance_id=%s resumed=%s",
            instance_id,
            "true" if credentials is not None else "false",
        )
        return client


__all__ = [
    "AdapterConstructionError",
    "ClientFactory",
    "ClientOptions",
    "ConnectionUpdate",
    "DisconnectReason",
    "FailureClass",
    "LEGACY_BROWSER_SIGNATURE",
    "ProtocolClient",
    "ProtocolClientAdapter",
    "RETRY_DELAYS",
    "UpdateKind",
    "classify_failure",
    "ensure_crypto_runtime",
    "is_terminal",
    "load_client_factory",
    "normalize_updates",
    "parse_connection_update",
    "retry_delay",
    "should_ignore_jid",
]

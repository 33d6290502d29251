from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_SESSIONS_ACTIVE = Gauge(
    "wagateway_sessions_active",
    "Number of WhatsApp instances currently present in the active registry",
)
WA_SESSIONS_PENDING = Gauge(
    "wagateway_sessions_pending",
    "Number of WhatsApp instances connecting or waiting for a QR scan",
)
WA_CONNECT_OUTCOMES_TOTAL = Counter(
    "wagateway_connect_outcomes_total",
    "Connect requests grouped by the outcome returned to the caller",
    labelnames=("status",),
)
WA_DISCONNECTS_TOTAL = Counter(
    "wagateway_disconnects_total",
    "Protocol connection closes grouped by failure class",
    labelnames=("failure",),
)
WA_RECONNECTS_TOTAL = Counter(
    "wagateway_reconnects_total",
    "Automatic reconnect attempts scheduled after a transient close",
)
WA_STORE_ERRORS_TOTAL = Counter(
    "wagateway_store_errors_total",
    "Session store failures grouped by backend",
    labelnames=("backend",),
)
WA_MESSAGES_SENT_TOTAL = Counter(
    "wagateway_messages_sent_total",
    "Outbound messages accepted by the protocol client",
    labelnames=("type",),
)
WA_MESSAGES_FAILED_TOTAL = Counter(
    "wagateway_messages_failed_total",
    "Outbound messages rejected by the gateway or the protocol client",
    labelnames=("reason",),
)

__all__ = [
    "WA_SESSIONS_ACTIVE",
    "WA_SESSIONS_PENDING",
    "WA_CONNECT_OUTCOMES_TOTAL",
    "WA_DISCONNECTS_TOTAL",
    "WA_RECONNECTS_TOTAL",
    "WA_STORE_ERRORS_TOTAL",
    "WA_MESSAGES_SENT_TOTAL",
    "WA_MESSAGES_FAILED_TOTAL",
]

"""Environment driven configuration for the WhatsApp gateway."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_REDIS_HOST = "redis"
DEFAULT_REDIS_PORT = 6379
DEFAULT_GATEWAY_PORT = 3000
DEFAULT_KEY_PREFIX = "@baileys:"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    multiplier = 1.0
    if cleaned.endswith("ms"):
        cleaned = cleaned[:-2]
        multiplier = 0.001
    elif cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned) * multiplier
    except ValueError:
        return default


def _optional(raw: str | None) -> str | None:
    cleaned = (raw or "").strip()
    return cleaned or None


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or "./sessions")
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-sessions")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class RedisEndpoint:
    host: str
    port: int

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    primary_redis: RedisEndpoint
    backup_redis: RedisEndpoint
    store_timeout: float
    store_key_prefix: str
    sessions_dir: Path
    port: int
    connect_deadline: float
    fallback_delay: float
    reconnect_clear_delay: float
    max_reconnect_attempts: int
    session_ttl: float
    client_factory: str | None
    gateway_token: str | None


def gateway_config() -> GatewayConfig:
    primary_host = (os.getenv("REDIS_HOST") or DEFAULT_REDIS_HOST).strip() or DEFAULT_REDIS_HOST
    primary_port = _coerce_int(os.getenv("REDIS_PORT"), DEFAULT_REDIS_PORT)
    backup_host = (os.getenv("REDIS_BACKUP_HOST") or primary_host).strip() or primary_host
    backup_port = _coerce_int(os.getenv("REDIS_BACKUP_PORT"), primary_port)

    return GatewayConfig(
        primary_redis=RedisEndpoint(primary_host, primary_port),
        backup_redis=RedisEndpoint(backup_host, backup_port),
        store_timeout=_parse_duration(os.getenv("WA_STORE_TIMEOUT"), default=10.0),
        store_key_prefix=os.getenv("WA_STORE_KEY_PREFIX") or DEFAULT_KEY_PREFIX,
        sessions_dir=_resolve_sessions_dir(os.getenv("WA_SESSIONS_DIR")),
        port=_coerce_int(os.getenv("WA_GATEWAY_PORT"), DEFAULT_GATEWAY_PORT),
        connect_deadline=_parse_duration(os.getenv("WA_CONNECT_DEADLINE"), default=180.0),
        fallback_delay=_parse_duration(os.getenv("WA_FALLBACK_DELAY"), default=5.0),
        reconnect_clear_delay=_parse_duration(
            os.getenv("WA_RECONNECT_CLEAR_DELAY"), default=3.0
        ),
        max_reconnect_attempts=_coerce_int(os.getenv("WA_MAX_RECONNECT_ATTEMPTS"), 5),
        session_ttl=_parse_duration(os.getenv("WA_SESSION_TTL"), default=3600.0),
        client_factory=_optional(os.getenv("WA_CLIENT_FACTORY")),
        gateway_token=_optional(os.getenv("WA_GATEWAY_TOKEN")),
    )


__all__ = ["GatewayConfig", "RedisEndpoint", "gateway_config"]

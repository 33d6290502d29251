from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

import redis.asyncio as redis_async
from redis import exceptions as redis_ex

from .config import GatewayConfig, RedisEndpoint
from .metrics import WA_STORE_ERRORS_TOTAL


LOGGER = logging.getLogger("wagateway.store")

_INSTANCE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
CREDS_FILENAME = "creds.json"


class InvalidInstanceIdError(ValueError):
    """Raised when an instance identifier cannot be used as a storage key."""


class StoreUnavailableError(Exception):
    """Raised by a backend when it cannot serve a request."""


def validate_instance_id(instance_id: str) -> str:
    cleaned = (instance_id or "").strip()
    if not _INSTANCE_ID_RE.match(cleaned) or cleaned in {".", ".."}:
        raise InvalidInstanceIdError(instance_id)
    return cleaned


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_BYTES_TAG = "__bytes__"


def _encode_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _BYTES_TAG in obj and isinstance(obj[_BYTES_TAG], str):
        return base64.b64decode(obj[_BYTES_TAG])
    return obj


def encode_credentials(credentials: Any) -> str:
    """Serialize credentials to JSON; binary values are tagged base64 objects."""
    return json.dumps(credentials, default=_encode_default)


def decode_credentials(raw: str | bytes) -> Any:
    return json.loads(raw, object_hook=_decode_hook)


@dataclass(frozen=True, slots=True)
class SessionRecord:
    instance_id: str
    credentials: Any
    last_seen: Optional[str] = None

    def to_fields(self) -> dict[str, str]:
        return {
            "creds": encode_credentials(self.credentials),
            "lastSeen": self.last_seen or _utcnow_iso(),
        }

    @classmethod
    def from_fields(cls, instance_id: str, fields: dict[str, Any]) -> Optional["SessionRecord"]:
        raw = fields.get("creds")
        if raw is None:
            return None
        credentials = decode_credentials(raw) if isinstance(raw, (str, bytes)) else raw
        last_seen = fields.get("lastSeen")
        if isinstance(last_seen, bytes):
            last_seen = last_seen.decode("utf-8")
        return cls(instance_id=instance_id, credentials=credentials, last_seen=last_seen)


class SessionBackend(Protocol):
    name: str

    async def get(self, instance_id: str) -> Optional[SessionRecord]: ...

    async def put(self, record: SessionRecord) -> None: ...

    async def delete(self, instance_id: str) -> None: ...

    async def close(self) -> None: ...


class RedisSessionBackend:
    """Hash-per-instance storage on one Redis connection pool."""

    def __init__(
        self,
        name: str,
        client: Any,
        *,
        key_prefix: str = "@baileys:",
        timeout: float = 10.0,
    ) -> None:
        self.name = name
        self._client = client
        self._key_prefix = key_prefix
        self._timeout = timeout

    @classmethod
    def from_endpoint(
        cls,
        name: str,
        endpoint: RedisEndpoint,
        *,
        key_prefix: str,
        timeout: float,
    ) -> "RedisSessionBackend":
        client = redis_async.Redis(
            host=endpoint.host,
            port=endpoint.port,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
            socket_keepalive=True,
            decode_responses=True,
        )
        return cls(name, client, key_prefix=key_prefix, timeout=timeout)

    def key(self, instance_id: str) -> str:
        return f"{self._key_prefix}{instance_id}"

    async def _call(self, operation: str, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except (redis_ex.RedisError, asyncio.TimeoutError, OSError) as exc:
            raise StoreUnavailableError(
                f"{self.name} {operation} failed: {exc.__class__.__name__}: {exc}"
            ) from exc

    async def get(self, instance_id: str) -> Optional[SessionRecord]:
        fields = await self._call("hgetall", self._client.hgetall(self.key(instance_id)))
        if not fields:
            return None
        try:
            return SessionRecord.from_fields(instance_id, dict(fields))
        except ValueError as exc:
            LOGGER.warning(
                "stage=store_decode_failed backend=%s instance_id=%s error=%s",
                self.name,
                instance_id,
                exc,
            )
            return None

    async def put(self, record: SessionRecord) -> None:
        await self._call(
            "hset",
            self._client.hset(self.key(record.instance_id), mapping=record.to_fields()),
        )

    async def delete(self, instance_id: str) -> None:
        await self._call("delete", self._client.delete(self.key(instance_id)))

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self._client.aclose()


class FileSessionBackend:
    """Per-instance JSON file under the local sessions directory."""

    name = "file"

    def __init__(self, sessions_dir: Path) -> None:
        self._sessions_dir = sessions_dir

    def path_for(self, instance_id: str) -> Path:
        return self._sessions_dir / validate_instance_id(instance_id) / CREDS_FILENAME

    def _read(self, instance_id: str) -> Optional[SessionRecord]:
        path = self.path_for(instance_id)
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailableError(f"file read failed: {exc}") from exc
        try:
            fields = json.loads(raw, object_hook=_decode_hook)
        except ValueError as exc:
            LOGGER.warning(
                "stage=store_decode_failed backend=file instance_id=%s error=%s",
                instance_id,
                exc,
            )
            return None
        if not isinstance(fields, dict):
            return None
        return SessionRecord(
            instance_id=instance_id,
            credentials=fields.get("creds"),
            last_seen=fields.get("lastSeen"),
        )

    def _write(self, record: SessionRecord) -> None:
        path = self.path_for(record.instance_id)
        payload = json.dumps(
            {"creds": record.credentials, "lastSeen": record.last_seen or _utcnow_iso()},
            default=_encode_default,
        )
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, "utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreUnavailableError(f"file write failed: {exc}") from exc

    def _delete(self, instance_id: str) -> None:
        path = self.path_for(instance_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StoreUnavailableError(f"file delete failed: {exc}") from exc

    async def get(self, instance_id: str) -> Optional[SessionRecord]:
        return await asyncio.to_thread(self._read, instance_id)

    async def put(self, record: SessionRecord) -> None:
        await asyncio.to_thread(self._write, record)

    async def delete(self, instance_id: str) -> None:
        await asyncio.to_thread(self._delete, instance_id)

    async def close(self) -> None:
        return None


class SessionStore:
    """Ranked credential store: remote cache tiers first, file tier last.

    Every tier is optional. A tier that errors is skipped for that call and
    the next one is consulted, so callers never see store failures; they only
    see a missing record.
    """

    def __init__(
        self,
        cache_backends: Sequence[SessionBackend],
        file_backend: Optional[FileSessionBackend] = None,
    ) -> None:
        self._cache_backends = list(cache_backends)
        self._file_backend = file_backend

    @property
    def backends(self) -> list[SessionBackend]:
        tiers: list[SessionBackend] = list(self._cache_backends)
        if self._file_backend is not None:
            tiers.append(self._file_backend)
        return tiers

    def _record_failure(self, backend: SessionBackend, operation: str, instance_id: str, exc: Exception) -> None:
        WA_STORE_ERRORS_TOTAL.labels(backend.name).inc()
        LOGGER.warning(
            "stage=store_unavailable backend=%s op=%s instance_id=%s error=%s",
            backend.name,
            operation,
            instance_id,
            exc,
        )

    async def get(self, instance_id: str) -> Optional[SessionRecord]:
        for backend in self.backends:
            try:
                record = await backend.get(instance_id)
            except StoreUnavailableError as exc:
                self._record_failure(backend, "get", instance_id, exc)
                continue
            if record is not None and record.credentials is not None:
                LOGGER.info(
                    "stage=store_hit backend=%s instance_id=%s", backend.name, instance_id
                )
                return record
        LOGGER.info("stage=store_miss instance_id=%s", instance_id)
        return None

    async def put(self, instance_id: str, credentials: Any) -> bool:
        try:
            encode_credentials(credentials)
        except (TypeError, ValueError) as exc:
            WA_STORE_ERRORS_TOTAL.labels("codec").inc()
            LOGGER.error(
                "stage=store_encode_failed instance_id=%s error=%s", instance_id, exc
            )
            return False
        record = SessionRecord(
            instance_id=instance_id, credentials=credentials, last_seen=_utcnow_iso()
        )
        written = False
        if self._file_backend is not None:
            try:
                await self._file_backend.put(record)
                written = True
            except StoreUnavailableError as exc:
                self._record_failure(self._file_backend, "put", instance_id, exc)
        for backend in self._cache_backends:
            try:
                await backend.put(record)
            except StoreUnavailableError as exc:
                self._record_failure(backend, "put", instance_id, exc)
                continue
            LOGGER.info("stage=store_put backend=%s instance_id=%s", backend.name, instance_id)
            return True
        if not written:
            LOGGER.error("stage=store_put_failed instance_id=%s tiers=none", instance_id)
        return written

    async def delete(self, instance_id: str) -> None:
        for backend in self.backends:
            try:
                await backend.delete(instance_id)
            except StoreUnavailableError as exc:
                self._record_failure(backend, "delete", instance_id, exc)
        LOGGER.info("stage=store_delete instance_id=%s", instance_id)

    async def close(self) -> None:
        for backend in self.backends:
            await backend.close()


def build_session_store(cfg: GatewayConfig) -> SessionStore:
    primary = RedisSessionBackend.from_endpoint(
        "redis_primary",
        cfg.primary_redis,
        key_prefix=cfg.store_key_prefix,
        timeout=cfg.store_timeout,
    )
    backup = RedisSessionBackend.from_endpoint(
        "redis_backup",
        cfg.backup_redis,
        key_prefix=cfg.store_key_prefix,
        timeout=cfg.store_timeout,
    )
    return SessionStore([primary, backup], FileSessionBackend(cfg.sessions_dir))


__all__ = [
    "FileSessionBackend",
    "InvalidInstanceIdError",
    "RedisSessionBackend",
    "SessionBackend",
    "SessionRecord",
    "SessionStore",
    "StoreUnavailableError",
    "build_session_store",
    "decode_credentials",
    "encode_credentials",
    "validate_instance_id",
]

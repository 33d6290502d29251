from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from redis import exceptions as redis_ex

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

from wagateway.lifecycle import ConnectionLifecycleManager
from wagateway.protocol import ClientOptions, ProtocolClientAdapter
from wagateway.registry import ActiveSessionRegistry
from wagateway.store import FileSessionBackend, RedisSessionBackend, SessionStore


_GATEWAY_ENV = (
    "REDIS_HOST",
    "REDIS_PORT",
    "REDIS_BACKUP_HOST",
    "REDIS_BACKUP_PORT",
    "WA_STORE_TIMEOUT",
    "WA_STORE_KEY_PREFIX",
    "WA_SESSIONS_DIR",
    "WA_GATEWAY_PORT",
    "WA_CONNECT_DEADLINE",
    "WA_FALLBACK_DELAY",
    "WA_RECONNECT_CLEAR_DELAY",
    "WA_MAX_RECONNECT_ATTEMPTS",
    "WA_SESSION_TTL",
    "WA_CLIENT_FACTORY",
    "WA_GATEWAY_TOKEN",
)


def fake_render(payload: str) -> bytes:
    return f"png:{payload}".encode("utf-8")


class FakeProtocolClient:
    def __init__(self, instance_id: str, options: ClientOptions, script: list[Any] | None = None) -> None:
        self.instance_id = instance_id
        self.options = options
        self.credentials = options.credentials if options.credentials is not None else {
            "noiseKey": f"key-{instance_id}"
        }
        self.script = list(script or [])
        self.handler = None
        self.connected = False
        self.close_calls = 0
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.send_error: Exception | None = None
        self.send_result: Any = {"key": {"id": "MSG-1"}}

    def subscribe(self, handler) -> None:
        self.handler = handler

    async def connect(self) -> None:
        self.connected = True
        for update in self.script:
            await self.handler(update)

    async def send_message(self, jid: str, content: dict[str, Any]) -> Any:
        self.sent.append((jid, content))
        if self.send_error is not None:
            raise self.send_error
        return self.send_result

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    async def emit(self, update: Any) -> None:
        assert self.handler is not None, "client was never subscribed"
        await self.handler(update)


class FakeClientFactory:
    def __init__(self) -> None:
        self.clients: list[FakeProtocolClient] = []
        self.script: list[Any] = []
        self.error: Exception | None = None

    def __call__(self, instance_id: str, options: ClientOptions) -> FakeProtocolClient:
        if self.error is not None:
            raise self.error
        client = FakeProtocolClient(instance_id, options, self.script)
        self.clients.append(client)
        return client


class FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.closed = False

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def delete(self, key: str) -> int:
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        self.closed = True


class BrokenRedis(FakeRedis):
    async def hgetall(self, key: str) -> dict[str, str]:
        raise redis_ex.ConnectionError("connection refused")

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        raise redis_ex.ConnectionError("connection refused")

    async def delete(self, key: str) -> int:
        raise redis_ex.ConnectionError("connection refused")


class HangingRedis(FakeRedis):
    async def hgetall(self, key: str) -> dict[str, str]:
        await asyncio.sleep(10)
        return {}

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        await asyncio.sleep(10)
        return 0


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _clean_gateway_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in _GATEWAY_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WA_SESSIONS_DIR", str(tmp_path / "sessions"))


@pytest.fixture
def primary_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def backup_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def session_store(tmp_path: Path, primary_redis: FakeRedis, backup_redis: FakeRedis) -> SessionStore:
    return SessionStore(
        [
            RedisSessionBackend("redis_primary", primary_redis, timeout=0.5),
            RedisSessionBackend("redis_backup", backup_redis, timeout=0.5),
        ],
        FileSessionBackend(tmp_path / "store"),
    )


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def make_manager(session_store: SessionStore, client_factory: FakeClientFactory):
    def _make(options: ClientOptions | None = None, **kwargs: Any) -> ConnectionLifecycleManager:
        kwargs.setdefault("render_qr", fake_render)
        return ConnectionLifecycleManager(
            session_store,
            ActiveSessionRegistry(),
            ProtocolClientAdapter(client_factory, options=options),
            **kwargs,
        )

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def broken_redis() -> BrokenRedis:
    return BrokenRedis()


@pytest.fixture
def hanging_redis() -> HangingRedis:
    return HangingRedis()

from __future__ import annotations

import asyncio
import base64
import time

import pytest

from wagateway.lifecycle import (
    CONNECT_DEADLINE,
    ConnectOutcome,
    OutcomeStatus,
    PendingResponse,
    SessionStatus,
)
from wagateway.protocol import ClientOptions, FailureClass


def _b64(payload: str) -> str:
    return base64.b64encode(f"png:{payload}".encode("utf-8")).decode("ascii")


def _close(code: int, message: str = "Connection Failure") -> dict:
    return {
        "connection": "close",
        "lastDisconnect": {"error": {"output": {"statusCode": code}, "message": message}},
    }


@pytest.mark.anyio
async def test_pending_response_resolves_once():
    pending = PendingResponse("t")
    assert pending.resolve(ConnectOutcome(OutcomeStatus.QRCODE, qr_code="a")) is True
    assert pending.resolve(ConnectOutcome(OutcomeStatus.TIMEOUT)) is False
    outcome = await pending.wait()
    assert outcome.status is OutcomeStatus.QRCODE


def test_default_connect_deadline(make_manager):
    assert CONNECT_DEADLINE == 180.0
    assert make_manager().connect_deadline == 180.0


@pytest.mark.anyio
async def test_qr_resolves_pending_exactly_once(make_manager, client_factory, wait_until):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-1", "+55 11 99999"))
    await wait_until(lambda: client_factory.clients)
    client = client_factory.clients[0]

    await client.emit({"qr": "QR-1"})
    outcome = await task
    assert outcome.status is OutcomeStatus.QRCODE
    assert outcome.qr_code == _b64("QR-1")
    assert outcome.qr_raw == "QR-1"

    await client.emit({"qr": "QR-2"})
    await client.emit({"connection": "open"})

    session = manager.get_session("shop-1")
    assert session.pending.outcome().qr_raw == "QR-1"
    assert session.status is SessionStatus.CONNECTED
    assert "shop-1" in manager.registry
    assert manager.registry.get("shop-1").phone_number == "+55 11 99999"
    await manager.shutdown()


@pytest.mark.anyio
async def test_client_options_disable_history_and_presence(make_manager, client_factory, wait_until):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-1"))
    await wait_until(lambda: client_factory.clients)
    options = client_factory.clients[0].options

    assert options.print_qr_in_terminal is False
    assert options.sync_full_history is False
    assert options.mark_online_on_connect is False
    assert options.should_sync_history_message({"id": 1}) is False
    assert options.browser == ("WhatsApp", "2.23.24.84", "Chrome", "1.0")

    await client_factory.clients[0].emit({"qr": "QR"})
    await task
    await manager.shutdown()


@pytest.mark.anyio
async def test_concurrent_connects_share_one_client(make_manager, client_factory, wait_until):
    manager = make_manager()
    first = asyncio.create_task(manager.connect("shop-2"))
    second = asyncio.create_task(manager.connect("shop-2"))
    await wait_until(lambda: client_factory.clients)

    await client_factory.clients[0].emit({"qr": "QR-A"})
    outcomes = await asyncio.gather(first, second)

    assert [o.status for o in outcomes] == [OutcomeStatus.QRCODE, OutcomeStatus.QRCODE]
    assert len(client_factory.clients) == 1
    await manager.shutdown()


@pytest.mark.anyio
async def test_connect_resumes_stored_credentials(make_manager, client_factory, session_store, wait_until):
    await session_store.put("shop-3", {"me": {"id": "55119@s.whatsapp.net"}})
    manager = make_manager()

    task = asyncio.create_task(manager.connect("shop-3"))
    await wait_until(lambda: client_factory.clients)
    client = client_factory.clients[0]
    assert client.options.credentials == {"me": {"id": "55119@s.whatsapp.net"}}

    await client.emit({"connection": "open"})
    outcome = await task
    assert outcome.status is OutcomeStatus.CONNECTED
    assert outcome.to_payload("shop-3")["message"] == "WhatsApp connected successfully"
    await manager.shutdown()


@pytest.mark.anyio
async def test_connect_when_already_active_reuses_client(make_manager, client_factory):
    client_factory.script = [{"connection": "open"}]
    manager = make_manager()

    assert (await manager.connect("shop-4")).status is OutcomeStatus.CONNECTED
    assert (await manager.connect("shop-4")).status is OutcomeStatus.CONNECTED
    assert len(client_factory.clients) == 1
    await manager.shutdown()


@pytest.mark.anyio
async def test_method_not_allowed_close_serves_fallback_qr(make_manager, client_factory, wait_until):
    manager = make_manager(fallback_delay=0.01)
    task = asyncio.create_task(manager.connect("shop-5", "+55 (11) 98888-7777"))
    await wait_until(lambda: client_factory.clients)
    client = client_factory.clients[0]

    await client.emit(_close(405, "Method Not Allowed"))
    outcome = await task

    assert outcome.status is OutcomeStatus.FALLBACK
    assert outcome.qr_raw == "https://wa.me/5511988887777"
    assert outcome.qr_code == _b64("https://wa.me/5511988887777")
    payload = outcome.to_payload("shop-5")
    assert payload["fallback"] is True
    assert payload["success"] is True
    await wait_until(lambda: client.close_calls == 1)
    assert "shop-5" not in manager.registry
    await manager.shutdown()


@pytest.mark.anyio
async def test_logged_out_close_purges_credentials(make_manager, client_factory, session_store, wait_until):
    await session_store.put("shop-6", {"me": "x"})
    client_factory.script = [{"connection": "open"}]
    manager = make_manager(reconnect_clear_delay=0.01)

    assert (await manager.connect("shop-6")).status is OutcomeStatus.CONNECTED
    client = client_factory.clients[0]
    await client.emit(_close(401, "Logged Out"))

    session = manager.get_session("shop-6")
    assert session.status is SessionStatus.DISCONNECTED
    assert session.credentials is None
    assert session.reconnect_attempts == 0
    assert "shop-6" not in manager.registry
    assert await session_store.get("shop-6") is None
    await wait_until(lambda: client.close_calls == 1)

    await asyncio.sleep(0.05)
    assert len(client_factory.clients) == 1
    await manager.shutdown()


@pytest.mark.anyio
async def test_close_before_open_reports_disconnect(make_manager, client_factory, wait_until):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-7"))
    await wait_until(lambda: client_factory.clients)

    await client_factory.clients[0].emit(_close(428, "Connection Closed"))
    outcome = await task

    assert outcome.status is OutcomeStatus.DISCONNECTED
    assert outcome.to_payload("shop-7") == {
        "success": False,
        "status": "disconnected",
        "instance_id": "shop-7",
        "reason": "Connection Closed",
        "disconnect_code": 428,
    }
    await manager.shutdown()


@pytest.mark.anyio
async def test_transient_close_reconnects_with_stored_credentials(
    make_manager, client_factory, session_store, wait_until
):
    await session_store.put("shop-8", {"me": "y"})
    client_factory.script = [{"connection": "open"}]
    options = ClientOptions(retry_delays={FailureClass.DISCONNECT: 0.01}, max_restart_after=0.05)
    manager = make_manager(options=options)

    assert (await manager.connect("shop-8")).status is OutcomeStatus.CONNECTED
    await client_factory.clients[0].emit(_close(428))

    await wait_until(lambda: len(client_factory.clients) == 2)
    assert client_factory.clients[1].options.credentials == {"me": "y"}
    await wait_until(lambda: "shop-8" in manager.registry)
    assert manager.registry.get("shop-8").client is client_factory.clients[1]
    assert manager.get_session("shop-8").reconnect_attempts == 0
    await manager.shutdown()


@pytest.mark.anyio
async def test_deadline_expiry_returns_timeout(make_manager, client_factory, wait_until):
    manager = make_manager(connect_deadline=0.05)

    outcome = await manager.connect("shop-9")

    assert outcome.status is OutcomeStatus.TIMEOUT
    assert outcome.to_payload("shop-9")["message"] == "Connection timeout. Please try again."
    session = manager.get_session("shop-9")
    assert session.status is SessionStatus.DISCONNECTED
    assert session.last_error == "timeout"
    assert session.client is None
    await wait_until(lambda: client_factory.clients[0].close_calls == 1)

    # events from the abandoned client no longer change anything
    await client_factory.clients[0].emit({"connection": "open"})
    assert "shop-9" not in manager.registry
    await manager.shutdown()


@pytest.mark.anyio
async def test_construction_failure_returns_error(make_manager, client_factory):
    client_factory.error = RuntimeError("native crypto missing")
    manager = make_manager()

    outcome = await manager.connect("shop-10")

    assert outcome.status is OutcomeStatus.ERROR
    assert "native crypto missing" in outcome.reason
    assert manager.get_session("shop-10").status is SessionStatus.ERROR
    await manager.shutdown()


@pytest.mark.anyio
async def test_qr_render_failure_returns_error(make_manager, client_factory, wait_until):
    def _explode(payload: str) -> bytes:
        raise ValueError("data too long")

    manager = make_manager(render_qr=_explode)
    task = asyncio.create_task(manager.connect("shop-11"))
    await wait_until(lambda: client_factory.clients)
    await client_factory.clients[0].emit({"qr": "QR"})

    outcome = await task
    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.reason.startswith("Failed to generate QR code")
    await manager.shutdown()


@pytest.mark.anyio
async def test_disconnect_resolves_waiting_connect(make_manager, client_factory, wait_until):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-12"))
    await wait_until(lambda: client_factory.clients)

    assert await manager.disconnect("shop-12") is True
    outcome = await task

    assert outcome.status is OutcomeStatus.DISCONNECTED
    assert client_factory.clients[0].close_calls == 1
    assert manager.get_session("shop-12").status is SessionStatus.DISCONNECTED
    await manager.shutdown()


@pytest.mark.anyio
async def test_disconnect_with_logout_deletes_record(
    make_manager, client_factory, session_store, primary_redis, wait_until
):
    client_factory.script = [{"connection": "open"}]
    manager = make_manager()
    await manager.connect("shop-13")
    await wait_until(lambda: "@baileys:shop-13" in primary_redis.hashes)

    await manager.disconnect("shop-13", logout=True)

    assert "shop-13" not in manager.registry
    assert await session_store.get("shop-13") is None
    await manager.shutdown()


@pytest.mark.anyio
async def test_credentials_update_is_persisted(make_manager, client_factory, session_store):
    client_factory.script = [{"connection": "open"}]
    manager = make_manager()
    await manager.connect("shop-14")

    await client_factory.clients[0].emit({"creds": {"signedPreKey": "rotated"}})

    record = await session_store.get("shop-14")
    assert record.credentials == {"noiseKey": "key-shop-14", "signedPreKey": "rotated"}
    assert manager.registry.get("shop-14").credentials == record.credentials
    await manager.shutdown()


@pytest.mark.anyio
async def test_force_connect_supersedes_active_client(make_manager, client_factory, wait_until):
    client_factory.script = [{"connection": "open"}]
    manager = make_manager()
    await manager.connect("shop-15")

    outcome = await manager.connect("shop-15", force=True)

    assert outcome.status is OutcomeStatus.CONNECTED
    assert len(client_factory.clients) == 2
    assert client_factory.clients[0].close_calls == 1
    assert manager.registry.get("shop-15").client is client_factory.clients[1]
    await manager.shutdown()


@pytest.mark.anyio
async def test_stats_snapshot_counts_sessions(make_manager, client_factory, wait_until):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-16"))
    await wait_until(lambda: client_factory.clients)

    assert manager.stats_snapshot() == {"active": 0, "pending": 1, "known": 1}
    snapshot = manager.session_snapshot("shop-16")
    assert snapshot["status"] == "connecting"
    assert snapshot["active"] is False

    await client_factory.clients[0].emit({"connection": "open"})
    await task
    assert manager.stats_snapshot() == {"active": 1, "pending": 0, "known": 1}
    await manager.shutdown()


@pytest.mark.anyio
async def test_binary_credentials_survive_open(make_manager, client_factory, session_store, wait_until):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-17"))
    await wait_until(lambda: client_factory.clients)
    client = client_factory.clients[0]
    client.credentials = {"noiseKey": b"\x01\x02", "me": {"id": "55119@s.whatsapp.net"}}

    await client.emit({"connection": "open"})
    outcome = await task

    assert outcome.status is OutcomeStatus.CONNECTED
    assert "shop-17" in manager.registry
    record = await session_store.get("shop-17")
    assert record.credentials == {"noiseKey": b"\x01\x02", "me": {"id": "55119@s.whatsapp.net"}}
    await manager.shutdown()


@pytest.mark.anyio
async def test_unencodable_credentials_do_not_block_open(
    make_manager, client_factory, session_store, wait_until
):
    manager = make_manager()
    task = asyncio.create_task(manager.connect("shop-18"))
    await wait_until(lambda: client_factory.clients)
    client = client_factory.clients[0]
    client.credentials = {"noiseKey": object()}

    await client.emit({"connection": "open"})

    assert (await task).status is OutcomeStatus.CONNECTED
    assert manager.get_session("shop-18").status is SessionStatus.CONNECTED
    assert "shop-18" in manager.registry
    assert await session_store.get("shop-18") is None
    await manager.shutdown()


@pytest.mark.anyio
async def test_forbidden_close_is_terminal_and_keeps_credentials(
    make_manager, client_factory, session_store, wait_until
):
    await session_store.put("shop-19", {"me": "z"})
    client_factory.script = [{"connection": "open"}]
    options = ClientOptions(
        retry_delays={FailureClass.FORBIDDEN: 0.01, FailureClass.DISCONNECT: 0.01},
        max_restart_after=0.05,
    )
    manager = make_manager(options=options, reconnect_clear_delay=0.01)

    assert (await manager.connect("shop-19")).status is OutcomeStatus.CONNECTED
    client = client_factory.clients[0]
    await client.emit(_close(403, "Forbidden"))
    await wait_until(lambda: client.close_calls == 1)

    await asyncio.sleep(0.05)
    assert len(client_factory.clients) == 1
    session = manager.get_session("shop-19")
    assert session.status is SessionStatus.DISCONNECTED
    assert session.last_disconnect_code == 403
    assert session.reconnect_attempts == 0
    assert "shop-19" not in manager.registry
    assert (await session_store.get("shop-19")).credentials == {"me": "z"}
    await manager.shutdown()


@pytest.mark.anyio
async def test_deadline_does_not_fire_early(make_manager, client_factory, wait_until):
    manager = make_manager(connect_deadline=0.2)
    task = asyncio.create_task(manager.connect("shop-20"))
    await wait_until(lambda: client_factory.clients)

    await asyncio.sleep(0.15)
    assert not task.done()
    assert manager.get_session("shop-20").status is SessionStatus.CONNECTING

    outcome = await task
    assert outcome.status is OutcomeStatus.TIMEOUT
    await manager.shutdown()


@pytest.mark.anyio
async def test_background_reconnect_is_bounded_by_deadline(
    make_manager, client_factory, session_store, wait_until
):
    await session_store.put("shop-21", {"me": "w"})
    client_factory.script = [{"connection": "open"}]
    options = ClientOptions(retry_delays={FailureClass.DISCONNECT: 0.01}, max_restart_after=0.05)
    manager = make_manager(options=options, connect_deadline=0.1, reconnect_clear_delay=0.01)

    assert (await manager.connect("shop-21")).status is OutcomeStatus.CONNECTED
    client_factory.script = []
    await client_factory.clients[0].emit(_close(428))

    await wait_until(lambda: len(client_factory.clients) == 2)
    silent = client_factory.clients[1]
    await wait_until(lambda: silent.close_calls == 1)

    session = manager.get_session("shop-21")
    assert session.status is SessionStatus.DISCONNECTED
    assert session.last_error == "timeout"
    assert session.client is None
    assert session.pending.outcome().status is OutcomeStatus.TIMEOUT
    assert "shop-21" not in manager.registry
    await manager.shutdown()


@pytest.mark.anyio
async def test_failed_sessions_are_evicted_after_ttl(make_manager, client_factory, wait_until):
    client_factory.error = RuntimeError("native crypto missing")
    manager = make_manager(session_ttl=0.0)

    for index in range(20):
        outcome = await manager.connect(f"broken-{index}")
        assert outcome.status is OutcomeStatus.ERROR

    await asyncio.sleep(0.01)
    manager.evict_stale()
    assert manager.known_sessions() == 0

    client_factory.error = None
    client_factory.script = [{"connection": "open"}]
    assert (await manager.connect("live")).status is OutcomeStatus.CONNECTED
    await asyncio.sleep(0.01)
    assert manager.evict_stale() == 0
    assert manager.known_sessions() == 1
    await manager.shutdown()


@pytest.mark.anyio
async def test_idle_sessions_kept_within_ttl(make_manager, client_factory):
    client_factory.error = RuntimeError("native crypto missing")
    manager = make_manager()

    await manager.connect("shop-22")
    await asyncio.sleep(0.01)

    assert manager.evict_stale() == 0
    assert manager.known_sessions() == 1
    assert manager.evict_stale(now=time.time() + 3600) == 1
    assert manager.get_session("shop-22") is None
    await manager.shutdown()

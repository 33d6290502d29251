from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .metrics import (
    WA_CONNECT_OUTCOMES_TOTAL,
    WA_DISCONNECTS_TOTAL,
    WA_RECONNECTS_TOTAL,
    WA_SESSIONS_ACTIVE,
    WA_SESSIONS_PENDING,
)
from .protocol import (
    AdapterConstructionError,
    ConnectionUpdate,
    DisconnectReason,
    FailureClass,
    ProtocolClient,
    ProtocolClientAdapter,
    UpdateKind,
    classify_failure,
    is_terminal,
    normalize_updates,
    retry_delay,
)
from .qr import build_qr_png, encode_png, fallback_link
from .registry import ActiveSession, ActiveSessionRegistry
from .store import SessionStore, validate_instance_id


LOGGER = logging.getLogger("wagateway.lifecycle")

CONNECT_DEADLINE = 180.0
FALLBACK_DELAY = 5.0
RECONNECT_CLEAR_DELAY = 3.0
MAX_RECONNECT_ATTEMPTS = 5
SESSION_TTL = 3600.0


class SessionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_PENDING = "qr_pending"
    CONNECTED = "connected"
    CLOSING = "closing"
    ERROR = "error"


IN_FLIGHT_STATUSES = frozenset({SessionStatus.CONNECTING, SessionStatus.QR_PENDING})
IDLE_STATUSES = frozenset({SessionStatus.DISCONNECTED, SessionStatus.ERROR})


class EventKind(str, enum.Enum):
    QR_ISSUED = "qr_issued"
    OPEN = "open"
    CLOSE = "close"
    CREDENTIALS_UPDATED = "credentials_updated"
    DEADLINE_EXPIRED = "deadline_expired"
    FALLBACK_DUE = "fallback_due"
    CLEAR_DUE = "clear_due"
    RECONNECT_DUE = "reconnect_due"
    FAILED = "failed"


_UPDATE_EVENTS = {
    UpdateKind.QR: EventKind.QR_ISSUED,
    UpdateKind.OPEN: EventKind.OPEN,
    UpdateKind.CLOSE: EventKind.CLOSE,
    UpdateKind.CREDENTIALS: EventKind.CREDENTIALS_UPDATED,
}


class OutcomeStatus(str, enum.Enum):
    QRCODE = "qrcode"
    CONNECTED = "connected"
    FALLBACK = "qrcode_fallback"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    ERROR = "error"


_SUCCESS_OUTCOMES = frozenset({OutcomeStatus.QRCODE, OutcomeStatus.CONNECTED, OutcomeStatus.FALLBACK})


@dataclass(frozen=True, slots=True)
class ConnectOutcome:
    status: OutcomeStatus
    qr_code: Optional[str] = None
    qr_raw: Optional[str] = None
    reason: Optional[str] = None
    disconnect_code: Optional[int | str] = None

    @property
    def success(self) -> bool:
        return self.status in _SUCCESS_OUTCOMES

    def to_payload(self, instance_id: str, phone_number: Optional[str] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "instance_id": instance_id,
        }
        if phone_number:
            payload["phone"] = phone_number
        if self.status is OutcomeStatus.QRCODE:
            payload["qr_code"] = self.qr_code
            payload["qr_raw"] = self.qr_raw
            payload["qr_data_url"] = f"data:image/png;base64,{self.qr_code}"
            payload["message"] = "Scan this QR with WhatsApp"
        elif self.status is OutcomeStatus.CONNECTED:
            payload["message"] = "WhatsApp connected successfully"
        elif self.status is OutcomeStatus.FALLBACK:
            payload["qr_code"] = self.qr_code
            payload["fallback"] = True
            payload["message"] = "Fallback QR - Scan with WhatsApp"
        elif self.status is OutcomeStatus.DISCONNECTED:
            payload["reason"] = self.reason or "Connection lost"
            payload["disconnect_code"] = (
                self.disconnect_code if self.disconnect_code is not None else "unknown"
            )
        elif self.status is OutcomeStatus.TIMEOUT:
            payload["message"] = "Connection timeout. Please try again."
        else:
            payload["reason"] = self.reason or "unknown_error"
        return payload


class PendingResponse:
    """One-shot completion token for a connect request."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        self.created_at = time.monotonic()
        self.deadline_task: Optional[asyncio.Task[Any]] = None
        self._future: asyncio.Future[ConnectOutcome] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, outcome: ConnectOutcome) -> bool:
        if self._future.done():
            return False
        self._future.set_result(outcome)
        return True

    def outcome(self) -> Optional[ConnectOutcome]:
        if not self._future.done():
            return None
        return self._future.result()

    async def wait(self) -> ConnectOutcome:
        return await asyncio.shield(self._future)


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    kind: EventKind
    client: Any = None
    generation: Optional[int] = None
    pending: Optional[PendingResponse] = None
    qr: Optional[str] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None
    credentials: Any = None

    @classmethod
    def from_update(cls, update: ConnectionUpdate, client: Any) -> "LifecycleEvent":
        return cls(
            kind=_UPDATE_EVENTS[update.kind],
            client=client,
            qr=update.qr,
            status_code=update.status_code,
            reason=update.reason,
            credentials=update.credentials,
        )


@dataclass(slots=True)
class TenantSession:
    instance_id: str
    phone_number: Optional[str] = None
    status: SessionStatus = SessionStatus.DISCONNECTED
    credentials: Any = None
    last_seen_at: Optional[float] = None
    client: Optional[ProtocolClient] = None
    pending: Optional[PendingResponse] = None
    generation: int = 0
    last_qr: Optional[str] = None
    last_error: Optional[str] = None
    last_disconnect_code: Optional[int] = None
    reconnect_attempts: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    def snapshot(self, *, active: bool) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "phone": self.phone_number,
            "status": self.status.value,
            "active": active,
            "has_credentials": self.credentials is not None,
            "last_seen_at": self.last_seen_at,
            "last_error": self.last_error,
            "disconnect_code": self.last_disconnect_code,
            "reconnect_attempts": self.reconnect_attempts,
        }


def merge_credentials(current: Any, update: Any) -> Any:
    if isinstance(current, Mapping) and isinstance(update, Mapping):
        merged = dict(current)
        merged.update(update)
        return merged
    return update


class ConnectionLifecycleManager:
    """Per-instance connection state machine.

    Every transition for an instance runs through :meth:`dispatch` under that
    instance's lock, so events of one protocol client are applied in order.
    The manager is the only writer of the active session registry.
    """

    def __init__(
        self,
        store: SessionStore,
        registry: ActiveSessionRegistry,
        adapter: ProtocolClientAdapter,
        *,
        connect_deadline: float = CONNECT_DEADLINE,
        fallback_delay: float = FALLBACK_DELAY,
        reconnect_clear_delay: float = RECONNECT_CLEAR_DELAY,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        session_ttl: float = SESSION_TTL,
        render_qr: Callable[[str], bytes] = build_qr_png,
    ) -> None:
        self._store = store
        self._registry = registry
        self._adapter = adapter
        self._connect_deadline = connect_deadline
        self._fallback_delay = fallback_delay
        self._reconnect_clear_delay = reconnect_clear_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._session_ttl = session_ttl
        self._render_qr = render_qr
        self._sessions: Dict[str, TenantSession] = {}
        self._closing: set[asyncio.Task[Any]] = set()
        self._handlers: Dict[EventKind, Callable[[TenantSession, LifecycleEvent], Awaitable[None]]] = {
            EventKind.QR_ISSUED: self._on_qr_issued,
            EventKind.OPEN: self._on_open,
            EventKind.CLOSE: self._on_close,
            EventKind.CREDENTIALS_UPDATED: self._on_credentials_updated,
            EventKind.DEADLINE_EXPIRED: self._on_deadline_expired,
            EventKind.FALLBACK_DUE: self._on_fallback_due,
            EventKind.CLEAR_DUE: self._on_clear_due,
            EventKind.RECONNECT_DUE: self._on_reconnect_due,
            EventKind.FAILED: self._on_failed,
        }

    @property
    def registry(self) -> ActiveSessionRegistry:
        return self._registry

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def connect_deadline(self) -> float:
        return self._connect_deadline

    def get_session(self, instance_id: str) -> Optional[TenantSession]:
        return self._sessions.get(instance_id)

    def session_snapshot(self, instance_id: str) -> Optional[dict[str, Any]]:
        session = self._sessions.get(instance_id)
        if session is None:
            return None
        return session.snapshot(active=instance_id in self._registry)

    def known_sessions(self) -> int:
        return len(self._sessions)

    def stats_snapshot(self) -> dict[str, int]:
        pending = sum(1 for s in self._sessions.values() if s.status in IN_FLIGHT_STATUSES)
        return {
            "active": len(self._registry),
            "pending": pending,
            "known": len(self._sessions),
        }

    def _is_idle(self, session: TenantSession) -> bool:
        if session.status not in IDLE_STATUSES or session.client is not None:
            return False
        if session.instance_id in self._registry or session.lock.locked():
            return False
        if session.pending is not None and not session.pending.done:
            return False
        return not any(not task.done() for task in session.tasks)

    def evict_stale(self, now: Optional[float] = None) -> int:
        """Forget idle sessions not touched within the session TTL."""
        now = time.time() if now is None else now
        stale = [
            instance_id
            for instance_id, session in self._sessions.items()
            if self._is_idle(session)
            and now - (session.last_seen_at or 0.0) >= self._session_ttl
        ]
        for instance_id in stale:
            del self._sessions[instance_id]
        if stale:
            LOGGER.info("stage=sessions_evicted count=%s", len(stale))
        return len(stale)

    # connect entrypoint

    async def connect(
        self,
        instance_id: str,
        phone_number: Optional[str] = None,
        *,
        force: bool = False,
    ) -> ConnectOutcome:
        instance_id = validate_instance_id(instance_id)
        self.evict_stale()
        session = self._sessions.get(instance_id)
        if session is None:
            session = TenantSession(instance_id=instance_id)
            self._sessions[instance_id] = session
        if phone_number:
            session.phone_number = phone_number

        if force:
            await self.disconnect(instance_id, reason="superseded")

        # No awaits from here until the pending token is in place, so two
        # concurrent connects for one instance always share a single client.
        if instance_id in self._registry:
            LOGGER.info("stage=connect_reuse instance_id=%s", instance_id)
            outcome = ConnectOutcome(OutcomeStatus.CONNECTED)
        else:
            pending = session.pending
            if pending is not None and not pending.done:
                LOGGER.info("stage=connect_join instance_id=%s", instance_id)
            elif session.status in IN_FLIGHT_STATUSES:
                LOGGER.info(
                    "stage=connect_attach instance_id=%s status=%s",
                    instance_id,
                    session.status.value,
                )
                pending = self._attach_pending(session)
            else:
                self._begin_attempt(session)
                pending = self._attach_pending(session)
            outcome = await pending.wait()

        WA_CONNECT_OUTCOMES_TOTAL.labels(outcome.status.value).inc()
        return outcome

    async def disconnect(
        self,
        instance_id: str,
        *,
        logout: bool = False,
        reason: str = "manual_disconnect",
    ) -> bool:
        session = self._sessions.get(instance_id)
        if session is None:
            if logout:
                await self._store.delete(instance_id)
            return False
        async with session.lock:
            client = session.client
            was_active = self._registry.discard(instance_id) is not None
            session.generation += 1
            session.client = None
            session.last_qr = None
            session.reconnect_attempts = 0
            self._cancel_tasks(session)
            self._resolve(
                session,
                ConnectOutcome(OutcomeStatus.DISCONNECTED, reason=reason, disconnect_code=reason),
            )
            self._set_status(session, SessionStatus.DISCONNECTED, reason=reason)
            session.last_error = reason
            session.last_seen_at = time.time()
            if logout:
                session.credentials = None
                await self._store.delete(instance_id)
            self._update_metrics()
        if client is not None:
            with contextlib.suppress(Exception):
                await client.close()
        LOGGER.info(
            "stage=disconnect instance_id=%s reason=%s was_active=%s logout=%s",
            instance_id,
            reason,
            was_active,
            logout,
        )
        return was_active or client is not None

    async def shutdown(self) -> None:
        clients: list[ProtocolClient] = []
        for session in list(self._sessions.values()):
            self._cancel_tasks(session)
            session.generation += 1
            if session.client is not None:
                clients.append(session.client)
                session.client = None
            self._resolve(
                session,
                ConnectOutcome(OutcomeStatus.DISCONNECTED, reason="shutdown"),
            )
            session.status = SessionStatus.DISCONNECTED
        self._registry.clear()
        for client in clients:
            with contextlib.suppress(Exception):
                await client.close()
        await self._store.close()
        self._update_metrics()

    # event plumbing

    async def dispatch(self, session: TenantSession, event: LifecycleEvent) -> None:
        async with session.lock:
            if event.client is not None and event.client is not session.client:
                if event.kind not in (EventKind.CLEAR_DUE, EventKind.FALLBACK_DUE):
                    LOGGER.debug(
                        "stage=event_stale instance_id=%s event=%s",
                        session.instance_id,
                        event.kind.value,
                    )
                    return
            if event.generation is not None and event.generation != session.generation:
                LOGGER.debug(
                    "stage=event_stale instance_id=%s event=%s generation=%s current=%s",
                    session.instance_id,
                    event.kind.value,
                    event.generation,
                    session.generation,
                )
                return
            await self._handlers[event.kind](session, event)
            session.last_seen_at = time.time()
            self._update_metrics()

    def _update_handler(self, session: TenantSession, client: ProtocolClient):
        async def _on_update(update: Any) -> None:
            try:
                for item in normalize_updates(update):
                    await self.dispatch(session, LifecycleEvent.from_update(item, client))
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(
                    "stage=event_handler_error instance_id=%s", session.instance_id
                )

        return _on_update

    def _spawn(self, session: TenantSession, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        task.add_done_callback(self._log_task_failure)
        return task

    @staticmethod
    def _log_task_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("stage=task_failed error=%s", exc, exc_info=exc)

    def _schedule(self, session: TenantSession, delay: float, event: LifecycleEvent) -> asyncio.Task[Any]:
        async def _fire() -> None:
            await asyncio.sleep(delay)
            await self.dispatch(session, event)

        return self._spawn(session, _fire())

    def _cancel_tasks(self, session: TenantSession) -> None:
        current = asyncio.current_task()
        for task in list(session.tasks):
            if task is not current and not task.done():
                task.cancel()

    def _close_later(self, client: Optional[ProtocolClient]) -> None:
        if client is None:
            return

        async def _close() -> None:
            with contextlib.suppress(Exception):
                await client.close()

        task = asyncio.ensure_future(_close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _set_status(
        self,
        session: TenantSession,
        status: SessionStatus,
        *,
        reason: Optional[str] = None,
    ) -> None:
        previous = session.status
        if previous != status:
            LOGGER.info(
                "stage=state_transition instance_id=%s from=%s to=%s reason=%s",
                session.instance_id,
                previous.value,
                status.value,
                reason or "-",
            )
        session.status = status

    def _resolve(self, session: TenantSession, outcome: ConnectOutcome) -> bool:
        pending = session.pending
        if pending is None:
            return False
        if not pending.resolve(outcome):
            LOGGER.debug(
                "stage=resolve_ignored instance_id=%s status=%s",
                session.instance_id,
                outcome.status.value,
            )
            return False
        LOGGER.info(
            "stage=connect_resolved instance_id=%s status=%s elapsed=%.2f",
            session.instance_id,
            outcome.status.value,
            time.monotonic() - pending.created_at,
        )
        task = pending.deadline_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        WA_SESSIONS_ACTIVE.set(snapshot["active"])
        WA_SESSIONS_PENDING.set(snapshot["pending"])

    # attempts

    def _attach_pending(self, session: TenantSession) -> PendingResponse:
        pending = PendingResponse(session.instance_id)
        session.pending = pending
        pending.deadline_task = self._schedule(
            session,
            self._connect_deadline,
            LifecycleEvent(EventKind.DEADLINE_EXPIRED, pending=pending),
        )
        return pending

    def _begin_attempt(self, session: TenantSession) -> None:
        session.generation += 1
        session.last_qr = None
        session.last_error = None
        self._set_status(session, SessionStatus.CONNECTING, reason="connect")
        self._spawn(session, self._open_client(session, session.generation))
        self._update_metrics()

    async def _open_client(self, session: TenantSession, generation: int) -> None:
        instance_id = session.instance_id
        record = await self._store.get(instance_id)
        if record is not None:
            session.credentials = record.credentials
        if generation != session.generation:
            return
        try:
            client = self._adapter.create(instance_id, session.credentials)
        except AdapterConstructionError as exc:
            LOGGER.error("stage=client_construct_failed instance_id=%s error=%s", instance_id, exc)
            await self.dispatch(
                session,
                LifecycleEvent(EventKind.FAILED, generation=generation, reason=str(exc)),
            )
            return
        if generation != session.generation:
            self._close_later(client)
            return
        session.client = client
        LOGGER.info(
            "stage=client_connect instance_id=%s resumed=%s",
            instance_id,
            "true" if session.credentials is not None else "false",
        )
        try:
            client.subscribe(self._update_handler(session, client))
            await client.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=client_connect_failed instance_id=%s", instance_id)
            await self.dispatch(
                session,
                LifecycleEvent(
                    EventKind.FAILED,
                    client=client,
                    generation=generation,
                    reason=str(exc) or exc.__class__.__name__,
                ),
            )

    def _schedule_reconnect(self, session: TenantSession, failure: FailureClass) -> bool:
        if session.credentials is None:
            return False
        if session.reconnect_attempts >= self._max_reconnect_attempts:
            LOGGER.warning(
                "stage=reconnect_exhausted instance_id=%s attempts=%s",
                session.instance_id,
                session.reconnect_attempts,
            )
            return False
        session.reconnect_attempts += 1
        options = self._adapter.options
        delay = retry_delay(failure, options.retry_delays) * (2 ** (session.reconnect_attempts - 1))
        delay = min(delay, options.max_restart_after)
        WA_RECONNECTS_TOTAL.inc()
        LOGGER.info(
            "stage=reconnect_scheduled instance_id=%s failure=%s attempt=%s delay=%.1f",
            session.instance_id,
            failure.value,
            session.reconnect_attempts,
            delay,
        )
        self._schedule(
            session,
            delay,
            LifecycleEvent(EventKind.RECONNECT_DUE, generation=session.generation),
        )
        return True

    # transitions

    async def _on_qr_issued(self, session: TenantSession, event: LifecycleEvent) -> None:
        if session.status not in IN_FLIGHT_STATUSES or not event.qr:
            return
        session.last_qr = event.qr
        self._set_status(session, SessionStatus.QR_PENDING, reason="qr_issued")
        pending = session.pending
        if pending is None or pending.done:
            LOGGER.info("stage=qr_refresh instance_id=%s", session.instance_id)
            return
        try:
            png = await asyncio.to_thread(self._render_qr, event.qr)
        except Exception as exc:
            LOGGER.exception("stage=qr_render_failed instance_id=%s", session.instance_id)
            self._resolve(
                session,
                ConnectOutcome(
                    OutcomeStatus.ERROR, reason=f"Failed to generate QR code: {exc}"
                ),
            )
            return
        LOGGER.info("stage=qr_issued instance_id=%s qr_length=%s", session.instance_id, len(event.qr))
        self._resolve(
            session,
            ConnectOutcome(OutcomeStatus.QRCODE, qr_code=encode_png(png), qr_raw=event.qr),
        )

    async def _on_open(self, session: TenantSession, event: LifecycleEvent) -> None:
        client = session.client
        if client is None:
            return
        credentials = getattr(client, "credentials", None)
        if credentials is not None:
            session.credentials = credentials
        self._registry.insert(
            ActiveSession(
                instance_id=session.instance_id,
                client=client,
                credentials=session.credentials,
                phone_number=session.phone_number,
            )
        )
        self._set_status(session, SessionStatus.CONNECTED, reason="open")
        session.last_qr = None
        session.last_error = None
        session.last_disconnect_code = None
        session.reconnect_attempts = 0
        LOGGER.info("stage=connected instance_id=%s", session.instance_id)
        self._resolve(session, ConnectOutcome(OutcomeStatus.CONNECTED))
        if session.credentials is not None:
            await self._store.put(session.instance_id, session.credentials)

    async def _on_credentials_updated(self, session: TenantSession, event: LifecycleEvent) -> None:
        if event.credentials is None:
            return
        session.credentials = merge_credentials(session.credentials, event.credentials)
        active = self._registry.get(session.instance_id)
        if active is not None and active.client is session.client:
            active.credentials = session.credentials
        await self._store.put(session.instance_id, session.credentials)
        LOGGER.info("stage=credentials_rotated instance_id=%s", session.instance_id)

    async def _on_close(self, session: TenantSession, event: LifecycleEvent) -> None:
        client = session.client
        code = event.status_code
        failure = classify_failure(code, event.reason)
        WA_DISCONNECTS_TOTAL.labels(failure.value).inc()
        LOGGER.warning(
            "stage=connection_closed instance_id=%s code=%s failure=%s reason=%s",
            session.instance_id,
            code,
            failure.value,
            event.reason,
        )
        self._registry.discard(session.instance_id, client)
        self._set_status(session, SessionStatus.CLOSING, reason=failure.value)
        session.client = None
        session.last_qr = None
        session.last_disconnect_code = code
        session.last_error = event.reason or "Connection lost"
        self._close_later(client)

        if failure is FailureClass.METHOD_NOT_ALLOWED:
            self._schedule(
                session,
                self._fallback_delay,
                LifecycleEvent(EventKind.FALLBACK_DUE, client=client, generation=session.generation),
            )
            self._set_status(session, SessionStatus.DISCONNECTED, reason="method_not_allowed")
            self._schedule_reconnect(session, failure)
            return

        if is_terminal(code):
            if code == DisconnectReason.LOGGED_OUT:
                session.credentials = None
                await self._store.delete(session.instance_id)
            self._set_status(session, SessionStatus.DISCONNECTED, reason=failure.value)
            LOGGER.warning(
                "stage=terminal_disconnect instance_id=%s code=%s", session.instance_id, code
            )
        else:
            self._schedule(
                session,
                self._reconnect_clear_delay,
                LifecycleEvent(EventKind.CLEAR_DUE, client=client, generation=session.generation),
            )
            self._set_status(session, SessionStatus.DISCONNECTED, reason=failure.value)
            self._schedule_reconnect(session, failure)

        self._resolve(
            session,
            ConnectOutcome(
                OutcomeStatus.DISCONNECTED,
                reason=event.reason or "Connection lost",
                disconnect_code=code,
            ),
        )

    async def _on_fallback_due(self, session: TenantSession, event: LifecycleEvent) -> None:
        if event.client is not None:
            self._registry.discard(session.instance_id, event.client)
        pending = session.pending
        if pending is None or pending.done:
            return
        link = fallback_link(session.phone_number)
        try:
            png = await asyncio.to_thread(self._render_qr, link)
        except Exception as exc:
            LOGGER.exception("stage=fallback_qr_failed instance_id=%s", session.instance_id)
            self._resolve(
                session,
                ConnectOutcome(
                    OutcomeStatus.DISCONNECTED,
                    reason=f"Fallback QR generation failed: {exc}",
                    disconnect_code=DisconnectReason.METHOD_NOT_ALLOWED.value,
                ),
            )
            return
        LOGGER.warning("stage=qr_fallback instance_id=%s", session.instance_id)
        self._resolve(
            session,
            ConnectOutcome(OutcomeStatus.FALLBACK, qr_code=encode_png(png), qr_raw=link),
        )

    async def _on_clear_due(self, session: TenantSession, event: LifecycleEvent) -> None:
        if event.client is not None and self._registry.discard(session.instance_id, event.client):
            LOGGER.info("stage=registry_cleared instance_id=%s", session.instance_id)

    async def _on_reconnect_due(self, session: TenantSession, event: LifecycleEvent) -> None:
        if session.client is not None or session.instance_id in self._registry:
            return
        if session.status in IN_FLIGHT_STATUSES or session.status is SessionStatus.CONNECTED:
            return
        LOGGER.info(
            "stage=reconnect instance_id=%s attempt=%s",
            session.instance_id,
            session.reconnect_attempts,
        )
        self._begin_attempt(session)
        self._attach_pending(session)

    async def _on_deadline_expired(self, session: TenantSession, event: LifecycleEvent) -> None:
        pending = event.pending
        if pending is None or pending.done:
            return
        pending.resolve(ConnectOutcome(OutcomeStatus.TIMEOUT))
        LOGGER.warning(
            "stage=connect_timeout instance_id=%s status=%s",
            session.instance_id,
            session.status.value,
        )
        if pending is not session.pending or session.status is SessionStatus.CONNECTED:
            return
        client = session.client
        session.client = None
        session.generation += 1
        session.last_qr = None
        session.last_error = "timeout"
        if client is not None:
            self._registry.discard(session.instance_id, client)
        self._set_status(session, SessionStatus.DISCONNECTED, reason="deadline")
        self._close_later(client)

    async def _on_failed(self, session: TenantSession, event: LifecycleEvent) -> None:
        client = session.client
        session.client = None
        if client is not None:
            self._registry.discard(session.instance_id, client)
        session.last_error = event.reason or "unknown_error"
        self._set_status(session, SessionStatus.ERROR, reason="failed")
        self._close_later(client)
        self._resolve(session, ConnectOutcome(OutcomeStatus.ERROR, reason=session.last_error))


__all__ = [
    "CONNECT_DEADLINE",
    "ConnectOutcome",
    "ConnectionLifecycleManager",
    "EventKind",
    "LifecycleEvent",
    "OutcomeStatus",
    "PendingResponse",
    "SessionStatus",
    "SESSION_TTL",
    "TenantSession",
    "merge_credentials",
]

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import GatewayConfig, gateway_config
from .lifecycle import ConnectionLifecycleManager, OutcomeStatus
from .messaging import InstanceNotConnectedError, SendMessageError, send_message
from .protocol import ProtocolClientAdapter
from .registry import ActiveSessionRegistry
from .store import InvalidInstanceIdError, build_session_store, validate_instance_id


logger = logging.getLogger("wagateway.api")
_access_logger = logging.getLogger("wagateway.access")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
_OPEN_PATHS = frozenset({"/health", "/metrics"})


class _InstanceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_id: str = Field(..., alias="instanceId", min_length=1)

    @field_validator("instance_id")
    @classmethod
    def _check_instance_id(cls, value: str) -> str:
        try:
            return validate_instance_id(value)
        except InvalidInstanceIdError as exc:
            raise ValueError("invalid_instance_id") from exc


class ConnectRequest(_InstanceModel):
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    force: bool = False


class SendMessageRequest(_InstanceModel):
    to: str = Field(..., min_length=1)
    message: str
    message_type: str = Field(default="text", alias="messageType")


class DisconnectRequest(_InstanceModel):
    logout: bool = False


def build_manager(cfg: GatewayConfig) -> ConnectionLifecycleManager:
    return ConnectionLifecycleManager(
        build_session_store(cfg),
        ActiveSessionRegistry(),
        ProtocolClientAdapter.from_path(cfg.client_factory),
        connect_deadline=cfg.connect_deadline,
        fallback_delay=cfg.fallback_delay,
        reconnect_clear_delay=cfg.reconnect_clear_delay,
        max_reconnect_attempts=cfg.max_reconnect_attempts,
        session_ttl=cfg.session_ttl,
    )


def create_app(
    manager: ConnectionLifecycleManager | None = None,
    *,
    config: GatewayConfig | None = None,
) -> FastAPI:
    cfg = config or gateway_config()
    if manager is None:
        manager = build_manager(cfg)
    gateway_token = cfg.gateway_token
    started_at = time.monotonic()

    app = FastAPI(title="wagateway")
    app.state.lifecycle = manager
    app.state.registry = manager.registry

    def _json(body: dict[str, Any], status_code: int = 200) -> JSONResponse:
        return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):
        start = time.time()
        if gateway_token and request.url.path not in _OPEN_PATHS:
            header = request.headers.get("X-Gateway-Token", "").strip()
            if header != gateway_token:
                logger.warning("event=gateway_token_invalid route=%s", request.url.path)
                return _json({"success": False, "error": "not_authorized"}, 401)
        try:
            response = await call_next(request)
        except Exception:
            took = (time.time() - start) * 1000.0
            _access_logger.exception(
                "%s %s -> 500 %.1fms", request.method, request.url.path, took
            )
            return _json({"success": False, "status": "error", "reason": "internal_error"}, 500)
        took = (time.time() - start) * 1000.0
        _access_logger.info(
            "%s %s -> %s %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            took,
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning("event=invalid_request route=%s errors=%s", request.url.path, errors)
        return _json(
            {"success": False, "status": "error", "reason": "invalid_request", "errors": errors},
            400,
        )

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        logger.info("stage=gateway_started deadline=%.0fs", manager.connect_deadline)

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.post("/connect")
    async def connect(payload: ConnectRequest):
        logger.info(
            "event=connect_request instance_id=%s phone=%s force=%s",
            payload.instance_id,
            payload.phone_number,
            payload.force,
        )
        try:
            outcome = await manager.connect(
                payload.instance_id, payload.phone_number, force=payload.force
            )
        except Exception as exc:
            logger.exception("event=connect_failed instance_id=%s", payload.instance_id)
            return _json(
                {
                    "success": False,
                    "status": "error",
                    "instance_id": payload.instance_id,
                    "reason": str(exc) or exc.__class__.__name__,
                },
                500,
            )
        body = outcome.to_payload(payload.instance_id, payload.phone_number)
        status_code = 500 if outcome.status is OutcomeStatus.ERROR else 200
        return _json(body, status_code)

    @app.post("/send-message")
    async def send(payload: SendMessageRequest):
        try:
            message_id = await send_message(
                manager.registry,
                payload.instance_id,
                payload.to,
                payload.message,
                payload.message_type,
            )
        except InstanceNotConnectedError:
            logger.warning("event=send_not_connected instance_id=%s", payload.instance_id)
            return _json(
                {
                    "success": False,
                    "error": "Instance not connected",
                    "instanceId": payload.instance_id,
                },
                400,
            )
        except ValueError as exc:
            return _json(
                {"success": False, "error": str(exc), "instance_id": payload.instance_id},
                400,
            )
        except SendMessageError as exc:
            return _json(
                {"success": False, "error": str(exc), "instance_id": payload.instance_id},
                500,
            )
        return _json(
            {
                "success": True,
                "message_id": message_id,
                "status": "sent",
                "instance_id": payload.instance_id,
            }
        )

    @app.get("/status")
    async def status():
        stats = manager.stats_snapshot()
        return _json(
            {
                "success": True,
                "active_sessions": stats["active"],
                "pending_sessions": stats["pending"],
                "known_sessions": stats["known"],
                "container": "wagateway",
                "status": "running",
                "uptime": round(time.monotonic() - started_at, 3),
            }
        )

    @app.get("/instances")
    async def instances():
        items = [
            {
                "instanceId": active.instance_id,
                "status": "connected",
                "active": True,
                "phone": active.phone_number,
            }
            for active in manager.registry
        ]
        items.sort(key=lambda item: item["instanceId"])
        return _json({"success": True, "instances": items, "total": len(items)})

    @app.get("/instances/{instance_id}")
    async def instance_detail(instance_id: str):
        snapshot = manager.session_snapshot(instance_id)
        if snapshot is None:
            return _json({"success": False, "error": "unknown_instance", "instanceId": instance_id}, 404)
        return _json({"success": True, "instance": snapshot})

    @app.post("/disconnect")
    async def disconnect(payload: DisconnectRequest):
        was_active = await manager.disconnect(payload.instance_id, logout=payload.logout)
        return _json(
            {
                "success": True,
                "instance_id": payload.instance_id,
                "was_active": was_active,
                "logout": payload.logout,
            }
        )

    @app.get("/health")
    async def health():
        try:
            stats = manager.stats_snapshot()
        except Exception:
            logger.exception("event=health_stats_failed")
            stats = {}
        return {"ok": True, "active_sessions": int(stats.get("active", 0) or 0)}

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["ConnectRequest", "DisconnectRequest", "SendMessageRequest", "build_manager", "create_app"]

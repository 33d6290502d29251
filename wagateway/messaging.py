from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Optional

from .metrics import WA_MESSAGES_FAILED_TOTAL, WA_MESSAGES_SENT_TOTAL
from .registry import ActiveSessionRegistry


LOGGER = logging.getLogger("wagateway.messaging")

USER_JID_SUFFIX = "@s.whatsapp.net"
MESSAGE_TYPES = ("text", "image", "document")


class InstanceNotConnectedError(LookupError):
    """Raised when an instance has no live protocol client."""


class SendMessageError(RuntimeError):
    """Raised when the protocol client rejects an outbound message."""


def normalize_jid(to: str) -> str:
    cleaned = (to or "").strip()
    if not cleaned:
        raise ValueError("missing_recipient")
    if "@" in cleaned:
        return cleaned
    digits = re.sub(r"\D+", "", cleaned)
    if not digits:
        raise ValueError("invalid_recipient")
    return f"{digits}{USER_JID_SUFFIX}"


def build_content(message_type: Optional[str], message: str) -> tuple[str, dict[str, Any]]:
    kind = (message_type or "text").strip().lower()
    if kind == "image":
        return kind, {"image": {"url": message}}
    if kind == "document":
        return kind, {"document": {"url": message}}
    return "text", {"text": message}


def extract_message_id(result: Any) -> Optional[str]:
    if result is None:
        return None
    key = result.get("key") if isinstance(result, Mapping) else getattr(result, "key", None)
    if key is None:
        return None
    value = key.get("id") if isinstance(key, Mapping) else getattr(key, "id", None)
    return str(value) if value is not None else None


async def send_message(
    registry: ActiveSessionRegistry,
    instance_id: str,
    to: str,
    message: str,
    message_type: Optional[str] = "text",
) -> Optional[str]:
    active = registry.get(instance_id)
    if active is None:
        WA_MESSAGES_FAILED_TOTAL.labels("not_connected").inc()
        raise InstanceNotConnectedError(instance_id)

    jid = normalize_jid(to)
    kind, content = build_content(message_type, message)
    try:
        result = await active.client.send_message(jid, content)
    except Exception as exc:
        WA_MESSAGES_FAILED_TOTAL.labels("protocol_error").inc()
        LOGGER.error(
            "stage=send_fail instance_id=%s to=%s type=%s error=%s",
            instance_id,
            jid,
            kind,
            exc,
        )
        raise SendMessageError(str(exc) or exc.__class__.__name__) from exc

    message_id = extract_message_id(result)
    WA_MESSAGES_SENT_TOTAL.labels(kind).inc()
    LOGGER.info(
        "stage=send_ok instance_id=%s to=%s type=%s message_id=%s",
        instance_id,
        jid,
        kind,
        message_id,
    )
    return message_id


__all__ = [
    "InstanceNotConnectedError",
    "MESSAGE_TYPES",
    "SendMessageError",
    "build_content",
    "extract_message_id",
    "normalize_jid",
    "send_message",
]

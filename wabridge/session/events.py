"""Decoding of Evolution API webhook events.

The gateway POSTs one JSON object per event:

    {
        "event": "messages.upsert",
        "instance": "wabridge",
        "data": {...}
    }

Older gateway releases send upper-case names ("MESSAGES_UPSERT"); both forms
are accepted. Events the relay does not care about decode to nothing.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from wabridge.models import InboundMessage

logger = logging.getLogger(__name__)

QRCODE_UPDATED = "qrcode.updated"
CONNECTION_UPDATE = "connection.update"
MESSAGES_UPSERT = "messages.upsert"
LOGOUT_INSTANCE = "logout.instance"

# Message containers that carry user-visible text, checked in order
_TEXT_FIELDS = (
    ("conversation", None),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
    ("documentMessage", "caption"),
)


@dataclass(frozen=True)
class QrEvent:
    code: str
    pairing_code: str | None = None


@dataclass(frozen=True)
class ConnectionEvent:
    state: str  # "open" | "connecting" | "close"
    reason: str = ""


@dataclass(frozen=True)
class MessageEvent:
    message: InboundMessage
    from_me: bool = False


@dataclass(frozen=True)
class LogoutEvent:
    reason: str = "LOGOUT"


SessionEvent = QrEvent | ConnectionEvent | MessageEvent | LogoutEvent


def normalize_event_name(name: str) -> str:
    """Map "MESSAGES_UPSERT" and "messages.upsert" to the same key."""
    return name.strip().lower().replace("_", ".")


def parse_events(payload: Mapping[str, Any]) -> list[SessionEvent]:
    """Decode one gateway webhook payload into session events."""
    name = normalize_event_name(str(payload.get("event", "")))
    data = payload.get("data") or {}

    if name == MESSAGES_UPSERT:
        items = data if isinstance(data, list) else [data]
        if isinstance(data, Mapping) and "messages" in data:
            items = data["messages"]
        if not isinstance(items, list):
            logger.debug("Ignoring malformed %s payload", name)
            return []
        events: list[SessionEvent] = []
        for item in items:
            event = _parse_message(item) if isinstance(item, Mapping) else None
            if event:
                events.append(event)
            else:
                logger.debug("Skipping undecodable message item")
        return events

    if name in (QRCODE_UPDATED, CONNECTION_UPDATE) and not isinstance(data, Mapping):
        logger.debug("Ignoring malformed %s payload", name)
        return []

    if name == QRCODE_UPDATED:
        event = _parse_qr(data)
        return [event] if event else []

    if name == CONNECTION_UPDATE:
        state = str(data.get("state") or "").lower()
        if not state:
            return []
        reason = data.get("statusReason", "")
        return [ConnectionEvent(state=state, reason=str(reason))]

    if name == LOGOUT_INSTANCE:
        return [LogoutEvent()]

    logger.debug("Ignoring gateway event %r", name)
    return []


def _parse_qr(data: Mapping[str, Any]) -> QrEvent | None:
    qrcode = data.get("qrcode")
    if not isinstance(qrcode, Mapping):
        qrcode = data
    code = qrcode.get("code")
    if not code or not isinstance(code, str):
        return None
    pairing_code = qrcode.get("pairingCode")
    return QrEvent(
        code=code,
        pairing_code=pairing_code if isinstance(pairing_code, str) and pairing_code else None,
    )


def _parse_message(data: Mapping[str, Any]) -> MessageEvent | None:
    key = data.get("key")
    if not isinstance(key, Mapping):
        return None
    sender = key.get("remoteJid")
    if not sender or not isinstance(sender, str):
        return None

    try:
        timestamp = int(data.get("messageTimestamp") or 0)
    except (TypeError, ValueError):
        timestamp = 0

    content = data.get("message")
    push_name = data.get("pushName")
    message = InboundMessage(
        sender=sender,
        body=extract_text(content) if isinstance(content, Mapping) else "",
        timestamp=max(timestamp, 0),
        message_id=str(key.get("id") or ""),
        push_name=push_name if isinstance(push_name, str) and push_name else None,
    )
    return MessageEvent(message=message, from_me=bool(key.get("fromMe")))


def extract_text(message: Mapping[str, Any]) -> str:
    for container, field_name in _TEXT_FIELDS:
        value = message.get(container)
        if field_name is None:
            if isinstance(value, str):
                return value
        elif isinstance(value, Mapping) and value.get(field_name):
            return str(value[field_name])
    return ""


def validate_api_key(headers: Mapping[str, str], expected_api_key: str) -> bool:
    """Check the gateway's shared key.

    Accepted in the "apikey" header or as "Authorization: Bearer <key>".
    """
    provided = headers.get("apikey", "")
    if not provided:
        auth_header = headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            provided = auth_header[7:]
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected_api_key.encode())

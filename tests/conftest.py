"""Shared test fixtures for wabridge."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from wabridge.audit.logger import AuditLogger
from wabridge.models import InboundMessage
from wabridge.session.evolution import EvolutionSession

GATEWAY_URL = "http://evolution.test"
INSTANCE = "test-instance"
WEBHOOK_URL = "http://n8n.test/webhook/whatsapp"
RESPONSE_URL = "https://relay.example.com"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def mock_listener() -> AsyncMock:
    """Listener whose notification methods are all AsyncMocks."""
    return AsyncMock()


class GatewayRecorder:
    """httpx.MockTransport handler that records requests and serves canned routes."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": "Not Found"})
        return response

    def bodies(self, path: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


@pytest.fixture
def gateway() -> GatewayRecorder:
    return GatewayRecorder()


@pytest.fixture
def make_session(gateway: GatewayRecorder) -> Callable[..., EvolutionSession]:
    def _make(**kwargs: Any) -> EvolutionSession:
        defaults: dict[str, Any] = {
            "api_url": GATEWAY_URL,
            "api_key": "gateway-key",
            "instance_name": INSTANCE,
            "events_url": f"{RESPONSE_URL}/session/events",
            "transport": httpx.MockTransport(gateway),
        }
        defaults.update(kwargs)
        return EvolutionSession(**defaults)

    return _make


# --- Factory functions for test data ---


def make_inbound_message(**kwargs: Any) -> InboundMessage:
    """Factory for InboundMessage with sensible defaults."""
    defaults: dict[str, Any] = {
        "sender": "5511999990000@c.us",
        "body": "hello",
        "timestamp": 1_700_000_000,
        "message_id": "MSG1",
        "push_name": "Ana",
    }
    defaults.update(kwargs)
    return InboundMessage(**defaults)


def make_upsert_event(
    sender: str = "5511999990000@s.whatsapp.net",
    text: str = "hello",
    from_me: bool = False,
    push_name: str | None = "Ana",
    timestamp: int = 1_700_000_000,
) -> dict[str, Any]:
    """Gateway messages.upsert payload for one text message."""
    data: dict[str, Any] = {
        "key": {"remoteJid": sender, "fromMe": from_me, "id": "3EB0ABC"},
        "message": {"conversation": text},
        "messageType": "conversation",
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": "messages.upsert", "instance": INSTANCE, "data": data}


def make_connection_event(state: str, reason: int | str = 200) -> dict[str, Any]:
    return {
        "event": "connection.update",
        "instance": INSTANCE,
        "data": {"instance": INSTANCE, "state": state, "statusReason": reason},
    }


def make_qr_event(code: str = "2@abcdef", pairing_code: str | None = "WZYEH1YY") -> dict[str, Any]:
    return {
        "event": "qrcode.updated",
        "instance": INSTANCE,
        "data": {"qrcode": {"instance": INSTANCE, "code": code, "pairingCode": pairing_code}},
    }

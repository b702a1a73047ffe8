"""Tests for the inbound message relay."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from wabridge.models import AuditEventType, Contact
from wabridge.session.evolution import SessionError
from wabridge.webhook.relay import (
    APOLOGY_TEXT,
    WEBHOOK_TIMEOUT_SECONDS,
    MessageRelay,
    render_qr,
    should_skip,
)

from tests.conftest import RESPONSE_URL, WEBHOOK_URL, make_inbound_message


class WebhookRecorder:
    def __init__(self, response: httpx.Response | Exception | None = None) -> None:
        self.response = response or httpx.Response(200, json={"ok": True})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _make_session(contact: Contact | None = None) -> MagicMock:
    session = MagicMock()
    session.get_contact = AsyncMock(
        return_value=contact or Contact(id="5511999990000@c.us", name="Ana Souza"),
    )
    session.send_message = AsyncMock()
    return session


def _make_relay(
    session: MagicMock, webhook: WebhookRecorder, **kwargs: Any,
) -> MessageRelay:
    defaults: dict[str, Any] = {
        "session": session,
        "webhook_url": WEBHOOK_URL,
        "response_url": RESPONSE_URL,
        "audit_logger": None,
        "transport": httpx.MockTransport(webhook),
    }
    defaults.update(kwargs)
    return MessageRelay(**defaults)


class TestSkipFilter:

    @pytest.mark.parametrize("sender", [
        "status@broadcast",
        "120363025246125244@g.us",
        "5511999990000-1600000000@g.us",
    ])
    def test_skipped_senders(self, sender: str) -> None:
        assert should_skip(sender) is True

    @pytest.mark.parametrize("sender", [
        "5511999990000@c.us",
        "5511999990000@s.whatsapp.net",
        "status@broadcast.extra",
    ])
    def test_relayed_senders(self, sender: str) -> None:
        assert should_skip(sender) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sender", ["status@broadcast", "123456@g.us"])
    async def test_skipped_message_has_no_side_effects(self, sender: str) -> None:
        session = _make_session()
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)

        await relay.handle(make_inbound_message(sender=sender))

        assert webhook.requests == []
        session.get_contact.assert_not_awaited()
        session.send_message.assert_not_awaited()


class TestForwarding:

    @pytest.mark.asyncio
    async def test_posts_payload_once(self) -> None:
        session = _make_session()
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)
        message = make_inbound_message(body="quero pedir", timestamp=1_700_000_500)

        await relay.handle(message)

        assert len(webhook.requests) == 1
        request = webhook.requests[0]
        assert str(request.url) == WEBHOOK_URL
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/json"
        assert json.loads(request.content) == {
            "from": "5511999990000@c.us",
            "body": "quero pedir",
            "timestamp": 1_700_000_500,
            "contactName": "Ana Souza",
            "responseUrl": RESPONSE_URL,
        }
        session.get_contact.assert_awaited_once_with(message)
        session.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_contact_name_falls_back_to_push_name(self) -> None:
        session = _make_session(Contact(id="x", name=None, pushname="Bia"))
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)

        await relay.handle(make_inbound_message())

        assert json.loads(webhook.requests[0].content)["contactName"] == "Bia"

    @pytest.mark.asyncio
    async def test_contact_name_defaults_to_unknown(self) -> None:
        session = _make_session(Contact(id="x"))
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)

        await relay.handle(make_inbound_message())

        assert json.loads(webhook.requests[0].content)["contactName"] == "Unknown"

    @pytest.mark.asyncio
    async def test_uses_thirty_second_timeout(self) -> None:
        session = _make_session()
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)

        await relay.handle(make_inbound_message())

        timeout = webhook.requests[0].extensions["timeout"]
        assert WEBHOOK_TIMEOUT_SECONDS == 30.0
        assert timeout["read"] == 30.0
        assert timeout["connect"] == 30.0

    @pytest.mark.asyncio
    async def test_success_audited(self, mock_audit_logger: MagicMock) -> None:
        relay = _make_relay(_make_session(), WebhookRecorder(), audit_logger=mock_audit_logger)

        await relay.handle(make_inbound_message())

        mock_audit_logger.record.assert_called_once()
        assert mock_audit_logger.record.call_args.args[0] == AuditEventType.MESSAGE_FORWARDED


class TestFailureReply:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, text="workflow error"),
        httpx.Response(404, json={"message": "webhook not registered"}),
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("connection refused"),
    ])
    async def test_webhook_failure_sends_one_apology(
        self, response: httpx.Response | Exception,
    ) -> None:
        session = _make_session()
        webhook = WebhookRecorder(response)
        relay = _make_relay(session, webhook)

        await relay.handle(make_inbound_message(sender="123@c.us"))

        assert len(webhook.requests) == 1
        session.send_message.assert_awaited_once_with("123@c.us", APOLOGY_TEXT)

    @pytest.mark.asyncio
    async def test_contact_lookup_failure_sends_apology_without_post(self) -> None:
        session = _make_session()
        session.get_contact.side_effect = SessionError("lookup failed", code="500")
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)

        await relay.handle(make_inbound_message(sender="123@c.us"))

        assert webhook.requests == []
        session.send_message.assert_awaited_once_with("123@c.us", APOLOGY_TEXT)

    @pytest.mark.asyncio
    async def test_apology_failure_is_swallowed(self, caplog: pytest.LogCaptureFixture) -> None:
        session = _make_session()
        session.send_message.side_effect = SessionError("WhatsApp session is not ready")
        relay = _make_relay(session, WebhookRecorder(httpx.Response(502)))

        await relay.handle(make_inbound_message())

        session.send_message.assert_awaited_once()
        assert "Error sending error reply" in caplog.text

    @pytest.mark.asyncio
    async def test_audit_write_failure_still_sends_apology(
        self, mock_audit_logger: MagicMock,
    ) -> None:
        session = _make_session()
        session.get_contact.side_effect = SessionError("lookup failed", code="500")
        mock_audit_logger.record.side_effect = OSError("disk full")
        relay = _make_relay(session, WebhookRecorder(), audit_logger=mock_audit_logger)

        await relay.handle(make_inbound_message(sender="123@c.us"))

        session.send_message.assert_awaited_once_with("123@c.us", APOLOGY_TEXT)

    @pytest.mark.asyncio
    async def test_audit_write_failure_after_forward_not_raised(
        self, mock_audit_logger: MagicMock, caplog: pytest.LogCaptureFixture,
    ) -> None:
        session = _make_session()
        mock_audit_logger.record.side_effect = OSError("disk full")
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook, audit_logger=mock_audit_logger)

        await relay.handle(make_inbound_message())

        assert len(webhook.requests) == 1
        session.send_message.assert_not_awaited()
        assert "Audit write failed" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_audited(self, mock_audit_logger: MagicMock) -> None:
        relay = _make_relay(
            _make_session(),
            WebhookRecorder(httpx.Response(500)),
            audit_logger=mock_audit_logger,
        )

        await relay.handle(make_inbound_message())

        event_type = mock_audit_logger.record.call_args.args[0]
        assert event_type == AuditEventType.MESSAGE_FAILED


class TestLifecycleNotifications:

    @pytest.mark.asyncio
    async def test_qr_code_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        relay = _make_relay(_make_session(), WebhookRecorder())
        with caplog.at_level("INFO"):
            await relay.on_qr("2@scan-me")
        assert "SCAN THIS QR CODE" in caplog.text
        assert render_qr("2@scan-me") in caplog.text
        assert "pairing code" not in caplog.text

    @pytest.mark.asyncio
    async def test_pairing_code_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        relay = _make_relay(_make_session(), WebhookRecorder())
        with caplog.at_level("INFO"):
            await relay.on_qr("2@scan-me", "WZYEH1YY")
        assert "pairing code: WZYEH1YY" in caplog.text

    def test_qr_rendered_as_block_art(self) -> None:
        art = render_qr("2@scan-me")
        lines = art.splitlines()
        assert len(lines) > 10
        assert "2@scan-me" not in art
        assert set("".join(lines)) <= {"\xa0", " ", "▀", "▄", "█"}

    @pytest.mark.asyncio
    async def test_auth_failure_logged_and_audited(
        self, caplog: pytest.LogCaptureFixture, mock_audit_logger: MagicMock,
    ) -> None:
        relay = _make_relay(_make_session(), WebhookRecorder(), audit_logger=mock_audit_logger)
        await relay.on_auth_failure("401")
        assert "Authentication failed: 401" in caplog.text
        assert mock_audit_logger.record.call_args.args[0] == AuditEventType.AUTH_FAILURE

    @pytest.mark.asyncio
    async def test_state_changes_audited(self, mock_audit_logger: MagicMock) -> None:
        relay = _make_relay(_make_session(), WebhookRecorder(), audit_logger=mock_audit_logger)
        await relay.on_authenticated()
        await relay.on_ready()
        await relay.on_disconnected("LOGOUT")
        actions = [c.args[1] for c in mock_audit_logger.record.call_args_list]
        assert actions == ["authenticated", "ready", "disconnected"]

    @pytest.mark.asyncio
    async def test_on_message_delegates_to_handle(self) -> None:
        session = _make_session()
        webhook = WebhookRecorder()
        relay = _make_relay(session, webhook)
        await relay.on_message(make_inbound_message())
        assert len(webhook.requests) == 1

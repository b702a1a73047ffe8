"""Inbound message relay: chat message -> automation webhook.

Registered as the session's listener. For each inbound message:
1. Skip status broadcasts and group chats
2. Resolve the sending contact
3. Build the webhook payload
4. POST it once to the automation webhook (30s bound)
On any failure the sender gets a fixed apology, best-effort.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import httpx
import qrcode

from wabridge.audit.logger import record_safely
from wabridge.models import AuditEventType, InboundMessage, RiskLevel, WebhookPayload

if TYPE_CHECKING:
    from wabridge.audit.logger import AuditLogger
    from wabridge.session.evolution import EvolutionSession

logger = logging.getLogger(__name__)

STATUS_BROADCAST = "status@broadcast"
GROUP_MARKER = "@g.us"
WEBHOOK_TIMEOUT_SECONDS = 30.0
APOLOGY_TEXT = (
    "Sorry, I encountered an error processing your message. Please try again."
)


def should_skip(sender: str) -> bool:
    """Status broadcasts and group chats are never relayed."""
    return sender == STATUS_BROADCAST or GROUP_MARKER in sender


def render_qr(code: str) -> str:
    """Render QR payload data as terminal block art."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


class MessageRelay:
    """Forwards inbound chat messages to the automation webhook."""

    def __init__(
        self,
        session: EvolutionSession,
        webhook_url: str,
        response_url: str,
        audit_logger: AuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session = session
        self._webhook_url = webhook_url
        self._response_url = response_url
        self._audit = audit_logger
        self._transport = transport

    # --- Session lifecycle notifications ---

    async def on_qr(self, code: str, pairing_code: str | None = None) -> None:
        logger.info("=" * 50)
        logger.info("SCAN THIS QR CODE WITH YOUR WHATSAPP:")
        logger.info("\n%s", render_qr(code))
        if pairing_code:
            logger.info("Or link with phone number using pairing code: %s", pairing_code)
        logger.info("=" * 50)
        self._record_state("awaiting_qr_scan")

    async def on_authenticated(self) -> None:
        logger.info("WhatsApp client authenticated")
        self._record_state("authenticated")

    async def on_ready(self) -> None:
        logger.info("WhatsApp client is ready")
        self._record_state("ready")

    async def on_auth_failure(self, reason: str) -> None:
        logger.error("Authentication failed: %s", reason)
        record_safely(
            self._audit, AuditEventType.AUTH_FAILURE, "authenticate", "failure",
            risk_level=RiskLevel.HIGH, reason=reason,
        )

    async def on_disconnected(self, reason: str) -> None:
        logger.warning("WhatsApp client was logged out: %s", reason)
        self._record_state("disconnected", reason=reason)

    def _record_state(self, state: str, **details: object) -> None:
        record_safely(self._audit, AuditEventType.SESSION_STATE, state, "success", **details)

    # --- Inbound messages ---

    async def on_message(self, message: InboundMessage) -> None:
        await self.handle(message)

    async def handle(self, message: InboundMessage) -> None:
        """Relay one inbound message. Never raises."""
        if should_skip(message.sender):
            return

        logger.info("Message from %s: %s", message.sender, message.body)

        try:
            contact = await self._session.get_contact(message)
            payload = WebhookPayload(
                sender=message.sender,
                body=message.body,
                timestamp=message.timestamp,
                contact_name=contact.display_name,
                response_url=self._response_url,
            )
            await self._post_to_webhook(payload)
        except Exception as e:
            logger.error("Error processing message: %s", e)
            await self._send_apology(message.sender)
            record_safely(
                self._audit, AuditEventType.MESSAGE_FAILED, "forward", "failure",
                peer=message.sender, risk_level=RiskLevel.MEDIUM, error=str(e),
            )
            return

        logger.info("Message sent to webhook successfully")
        record_safely(
            self._audit, AuditEventType.MESSAGE_FORWARDED, "forward", "success",
            peer=message.sender,
        )

    async def _post_to_webhook(self, payload: WebhookPayload) -> None:
        """Single attempt; raises on timeout, network error or non-2xx status."""
        async with httpx.AsyncClient(transport=self._transport) as client:
            resp = await client.post(
                self._webhook_url,
                json=payload.to_json(),
                headers={"Content-Type": "application/json"},
                timeout=WEBHOOK_TIMEOUT_SECONDS,
            )
            resp.raise_for_status()

    async def _send_apology(self, sender: str) -> None:
        try:
            await self._session.send_message(sender, APOLOGY_TEXT)
        except Exception as e:
            logger.error("Error sending error reply: %s", e)

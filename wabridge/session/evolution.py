"""WhatsApp session backed by an Evolution API gateway.

The gateway runs the WhatsApp Web session (QR pairing, credential storage,
message transport). This adapter drives it over REST and turns the events it
pushes back into listener notifications.

Documentation: https://doc.evolution-api.com/
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from wabridge.models import Contact, InboundMessage, SessionState
from wabridge.session.events import (
    ConnectionEvent,
    LogoutEvent,
    MessageEvent,
    QrEvent,
    SessionEvent,
    parse_events,
)
from wabridge.session.listener import SessionListener

logger = logging.getLogger(__name__)

_GATEWAY_EVENTS = [
    "QRCODE_UPDATED",
    "CONNECTION_UPDATE",
    "MESSAGES_UPSERT",
    "LOGOUT_INSTANCE",
]


class SessionError(Exception):
    """Gateway call failed or the session cannot deliver."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class EvolutionSession:
    """Single WhatsApp session held by an Evolution API instance."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        instance_name: str,
        events_url: str | None = None,
        events_key: str | None = None,
        listener: SessionListener | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name
        self.events_url = events_url
        self.events_key = events_key
        self.listener = listener
        self.timeout = timeout
        self.state = SessionState.UNAUTHENTICATED
        self.info: dict[str, Any] | None = None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_ready(self) -> bool:
        return self.info is not None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "apikey": self.api_key,
                },
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Mapping[str, Any] | None = None,
    ) -> Any:
        client = await self._get_client()
        url = f"{self.api_url}{endpoint}"

        try:
            response = await client.request(method, url, json=json_data)
        except httpx.RequestError as e:
            raise SessionError(f"Gateway request failed: {e}", code="HTTP_ERROR") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            raise SessionError(_error_message(data, response), code=str(response.status_code))
        return data

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Start session establishment.

        Never raises: gateway errors are reported through on_auth_failure.
        """
        try:
            state = await self.connection_state()
            if state is None:
                await self._create_instance()
            elif state == "open":
                await self._mark_ready()
                return

            response = await self._request("GET", f"/instance/connect/{self.instance_name}")
        except SessionError as e:
            logger.error("Session initialization failed: %s", e)
            await self._auth_failed(str(e))
            return

        instance = response.get("instance") if isinstance(response, dict) else None
        if isinstance(instance, dict) and instance.get("state") == "open":
            await self._mark_ready()
            return

        code = response.get("code") if isinstance(response, dict) else None
        if code and isinstance(code, str):
            await self._qr_received(
                QrEvent(code=code, pairing_code=response.get("pairingCode") or None),
            )

    async def connection_state(self) -> str | None:
        """Return the gateway connection state, or None if the instance does not exist."""
        try:
            response = await self._request(
                "GET", f"/instance/connectionState/{self.instance_name}",
            )
        except SessionError as e:
            if e.code == "404":
                return None
            raise
        if not isinstance(response, dict):
            return None
        instance = response.get("instance")
        if isinstance(instance, dict) and instance.get("state"):
            return str(instance["state"])
        state = response.get("state")
        return str(state) if state else None

    async def _create_instance(self) -> None:
        payload: dict[str, Any] = {
            "instanceName": self.instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if self.events_url:
            webhook: dict[str, Any] = {
                "url": self.events_url,
                "byEvents": False,
                "base64": False,
                "events": _GATEWAY_EVENTS,
            }
            if self.events_key:
                webhook["headers"] = {"apikey": self.events_key}
            payload["webhook"] = webhook

        await self._request("POST", "/instance/create", payload)
        logger.info("Created gateway instance %s", self.instance_name)

    async def destroy(self) -> None:
        """Release the gateway connection; the gateway keeps the stored credentials."""
        self.info = None
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # --- Event intake ---

    async def dispatch(self, payload: Mapping[str, Any]) -> None:
        """Route one gateway webhook payload to the listener."""
        for event in parse_events(payload):
            await self._handle_event(event)

    async def _handle_event(self, event: SessionEvent) -> None:
        if isinstance(event, QrEvent):
            await self._qr_received(event)
        elif isinstance(event, ConnectionEvent):
            await self._connection_changed(event)
        elif isinstance(event, LogoutEvent):
            await self._disconnected(event.reason)
        elif isinstance(event, MessageEvent):
            # Own outgoing messages are echoed by the gateway
            if event.from_me:
                return
            if self.listener:
                await self.listener.on_message(event.message)

    async def _connection_changed(self, event: ConnectionEvent) -> None:
        if event.state == "open":
            if not self.is_ready:
                await self._mark_ready()
        elif event.state == "close":
            if self.state in (SessionState.AUTHENTICATED, SessionState.READY):
                await self._disconnected(event.reason or "closed")
            else:
                await self._auth_failed(event.reason or "connection closed before pairing")
        else:
            logger.debug("Gateway connection state: %s", event.state)

    async def _qr_received(self, event: QrEvent) -> None:
        self.state = SessionState.AWAITING_QR_SCAN
        if self.listener:
            await self.listener.on_qr(event.code, event.pairing_code)

    async def _mark_ready(self) -> None:
        self.state = SessionState.AUTHENTICATED
        if self.listener:
            await self.listener.on_authenticated()
        self.state = SessionState.READY
        self.info = {"instance": self.instance_name}
        if self.listener:
            await self.listener.on_ready()

    async def _auth_failed(self, reason: str) -> None:
        self.state = SessionState.UNAUTHENTICATED
        self.info = None
        if self.listener:
            await self.listener.on_auth_failure(reason)

    async def _disconnected(self, reason: str) -> None:
        self.state = SessionState.DISCONNECTED
        self.info = None
        if self.listener:
            await self.listener.on_disconnected(reason)

    # --- Messaging ---

    async def send_message(self, to: str, message: str) -> None:
        """Send a text message; raises SessionError on any delivery failure."""
        if not self.is_ready:
            raise SessionError("WhatsApp session is not ready", code="NOT_READY")
        if not to:
            raise SessionError("Invalid recipient", code="INVALID_RECIPIENT")

        await self._request(
            "POST",
            f"/message/sendText/{self.instance_name}",
            {"number": to, "text": message},
        )

    async def get_contact(self, message: InboundMessage) -> Contact:
        """Look up the sender of a message in the gateway's contact store."""
        response = await self._request(
            "POST",
            f"/chat/findContacts/{self.instance_name}",
            {"where": {"id": message.sender}},
        )
        records = response if isinstance(response, list) else []
        record = records[0] if records and isinstance(records[0], dict) else {}
        return Contact(
            id=message.sender,
            name=record.get("name") or None,
            pushname=record.get("pushName") or message.push_name,
        )


def _error_message(data: Any, response: httpx.Response) -> str:
    if isinstance(data, dict):
        error = data.get("error") or data.get("message")
        nested = data.get("response")
        if isinstance(nested, dict) and nested.get("message"):
            error = nested["message"]
        if isinstance(error, list):
            error = "; ".join(str(item) for item in error)
        if error:
            return str(error)
    return f"Gateway returned HTTP {response.status_code}"

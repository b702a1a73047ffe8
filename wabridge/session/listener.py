"""Notification interface between the messaging session and its owner."""

from __future__ import annotations

from typing import Protocol

from wabridge.models import InboundMessage


class SessionListener(Protocol):
    """Receives lifecycle and message notifications from a session.

    The session calls these on the event loop that delivered the gateway
    event; implementations must not block.
    """

    async def on_qr(self, code: str, pairing_code: str | None = None) -> None: ...

    async def on_authenticated(self) -> None: ...

    async def on_ready(self) -> None: ...

    async def on_auth_failure(self, reason: str) -> None: ...

    async def on_disconnected(self, reason: str) -> None: ...

    async def on_message(self, message: InboundMessage) -> None: ...

"""Messaging session layer for wabridge.

This module provides the WhatsApp session adapter including:
- Gateway instance lifecycle (create, connect, destroy)
- Decoding of gateway events
- Listener notifications for lifecycle and inbound messages
- Text message delivery and contact lookup
"""

from wabridge.session.events import (
    ConnectionEvent,
    LogoutEvent,
    MessageEvent,
    QrEvent,
    parse_events,
    validate_api_key,
)
from wabridge.session.evolution import EvolutionSession, SessionError
from wabridge.session.listener import SessionListener

__all__ = [
    # Exceptions
    "SessionError",
    # Components
    "EvolutionSession",
    "SessionListener",
    # Events
    "ConnectionEvent",
    "LogoutEvent",
    "MessageEvent",
    "QrEvent",
    "parse_events",
    "validate_api_key",
]

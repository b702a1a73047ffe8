"""Shared Pydantic data models for wabridge."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_QR_SCAN = "awaiting_qr_scan"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"


class AuditEventType(str, Enum):
    MESSAGE_FORWARDED = "message_forwarded"
    MESSAGE_FAILED = "message_failed"
    REPLY_SENT = "reply_sent"
    REPLY_FAILED = "reply_failed"
    SESSION_STATE = "session_state"
    AUTH_FAILURE = "auth_failure"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Messaging Models ---


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender: str
    body: str
    timestamp: int = Field(ge=0)
    message_id: str = ""
    push_name: str | None = None


class Contact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str | None = None
    pushname: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.pushname or "Unknown"


class WebhookPayload(BaseModel):
    """Body POSTed to the automation webhook for one inbound message."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sender: str = Field(alias="from")
    body: str
    timestamp: int
    contact_name: str = Field(alias="contactName")
    response_url: str = Field(alias="responseUrl", min_length=1)

    def to_json(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class ReplyRequest(BaseModel):
    to: str = ""
    message: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.to) and bool(self.message)


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    peer: str | None = None
    action: str
    result: str  # "success" | "failure" | "skipped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None

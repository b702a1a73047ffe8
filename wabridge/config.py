"""Environment-driven configuration for the relay process."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_PORT = 3000
DEFAULT_EVOLUTION_URL = "http://localhost:8080"
DEFAULT_INSTANCE = "wabridge"
DEFAULT_AUDIT_MAX_BYTES = 10_485_760
DEFAULT_AUDIT_BACKUP_COUNT = 5


class ConfigError(Exception):
    """Raised when required startup configuration is missing or invalid."""


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class RelayConfig:
    webhook_url: str
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    public_url: str | None = None
    evolution_url: str = DEFAULT_EVOLUTION_URL
    evolution_api_key: str = ""
    instance_name: str = DEFAULT_INSTANCE
    events_key: str | None = None
    reply_token: str | None = None
    audit_log_path: str | None = None
    audit_max_bytes: int = DEFAULT_AUDIT_MAX_BYTES
    audit_backup_count: int = DEFAULT_AUDIT_BACKUP_COUNT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelayConfig:
        """Build config from environment variables.

        Raises ConfigError when N8N_WEBHOOK_URL is absent or a numeric
        setting (PORT, AUDIT_LOG_MAX_BYTES, AUDIT_LOG_BACKUP_COUNT) is not an
        integer.
        """
        env = os.environ if environ is None else environ

        webhook_url = env.get("N8N_WEBHOOK_URL", "").strip()
        if not webhook_url:
            raise ConfigError("N8N_WEBHOOK_URL environment variable is required")

        return cls(
            webhook_url=webhook_url,
            port=_int_setting(env, "PORT", DEFAULT_PORT),
            host=env.get("HOST", "0.0.0.0"),
            public_url=env.get("PUBLIC_URL") or env.get("RAILWAY_STATIC_URL") or None,
            evolution_url=env.get("EVOLUTION_API_URL", DEFAULT_EVOLUTION_URL),
            evolution_api_key=env.get("EVOLUTION_API_KEY", ""),
            instance_name=env.get("EVOLUTION_INSTANCE", DEFAULT_INSTANCE),
            events_key=env.get("EVOLUTION_WEBHOOK_KEY") or None,
            reply_token=env.get("REPLY_TOKEN") or None,
            audit_log_path=env.get("AUDIT_LOG_PATH") or None,
            audit_max_bytes=_int_setting(
                env, "AUDIT_LOG_MAX_BYTES", DEFAULT_AUDIT_MAX_BYTES, minimum=1,
            ),
            audit_backup_count=_int_setting(
                env, "AUDIT_LOG_BACKUP_COUNT", DEFAULT_AUDIT_BACKUP_COUNT, minimum=1,
            ),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def response_url(self) -> str:
        """Externally reachable base URL handed to the webhook for callbacks."""
        return self.public_url or f"http://localhost:{self.port}"

    @property
    def events_url(self) -> str:
        return f"{self.response_url.rstrip('/')}/session/events"

"""FastAPI relay application."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from wabridge.audit.logger import AuditLogger, record_safely
from wabridge.config import RelayConfig
from wabridge.models import AuditEventType, ReplyRequest, RiskLevel
from wabridge.proxy.auth_middleware import ReplyAuthMiddleware
from wabridge.session.events import validate_api_key
from wabridge.session.evolution import EvolutionSession
from wabridge.webhook.relay import MessageRelay

logger = logging.getLogger(__name__)

MISSING_FIELDS_ERROR = 'Missing "to" or "message" in request body'


def _log_init_failure(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Session initialization crashed: %s", task.exception())


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    return create_app_from_config(RelayConfig.from_env())


def create_app_from_config(config: RelayConfig) -> FastAPI:
    """Wire the session, the message relay and the HTTP app from one config."""
    audit_logger = None
    if config.audit_log_path:
        audit_logger = AuditLogger(
            log_path=config.audit_log_path,
            max_bytes=config.audit_max_bytes,
            backup_count=config.audit_backup_count,
        )
    session = EvolutionSession(
        api_url=config.evolution_url,
        api_key=config.evolution_api_key,
        instance_name=config.instance_name,
        events_url=config.events_url,
        events_key=config.events_key,
    )
    session.listener = MessageRelay(
        session=session,
        webhook_url=config.webhook_url,
        response_url=config.response_url,
        audit_logger=audit_logger,
    )
    return create_app(
        session,
        events_key=config.events_key,
        reply_token=config.reply_token,
        audit_logger=audit_logger,
        port=config.port,
    )


def create_app(
    session: EvolutionSession,
    events_key: str | None = None,
    reply_token: str | None = None,
    audit_logger: AuditLogger | None = None,
    port: int | None = None,
    initialize_session: bool = True,
) -> FastAPI:
    """Create the relay FastAPI app around an already constructed session."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting WhatsApp-n8n bridge...")
        if port is not None:
            logger.info("Server running on port %d", port)
            logger.info("Health check: http://localhost:%d", port)
        init_task: asyncio.Task[None] | None = None
        if initialize_session:
            # The listener binds without waiting for QR pairing
            init_task = asyncio.create_task(session.initialize())
            init_task.add_done_callback(_log_init_failure)
        try:
            yield
        finally:
            logger.info("Shutting down gracefully...")
            if init_task:
                init_task.cancel()
                # Failures were already reported by _log_init_failure
                with suppress(asyncio.CancelledError, Exception):
                    await init_task
            await session.destroy()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)

    @app.get("/")
    async def health() -> dict[str, Any]:
        return {
            "status": "running",
            "whatsappReady": session.is_ready,
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }

    @app.post("/reply")
    async def reply(request: Request) -> JSONResponse:
        try:
            body = await request.json()
            reply_request = ReplyRequest.model_validate(body)
        except (ValueError, ValidationError):
            reply_request = None

        if reply_request is None or not reply_request.is_complete:
            return JSONResponse({"error": MISSING_FIELDS_ERROR}, status_code=400)

        to, message = reply_request.to, reply_request.message
        logger.info("Sending reply to %s: %s", to, message)
        try:
            await session.send_message(to, message)
        except Exception as e:
            logger.error("Error sending reply: %s", e)
            record_safely(
                audit_logger, AuditEventType.REPLY_FAILED, "reply", "failure",
                peer=to, risk_level=RiskLevel.MEDIUM, error=str(e),
            )
            return JSONResponse({"error": str(e)}, status_code=500)

        logger.info("Reply sent successfully")
        record_safely(audit_logger, AuditEventType.REPLY_SENT, "reply", "success", peer=to)
        return JSONResponse({"success": True, "message": "Reply sent successfully"})

    @app.post("/session/events")
    async def session_events(
        request: Request, background_tasks: BackgroundTasks,
    ) -> JSONResponse:
        if events_key and not validate_api_key(dict(request.headers), events_key):
            return JSONResponse({"error": "Invalid gateway key"}, status_code=401)

        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return JSONResponse({"error": "Invalid event payload"}, status_code=400)

        # Acknowledge first; message handling may wait on the webhook for 30s
        background_tasks.add_task(session.dispatch, payload)
        return JSONResponse({"status": "received"})

    if reply_token:
        app.add_middleware(ReplyAuthMiddleware, token=reply_token)

    return app

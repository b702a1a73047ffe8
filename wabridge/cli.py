"""Click CLI for running and inspecting the relay."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import replace

import click
import uvicorn

from wabridge.config import ConfigError, RelayConfig
from wabridge.proxy.app import create_app_from_config
from wabridge.session.evolution import EvolutionSession, SessionError

logger = logging.getLogger("wabridge")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _load_config() -> RelayConfig:
    try:
        return RelayConfig.from_env()
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error("%s", e)
        sys.exit(1)


@click.group()
def cli() -> None:
    """WhatsApp to n8n webhook bridge."""


@cli.command()
@click.option("--host", default=None, help="Interface to bind (default: $HOST or 0.0.0.0).")
@click.option("--port", type=int, default=None, help="Port to listen on (default: $PORT or 3000).")
def serve(host: str | None, port: int | None) -> None:
    """Start the relay server and the WhatsApp session."""
    config = _load_config()
    if port is not None:
        config = replace(config, port=port)
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)

    app = create_app_from_config(config)
    uvicorn.run(app, host=host or config.host, port=config.port, log_level=config.log_level.lower())


@cli.command()
def status() -> None:
    """Print the gateway connection state of the configured instance."""
    config = _load_config()
    session = EvolutionSession(
        api_url=config.evolution_url,
        api_key=config.evolution_api_key,
        instance_name=config.instance_name,
    )

    async def _fetch() -> str | None:
        try:
            return await session.connection_state()
        finally:
            await session.destroy()

    try:
        state = asyncio.run(_fetch())
    except SessionError as e:
        click.echo(f"Gateway error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps({
        "instance": config.instance_name,
        "state": state or "missing",
    }, indent=2))


if __name__ == "__main__":
    cli()

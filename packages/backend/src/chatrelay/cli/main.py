"""chatrelay CLI — run the server, send messages, watch the channel.

Usage:
    chatrelay serve                         # Start the API + WebSocket server
    chatrelay send "hello" -a alice         # Post a message through the API
    chatrelay listen                        # Print messages straight from Redis
    chatrelay listen -a system              # ...only from one author
    chatrelay listen -p "*"                 # Pattern-subscribe to every trigger
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import sys
from typing import Optional

import click
import httpx
import structlog

from chatrelay import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:4000"


def _api_url() -> str:
    return os.environ.get("CHATRELAY_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the chatrelay backend."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="chatrelay")
def main():
    """chatrelay — real-time chat over Redis pub/sub."""


# ---------------------------------------------------------------------------
# chatrelay serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: CHATRELAY_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: CHATRELAY_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Start the HTTP + WebSocket server."""
    import uvicorn

    from chatrelay.config import settings

    _configure_logging(settings.log_level)
    uvicorn.run(
        "chatrelay.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# chatrelay send
# ---------------------------------------------------------------------------


@main.command()
@click.argument("content")
@click.option("--author", "-a", default="cli", show_default=True, help="Message author")
def send(content: str, author: str):
    """Send a chat message through the API."""
    _run(_send_impl(content, author))


async def _send_impl(content: str, author: str):
    async with _client() as c:
        try:
            r = await c.post("/api/v1/messages", json={"content": content, "author": author})
        except httpx.HTTPError as e:
            click.secho(f"Error: cannot reach {_api_url()}: {e}", fg="red", err=True)
            sys.exit(1)
        if r.status_code != 200:
            detail = r.json().get("detail", r.text) if r.content else r.reason_phrase
            click.secho(f"Error: {detail}", fg="red", err=True)
            sys.exit(1)
    click.secho("Sent.", fg="green")


# ---------------------------------------------------------------------------
# chatrelay listen
# ---------------------------------------------------------------------------


@main.command()
@click.option("--author", "-a", help="Only show messages from this author")
@click.option("--pattern", "-p", help="Pattern-subscribe to this trigger glob instead")
def listen(author: Optional[str], pattern: Optional[str]):
    """Print messages as they are published (Ctrl-C to stop)."""
    from chatrelay.config import settings

    _configure_logging(settings.log_level)
    try:
        _run(_listen_impl(author, pattern))
    except KeyboardInterrupt:
        pass


async def _listen_impl(author: Optional[str], pattern: Optional[str]):
    from chatrelay.config import settings
    from chatrelay.realtime.pubsub import build_pubsub
    from chatrelay.realtime.triggers import Pattern
    from chatrelay.realtime.websocket import message_stream

    pubsub = build_pubsub(settings)
    if pattern:
        stream = pubsub.async_iterator(Pattern(pattern))
    else:
        stream = message_stream(pubsub, author)

    click.echo(f"Listening on {settings.redis_url} (Ctrl-C to stop)...")
    try:
        async for payload in stream:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8", errors="replace")
            click.echo(json.dumps(payload, default=str))
    finally:
        await pubsub.close()
